"""
Reconciliation Outcomes

Every event the reconciler consumes ends in exactly one outcome. Outcomes go
to a sink supplied by the caller (notification fan-out lives elsewhere).
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    APPLIED = "APPLIED"        # store changed
    UNCHANGED = "UNCHANGED"    # duplicate or already in sync
    SKIPPED = "SKIPPED"        # identity not in store yet; side facts recorded
    DROPPED = "DROPPED"        # malformed or unresolvable, never retried
    FAILED = "FAILED"          # transient retries exhausted


@dataclass
class ReconciliationOutcome:
    status: OutcomeStatus
    kind: Optional[str] = None
    token_id: Optional[int] = None
    tx_hash: Optional[str] = None
    changed_fields: List[str] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "kind": self.kind,
            "token_id": self.token_id,
            "tx_hash": self.tx_hash,
            "changed_fields": list(self.changed_fields),
            "message": self.message,
        }


OutcomeSink = Callable[[ReconciliationOutcome], None]


class LoggingSink:
    """Default sink: one log line per outcome."""

    def __call__(self, outcome: ReconciliationOutcome) -> None:
        if outcome.status in (OutcomeStatus.DROPPED, OutcomeStatus.FAILED):
            logger.warning(
                f"{outcome.kind} token={outcome.token_id} tx={outcome.tx_hash} "
                f"{outcome.status.value}: {outcome.message}"
            )
        else:
            logger.info(
                f"{outcome.kind} token={outcome.token_id} {outcome.status.value} "
                f"fields={outcome.changed_fields}"
            )
