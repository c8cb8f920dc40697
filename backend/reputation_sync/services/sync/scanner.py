"""
Full-Sync Scanner

Pull-mode reconciliation: probe the ledger token by token and merge each
snapshot into the store through the same Reconciler path live events use.

Probing walks token IDs 1, 2, 3, ... and stops after a run of consecutive
failures or at the global token cap, whichever comes first. A gap of unminted
tokens shorter than the bound is skipped over. Transport errors are reported
as sync errors, never as missing tokens.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ...ledger.client import LedgerError, TimedLedgerReader, TokenNotFoundError
from ...models.db_models import IdentityDB
from ...models.events import IdentitySnapshot, normalize_address
from .health import HealthMonitor
from .reconciler import Reconciler
from .sinks import OutcomeStatus

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Store vs ledger token ID for one address."""
    correct: bool
    db_token_id: Optional[int] = None
    ledger_token_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correct": self.correct,
            "db_token_id": self.db_token_id,
            "ledger_token_id": self.ledger_token_id,
            "error": self.error,
        }


@dataclass
class SyncSummary:
    """Counts from one full sync run."""
    fixed: int = 0  # token ID re-keyed
    refreshed: int = 0  # token ID correct, ledger stats updated
    unchanged: int = 0
    errors: int = 0
    created: int = 0
    missing_on_ledger: int = 0
    scanned: int = 0
    error_details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fixed": self.fixed,
            "refreshed": self.refreshed,
            "unchanged": self.unchanged,
            "errors": self.errors,
            "created": self.created,
            "missing_on_ledger": self.missing_on_ledger,
            "scanned": self.scanned,
            "error_details": list(self.error_details),
        }


class FullSyncScanner:
    """Enumerates ledger identities and converges the store onto them."""

    def __init__(
        self,
        reader: TimedLedgerReader,
        reconciler: Reconciler,
        health: Optional[HealthMonitor] = None,
    ):
        self.reader = reader
        self.reconciler = reconciler
        self.health = health
        self.settings = reconciler.settings

    # =========================================================================
    # PROBING
    # =========================================================================

    def scan_ledger(self) -> List[IdentitySnapshot]:
        """Every identity currently on the ledger, in token ID order."""
        snapshots, _ = self._probe()
        return snapshots

    def _probe(self) -> Tuple[List[IdentitySnapshot], List[str]]:
        """
        Probe token IDs until the consecutive-failure bound or the token cap.

        Only TokenNotFoundError is a miss. Any other ledger error (unreachable
        node, timeout, decode failure) is returned as a scan error; it still
        counts toward the bound so an outage ends the scan.
        """
        snapshots: List[IdentitySnapshot] = []
        errors: List[str] = []
        failures = 0
        token_id = 0
        while token_id < self.settings.probe_max_tokens:
            token_id += 1
            try:
                snapshots.append(self.reader.snapshot(token_id))
                failures = 0
                continue
            except TokenNotFoundError as e:
                logger.debug(f"Probe miss at token {token_id}: {e}")
            except LedgerError as e:
                logger.error(f"Ledger error probing token {token_id}: {e}")
                errors.append(f"token {token_id}: {e}")
            failures += 1
            if failures >= self.settings.probe_max_consecutive_misses:
                break
        else:
            logger.warning(f"Ledger scan stopped at token cap {self.settings.probe_max_tokens}")

        logger.info(
            f"Ledger scan found {len(snapshots)} identities "
            f"(probed {token_id} token IDs, {len(errors)} ledger errors)"
        )
        return snapshots, errors

    # =========================================================================
    # TARGETED VERIFY / REPAIR
    # =========================================================================

    def _stored_token_id(self, address: str) -> Optional[int]:
        db = self.reconciler.session_factory()
        try:
            row = db.query(IdentityDB.token_id).filter(IdentityDB.owner_address == address).first()
            return row[0] if row else None
        finally:
            db.close()

    def verify_address(self, address: str) -> VerificationResult:
        """Compare the stored token ID for an address with the ledger's."""
        try:
            address = normalize_address(address)
        except ValueError as e:
            return VerificationResult(correct=False, error=str(e))

        try:
            db_token_id = self._stored_token_id(address)
            if db_token_id is None:
                return VerificationResult(correct=False, error="Identity not found in database")

            if not self.reader.has_identity(address):
                return VerificationResult(
                    correct=False, db_token_id=db_token_id,
                    error="No identity found on ledger for this address",
                )
            ledger_token_id = self.reader.token_id_for(address)
        except Exception as e:
            logger.error(f"Verification failed for {address}: {e}")
            return VerificationResult(correct=False, error=str(e))

        return VerificationResult(
            correct=db_token_id == ledger_token_id,
            db_token_id=db_token_id,
            ledger_token_id=ledger_token_id,
        )

    def fix_address(self, address: str) -> bool:
        """
        Re-align the stored record for one address with the ledger.

        Returns True if the record is correct afterwards (repaired or
        already right), False on any failure.
        """
        try:
            address = normalize_address(address)
            if not self.reader.has_identity(address):
                logger.warning(f"No ledger identity for {address}; nothing to fix")
                return False
            token_id = self.reader.token_id_for(address)
            snapshot = self.reader.snapshot(token_id)
        except (LedgerError, ValueError) as e:
            logger.error(f"Ledger read failed while fixing {address}: {e}")
            return False

        if snapshot.owner_address != address:
            logger.error(f"Ledger owner of token {token_id} is {snapshot.owner_address}, not {address}")
            return False

        outcome = self.reconciler.merge_snapshot(snapshot)
        if outcome.status == OutcomeStatus.APPLIED:
            logger.info(f"Fixed {address}: token {token_id}, fields {outcome.changed_fields}")
            return True
        if outcome.status == OutcomeStatus.UNCHANGED:
            return self._stored_token_id(address) == token_id
        logger.error(f"Could not fix {address}: {outcome.status.value} {outcome.message}")
        return False

    # =========================================================================
    # FULL SYNC
    # =========================================================================

    def sync_all(self) -> SyncSummary:
        """
        Merge every ledger identity into the store.

        A failure for one token is counted and logged; the scan continues.
        """
        summary = SyncSummary()
        snapshots, scan_errors = self._probe()
        summary.scanned = len(snapshots)
        summary.errors += len(scan_errors)
        summary.error_details.extend(scan_errors)
        on_ledger = set()

        for snapshot in snapshots:
            on_ledger.add(snapshot.owner_address)
            try:
                outcome = self.reconciler.merge_snapshot(snapshot, create_missing=True)
            except Exception as e:
                logger.exception(f"Sync failed for token {snapshot.token_id}")
                summary.errors += 1
                summary.error_details.append(f"token {snapshot.token_id}: {e}")
                continue

            if outcome.status == OutcomeStatus.APPLIED:
                if "identity" in outcome.changed_fields:
                    summary.created += 1
                elif "token_id" in outcome.changed_fields:
                    summary.fixed += 1
                else:
                    summary.refreshed += 1
            elif outcome.status == OutcomeStatus.UNCHANGED:
                summary.unchanged += 1
            else:
                summary.errors += 1
                summary.error_details.append(
                    f"token {snapshot.token_id}: {outcome.status.value} {outcome.message}"
                )

        summary.missing_on_ledger = self._count_missing(on_ledger)

        if self.health:
            if summary.errors:
                self.health.recommend_full_sync(f"full sync incomplete: {summary.errors} errors")
            elif summary.scanned == 0 and summary.missing_on_ledger:
                logger.warning("Ledger returned no identities while the store holds records; check the ledger connection")
                self.health.recommend_full_sync("full sync found no ledger identities")
            else:
                self.health.clear_resync_recommendation()

        logger.info(
            f"Full sync complete: scanned={summary.scanned} fixed={summary.fixed} refreshed={summary.refreshed} "
            f"created={summary.created} unchanged={summary.unchanged} errors={summary.errors} "
            f"missing_on_ledger={summary.missing_on_ledger}"
        )
        return summary

    def _count_missing(self, on_ledger: set) -> int:
        """Store records whose owner has no identity on the ledger. Reported, never deleted."""
        db = self.reconciler.session_factory()
        try:
            stored = [row[0] for row in db.query(IdentityDB.owner_address).all()]
        finally:
            db.close()
        missing = [address for address in stored if address not in on_ledger]
        for address in missing:
            logger.warning(f"Store identity {address} not found on ledger scan")
        return len(missing)
