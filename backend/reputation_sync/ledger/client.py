"""
Ledger Client Interface

The sync engine consumes the ledger through this interface and never
talks to a node directly. A concrete client (JSON-RPC, websocket, test fake)
is supplied by a factory named in LEDGER_CLIENT_FACTORY.

Read calls used by the engine:
- has_identity(address)            "is minted for address"
- get_token_id_by_address(address) "token ID for address"
- owner_of(token_id)               "owner of token ID"
- get_identity(token_id)           "identity snapshot for token ID"
- get_total_identities()           "total identity count"

Events are delivered through subscribe(); each subscription returns a
handle that must be released with unsubscribe().
"""
import importlib
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Union

from ..models.events import IdentitySnapshot

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class LedgerError(Exception):
    """Ledger call failed (RPC unreachable, revert, decode error)."""


class LedgerTimeoutError(LedgerError):
    """Ledger call exceeded its per-call timeout."""


class TokenNotFoundError(LedgerError):
    """Token ID has not been minted."""


class SubscriptionError(LedgerError):
    """Event subscription could not be registered."""


# =============================================================================
# INTERFACE
# =============================================================================

@dataclass
class RawLedgerEvent:
    """A decoded log as delivered by the client transport."""
    name: str
    args: Dict[str, Any]
    tx_hash: str
    block_number: Optional[int] = None
    timestamp: Optional[int] = None  # block timestamp, if the transport knows it
    extra: Dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[RawLedgerEvent], None]


class Subscription(ABC):
    """Live listener registration owned by the ingestion loop."""

    @abstractmethod
    def unsubscribe(self) -> None:
        ...


class LedgerClient(ABC):
    """Typed read/subscribe access to the identity contract."""

    @abstractmethod
    def has_identity(self, address: str) -> bool:
        ...

    @abstractmethod
    def get_token_id_by_address(self, address: str) -> int:
        ...

    @abstractmethod
    def owner_of(self, token_id: int) -> str:
        """Raise TokenNotFoundError for unminted tokens."""

    @abstractmethod
    def get_identity(self, token_id: int) -> Union[Mapping[str, Any], Sequence[Any]]:
        """
        Raw identity struct: mapping with reputationScore, skillLevel,
        achievementCount, lastUpdate, primarySkill, isVerified, or the
        positional tuple in that order.
        """

    @abstractmethod
    def get_total_identities(self) -> int:
        ...

    @abstractmethod
    def subscribe(self, event_name: str, handler: EventHandler) -> Subscription:
        ...

    def close(self) -> None:
        """Release transport resources."""


ClientFactory = Callable[..., LedgerClient]


def load_client_factory(path: str) -> ClientFactory:
    """
    Resolve "package.module:callable" (or "package.module.callable").

    The callable receives the SyncSettings and returns a LedgerClient.
    """
    if ":" in path:
        module_name, attr = path.split(":", 1)
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid ledger client factory path: {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise ValueError(f"Ledger client factory is not callable: {path!r}")
    return factory


# =============================================================================
# SNAPSHOT DECODING
# =============================================================================

_SNAPSHOT_KEYS = (
    ("reputationScore", "reputation_score"),
    ("skillLevel", "skill_level"),
    ("achievementCount", "achievement_count"),
    ("lastUpdate", "last_update"),
    ("primarySkill", "primary_skill"),
    ("isVerified", "is_verified"),
)


def decode_identity(token_id: int, owner: str, raw: Union[Mapping[str, Any], Sequence[Any]]) -> IdentitySnapshot:
    """Build an IdentitySnapshot from the ledger's identity struct."""
    if isinstance(raw, Mapping):
        values = []
        for camel, snake in _SNAPSHOT_KEYS:
            values.append(raw[camel] if camel in raw else raw.get(snake))
    else:
        values = list(raw)[:len(_SNAPSHOT_KEYS)]
        if len(values) < len(_SNAPSHOT_KEYS):
            raise LedgerError(f"Identity struct for token {token_id} is truncated")

    reputation, skill, achievements, last_update, primary_skill, verified = values
    return IdentitySnapshot(
        token_id=token_id,
        owner_address=owner,
        reputation_score=int(reputation or 0),
        skill_level=int(skill or 0),
        achievement_count=int(achievements or 0),
        last_update=int(last_update or 0),
        primary_skill=str(primary_skill or ""),
        is_verified=bool(verified),
    )


# =============================================================================
# TIMED READER
# =============================================================================

class TimedLedgerReader:
    """
    Wraps a LedgerClient so every read has a per-call timeout.

    Calls run on a small thread pool; a call that does not return within
    the timeout raises LedgerTimeoutError and its worker is abandoned.
    """

    def __init__(self, client: LedgerClient, timeout_seconds: float, max_workers: int = 4):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger-read")

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            raise LedgerTimeoutError(
                f"{getattr(fn, '__name__', 'ledger call')}{args} timed out after {self.timeout_seconds}s"
            )
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"{getattr(fn, '__name__', 'ledger call')}{args} failed: {e}") from e

    def has_identity(self, address: str) -> bool:
        return bool(self._call(self.client.has_identity, address))

    def token_id_for(self, address: str) -> int:
        return int(self._call(self.client.get_token_id_by_address, address))

    def owner_of(self, token_id: int) -> str:
        return str(self._call(self.client.owner_of, token_id))

    def total_identities(self) -> int:
        return int(self._call(self.client.get_total_identities))

    def snapshot(self, token_id: int) -> IdentitySnapshot:
        """owner_of + get_identity for one token."""
        owner = self.owner_of(token_id)
        raw = self._call(self.client.get_identity, token_id)
        try:
            return decode_identity(token_id, owner, raw)
        except (TypeError, ValueError, KeyError) as e:
            raise LedgerError(f"Could not decode identity for token {token_id}: {e}") from e

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
