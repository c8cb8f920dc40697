"""
Sync Engine Errors

(a) configuration  - fatal to readiness
(b) connectivity   - ledger errors, see ledger/client.py
(c) transient store - retried with bounded backoff
(d) data           - malformed payloads, dropped and logged
"""
from sqlalchemy.exc import DisconnectionError, OperationalError, TimeoutError as PoolTimeoutError


class SyncError(Exception):
    """Base class for sync engine failures."""


class ConfigurationError(SyncError):
    """Ledger address or endpoint missing or malformed."""


class ServiceNotReadyError(SyncError):
    """Repair requested while the engine is not ready."""


class EventValidationError(SyncError):
    """Ledger event payload could not be normalized. Never retried."""


class ConcurrentModificationError(SyncError):
    """Compare-and-set lost to a concurrent writer."""


TRANSIENT_STORE_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def is_transient_store_error(exc: BaseException) -> bool:
    """Store failures worth retrying: dropped connections, lock timeouts, pool exhaustion."""
    if isinstance(exc, TRANSIENT_STORE_ERRORS):
        return True
    return bool(getattr(exc, "connection_invalidated", False))
