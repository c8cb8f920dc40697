"""
Health Monitor

Explicit readiness states, queried by name:
- config_valid: ledger address and endpoint present and well formed.
                Computed once at construction; sticky-false.
- initialized:  a connectivity test against the ledger has succeeded.
                Flips on every (re)initialize attempt.
- ready:        config_valid and initialized and a client handle exists.

Collaborators gate on `ready` before trusting repair paths. Degraded and
resync signals are advisory: they never change `ready`.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ...config import SyncSettings

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Tri-state readiness plus degraded/resync signals for the sync engine."""

    def __init__(self, settings: SyncSettings):
        self.settings = settings
        self.config_errors: List[str] = settings.validate()
        self._config_valid = not self.config_errors
        self._initialized = False
        self._client_present = False
        self._listening = False

        self._lock = threading.Lock()
        self.failed_events = 0
        self.dropped_events = 0
        self.store_failures = 0
        self.last_store_error: Optional[str] = None
        self.subscription_error: Optional[str] = None
        self.resync_reason: Optional[str] = None
        self.resync_recommended_at: Optional[datetime] = None

        if self._config_valid:
            logger.info(f"Sync configuration valid: ledger={settings.ledger_address} rpc={settings.rpc_url}")
        else:
            for error in self.config_errors:
                logger.error(f"Sync configuration invalid: {error}")

    # =========================================================================
    # STATES
    # =========================================================================

    @property
    def config_valid(self) -> bool:
        return self._config_valid

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def client_present(self) -> bool:
        return self._client_present

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def ready(self) -> bool:
        return self._config_valid and self._initialized and self._client_present

    @property
    def degraded(self) -> bool:
        return self.last_store_error is not None or self.subscription_error is not None

    @property
    def resync_recommended(self) -> bool:
        return self.resync_reason is not None

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def mark_initialized(self, success: bool) -> None:
        # No connectivity claim is possible without valid configuration
        self._initialized = bool(success) and self._config_valid
        if self._initialized:
            logger.info("Ledger connectivity test passed")
        else:
            logger.error("Ledger connectivity test failed")

    def reset_connection(self) -> None:
        """Client torn down; readiness must be re-established."""
        self._initialized = False
        self._client_present = False
        self._listening = False

    def set_client_present(self, present: bool) -> None:
        self._client_present = bool(present)

    def mark_listening(self, listening: bool) -> None:
        self._listening = bool(listening)
        if listening:
            self.subscription_error = None

    def record_subscription_failure(self, error: str) -> None:
        with self._lock:
            self._listening = False
            self.subscription_error = error
        logger.error(f"Ledger event subscription failed: {error}")

    def record_event_failure(self) -> None:
        with self._lock:
            self.failed_events += 1

    def record_dropped_event(self) -> None:
        with self._lock:
            self.dropped_events += 1

    def record_store_failure(self, error: str) -> None:
        with self._lock:
            self.store_failures += 1
            self.last_store_error = error
        logger.error(f"Identity store degraded: {error}")

    def clear_store_failure(self) -> None:
        with self._lock:
            self.last_store_error = None

    def recommend_full_sync(self, reason: str) -> None:
        with self._lock:
            self.resync_reason = reason
            self.resync_recommended_at = datetime.now(timezone.utc)
        logger.warning(f"Full sync recommended: {reason}")

    def clear_resync_recommendation(self) -> None:
        with self._lock:
            self.resync_reason = None
            self.resync_recommended_at = None

    # =========================================================================
    # REPORTING
    # =========================================================================

    def status(self, listener_count: int = 0) -> Dict[str, Any]:
        return {
            "config_valid": self.config_valid,
            "initialized": self.initialized,
            "ready": self.ready,
            "listener_count": listener_count,
            "listening": self.listening,
            "has_client": self.client_present,
            "degraded": self.degraded,
            "last_store_error": self.last_store_error,
            "subscription_error": self.subscription_error,
            "resync_recommended": self.resync_recommended,
            "resync_reason": self.resync_reason,
            "failed_events": self.failed_events,
            "dropped_events": self.dropped_events,
            "store_failures": self.store_failures,
            "config_errors": list(self.config_errors),
            "contract_address": self.settings.ledger_address,
            "rpc_url": self.settings.rpc_url,
        }
