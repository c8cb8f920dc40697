"""
Ledger Sync Service

Query/repair facade owning one ledger client, the ingestion loop, the
scanner and the health monitor. Constructed explicitly and passed to
callers; there is no module-level instance.

Lifecycle:
    service = LedgerSyncService(settings, SessionLocal)
    service.start()          # connectivity test + subscribe
    ...
    service.reinitialize()   # rebuild client, release old listeners first
    service.close()

Repair entry points (fix, full sync) refuse to run unless the service is
ready. Read entry points degrade to a "not verified" answer instead.
"""
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ...config import SyncSettings
from ...ledger.client import ClientFactory, LedgerClient, TimedLedgerReader, load_client_factory
from ...models.events import IdentitySnapshot, normalize_address
from .errors import ConfigurationError, ServiceNotReadyError
from .health import HealthMonitor
from .ingestion import EventIngestionLoop
from .reconciler import Reconciler
from .scanner import FullSyncScanner, SyncSummary
from .sinks import OutcomeSink, OutcomeStatus

logger = logging.getLogger(__name__)


class LedgerSyncService:
    """Reconciliation engine entry point."""

    def __init__(
        self,
        settings: SyncSettings,
        session_factory: Callable[[], Session],
        client_factory: Optional[ClientFactory] = None,
        sink: Optional[OutcomeSink] = None,
    ):
        self.settings = settings
        self.health = HealthMonitor(settings)
        self.reconciler = Reconciler(session_factory, settings, self.health)
        self.ingestion = EventIngestionLoop(self.reconciler, self.health, sink)
        self._client_factory = client_factory
        self.client: Optional[LedgerClient] = None
        self.reader: Optional[TimedLedgerReader] = None
        self.scanner: Optional[FullSyncScanner] = None

    @property
    def ready(self) -> bool:
        return self.health.ready

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> bool:
        """Initialize the client and begin listening. Returns readiness."""
        logger.info("Starting ledger sync service")
        return self.reinitialize()

    def reinitialize(self) -> bool:
        """
        Rebuild the ledger client and re-subscribe.

        Old listeners are released before new ones are registered. Returns
        False without any network activity when configuration is invalid.
        """
        if not self.health.config_valid:
            logger.error("Not initializing ledger sync: configuration invalid")
            return False

        self._teardown()

        try:
            self.client = self._build_client()
        except Exception as e:
            logger.error(f"Could not create ledger client: {e}")
            self.health.mark_initialized(False)
            return False

        self.health.set_client_present(True)
        self.reader = TimedLedgerReader(self.client, self.settings.ledger_call_timeout_seconds)
        self.scanner = FullSyncScanner(self.reader, self.reconciler, self.health)

        connected = self._test_connection()
        self.health.mark_initialized(connected)
        if not connected:
            return False

        if not self.ingestion.start(self.client):
            logger.error("Ledger sync initialized without live events; full sync required to catch up")
            self.health.recommend_full_sync("event subscription failed")
        return self.health.ready

    def close(self) -> None:
        """Release listeners, the client and the reader pool."""
        self._teardown()
        logger.info("Ledger sync service closed")

    def handle_disconnect(self) -> bool:
        """Transport reported a dropped connection."""
        return self.ingestion.handle_disconnect()

    def _build_client(self) -> LedgerClient:
        factory = self._client_factory
        if factory is None:
            if not self.settings.ledger_client_factory:
                raise ConfigurationError("LEDGER_CLIENT_FACTORY is not set")
            factory = load_client_factory(self.settings.ledger_client_factory)
        return factory(self.settings)

    def _test_connection(self) -> bool:
        try:
            total = self.reader.total_identities()
        except Exception as e:
            logger.error(f"Ledger connectivity test failed: {e}")
            return False
        logger.info(f"Connected to ledger {self.settings.ledger_address}: {total} identities")
        return True

    def _teardown(self) -> None:
        self.ingestion.stop()
        if self.reader is not None:
            self.reader.shutdown()
            self.reader = None
        if self.client is not None:
            try:
                self.client.close()
            except Exception as e:
                logger.warning(f"Error closing ledger client: {e}")
            self.client = None
        self.scanner = None
        self.health.reset_connection()

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_service_status(self) -> Dict[str, Any]:
        return self.health.status(listener_count=self.ingestion.listener_count)

    def _require_ready(self, operation: str) -> None:
        if not self.ready:
            raise ServiceNotReadyError(f"Ledger sync service not ready; refusing {operation}")

    # =========================================================================
    # QUERY / REPAIR
    # =========================================================================

    def verify_address_token_id(self, address: str) -> Dict[str, Any]:
        """Compare stored and ledger token IDs for an address."""
        if not self.ready:
            return {"correct": False, "db_token_id": None, "ledger_token_id": None,
                    "error": "Ledger sync service not ready"}
        return self.scanner.verify_address(address).to_dict()

    def fix_address_token_id(self, address: str) -> bool:
        self._require_ready("fix_address_token_id")
        return self.scanner.fix_address(address)

    def sync_all_identities(self) -> SyncSummary:
        self._require_ready("sync_all_identities")
        logger.info("Starting full ledger sync")
        return self.scanner.sync_all()

    def import_ledger_identity(self, address: str) -> bool:
        """
        Create the store record for a ledger identity the store has never seen.

        The record gets a placeholder username that the next IdentityCreated
        delivery (or the owner) may replace.
        """
        self._require_ready("import_ledger_identity")
        snapshot = self.get_ledger_identity(address)
        if snapshot is None:
            return False
        outcome = self.reconciler.merge_snapshot(snapshot, create_missing=True)
        logger.info(f"Imported ledger identity {snapshot.owner_address}: {outcome.status.value}")
        return outcome.status in (OutcomeStatus.APPLIED, OutcomeStatus.UNCHANGED)

    def get_ledger_identity(self, address: str) -> Optional[IdentitySnapshot]:
        """Current ledger view of an address, or None when unavailable."""
        if not self.ready:
            return None
        try:
            address = normalize_address(address)
            if not self.reader.has_identity(address):
                return None
            return self.reader.snapshot(self.reader.token_id_for(address))
        except Exception as e:
            logger.error(f"Error reading ledger identity for {address}: {e}")
            return None
