"""
Ledger Sync Services

Keeps the off-chain identity store consistent with the identity ledger.

- LedgerSyncService: query/repair facade, owns the components below
- EventIngestionLoop: live ledger events -> Reconciler
- Reconciler: idempotent field-level merges into the store
- FullSyncScanner: pull-mode enumeration and drift repair
- HealthMonitor: config_valid / initialized / ready
"""

from .errors import (
    SyncError, ConfigurationError, ServiceNotReadyError,
    EventValidationError, ConcurrentModificationError,
)
from .health import HealthMonitor
from .sinks import OutcomeStatus, ReconciliationOutcome, OutcomeSink, LoggingSink
from .reconciler import Reconciler
from .ingestion import EventIngestionLoop, normalize_event
from .scanner import FullSyncScanner, SyncSummary, VerificationResult
from .service import LedgerSyncService

__all__ = [
    'SyncError',
    'ConfigurationError',
    'ServiceNotReadyError',
    'EventValidationError',
    'ConcurrentModificationError',
    'HealthMonitor',
    'OutcomeStatus',
    'ReconciliationOutcome',
    'OutcomeSink',
    'LoggingSink',
    'Reconciler',
    'EventIngestionLoop',
    'normalize_event',
    'FullSyncScanner',
    'SyncSummary',
    'VerificationResult',
    'LedgerSyncService',
]
