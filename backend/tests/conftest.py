"""
Shared fixtures for the sync engine tests.

The identity store is an in-memory SQLite database shared across sessions
through a StaticPool; the ledger is the in-memory FakeLedgerClient.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reputation_sync.config import SyncSettings
from reputation_sync.database import init_db
from reputation_sync.ledger.client import TimedLedgerReader
from reputation_sync.services.sync import FullSyncScanner, HealthMonitor, Reconciler

from fakes import FakeLedgerClient

LEDGER_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def engine():
    """Fresh in-memory store per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """Session for assertions. Expire before reading engine writes."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return SyncSettings(
        ledger_address=LEDGER_ADDRESS,
        rpc_url="http://localhost:8545",
        database_url="sqlite://",
        probe_max_consecutive_misses=3,
        probe_max_tokens=50,
        ledger_call_timeout_seconds=2.0,
        store_retry_attempts=3,
        store_retry_base_delay_seconds=0.0,
        store_retry_max_delay_seconds=0.0,
        internal_api_key="test-internal-key",
    )


@pytest.fixture
def invalid_settings():
    return SyncSettings(ledger_address=None, rpc_url="http://localhost:8545", database_url="sqlite://")


@pytest.fixture
def health(settings):
    return HealthMonitor(settings)


@pytest.fixture
def reconciler(session_factory, settings, health):
    return Reconciler(session_factory, settings, health, sleep=lambda seconds: None)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def reader(ledger, settings):
    reader = TimedLedgerReader(ledger, settings.ledger_call_timeout_seconds)
    yield reader
    reader.shutdown()


@pytest.fixture
def scanner(reader, reconciler, health):
    return FullSyncScanner(reader, reconciler, health)
