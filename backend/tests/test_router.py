"""
Test Suite for the HTTP Surface

Exercises the internal sync routes and the identity read routes through
FastAPI's TestClient with the in-memory store and ledger.
"""
import pytest
from fastapi.testclient import TestClient

from reputation_sync.database import get_db
from reputation_sync.main import create_app
from reputation_sync.models.events import IdentityCreated

from fakes import address

ALICE = address(0xB1)
BOB = address(0xB2)
HEADERS = {"X-Internal-Key": "test-internal-key"}


def build_app(settings, session_factory, engine, ledger):
    app = create_app(settings, session_factory, client_factory=lambda s: ledger, bind=engine)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(settings, session_factory, engine, ledger):
    with TestClient(build_app(settings, session_factory, engine, ledger)) as client:
        yield client


@pytest.fixture
def offline_client(invalid_settings, session_factory, engine, ledger):
    with TestClient(build_app(invalid_settings, session_factory, engine, ledger)) as client:
        yield client


# =============================================================================
# HEALTH / STATUS
# =============================================================================

class TestHealthEndpoints:
    """Root and status endpoints."""

    def test_health_ready(self, client):
        """A reachable ledger reports healthy."""
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["ready"] is True
        assert body["listener_count"] == 7

    def test_health_not_ready(self, offline_client):
        """Invalid configuration reports not_ready, never an error."""
        body = offline_client.get("/health").json()

        assert body["status"] == "not_ready"
        assert body["config_valid"] is False

    def test_status_requires_key(self, client):
        """Internal routes reject a wrong key."""
        response = client.get("/internal/sync/status", headers={"X-Internal-Key": "nope"})

        assert response.status_code == 403

    def test_status(self, client):
        """Status wraps the health monitor's view."""
        response = client.get("/internal/sync/status", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["data"]["initialized"] is True


# =============================================================================
# REPAIR
# =============================================================================

class TestRepairEndpoints:
    """Full sync, verify, fix."""

    def test_full_sync(self, client, ledger):
        """Full sync returns its summary counts."""
        ledger.mint(1, ALICE)
        ledger.mint(2, BOB)

        response = client.post("/internal/sync/full-sync", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["task"] == "full_sync"
        assert body["scanned"] == 2
        assert body["created"] == 2
        assert body["errors"] == 0

    def test_repairs_unavailable_when_not_ready(self, offline_client):
        """Repair endpoints answer 503 while not ready."""
        assert offline_client.post("/internal/sync/full-sync", headers=HEADERS).status_code == 503
        assert offline_client.post(f"/internal/sync/fix/{ALICE}", headers=HEADERS).status_code == 503

    def test_verify_and_fix(self, client, ledger, reconciler):
        """Drift is reported by verify and repaired by fix."""
        reconciler.apply(IdentityCreated(token_id=3, owner=ALICE, username="alice", tx_hash="0xa", timestamp=1))
        ledger.mint(5, ALICE)

        verify = client.get(f"/internal/sync/verify/{ALICE}", headers=HEADERS).json()
        assert verify["correct"] is False
        assert verify["ledger_token_id"] == 5

        fix = client.post(f"/internal/sync/fix/{ALICE}", headers=HEADERS).json()
        assert fix == {"success": True, "address": ALICE}

        assert client.get(f"/internal/sync/verify/{ALICE}", headers=HEADERS).json()["correct"] is True

    def test_ledger_lookup(self, client, ledger):
        """Direct ledger view of an address."""
        ledger.mint(4, BOB, reputation_score=222)

        body = client.get(f"/internal/sync/ledger/{BOB}", headers=HEADERS).json()

        assert body["success"] is True
        assert body["data"]["token_id"] == 4
        assert body["data"]["reputation_score"] == 222


# =============================================================================
# IDENTITY READS
# =============================================================================

class TestIdentityEndpoints:
    """Verified vs unverified reads."""

    def test_lookup_auto_fixes_drift(self, client, ledger, reconciler):
        """A drifted record is repaired before it is served."""
        reconciler.apply(IdentityCreated(token_id=3, owner=ALICE, username="alice", tx_hash="0xa", timestamp=1))
        ledger.mint(8, ALICE)

        body = client.get(f"/identities/{ALICE}").json()

        assert body["blockchain_verified"] is True
        assert body["identity"]["token_id"] == 8
        assert body["identity"]["username"] == "alice"

    def test_lookup_refreshes_stale_stats(self, client, ledger, reconciler):
        """A verified read also brings ledger stats up to date, not just the token ID."""
        reconciler.apply(IdentityCreated(token_id=3, owner=ALICE, username="alice", tx_hash="0xa", timestamp=1))
        ledger.mint(3, ALICE, reputation_score=640, skill_level=5, last_update=2_000)

        body = client.get(f"/identities/{ALICE}").json()

        assert body["blockchain_verified"] is True
        assert body["identity"]["token_id"] == 3
        assert body["identity"]["reputation_score"] == 640
        assert body["identity"]["skill_level"] == 5

    def test_lookup_imports_unknown_identity(self, client, ledger):
        """Ledger identities the store never saw are imported on first read."""
        ledger.mint(6, BOB)

        body = client.get(f"/identities/{BOB}").json()

        assert body["blockchain_verified"] is True
        assert body["identity"]["token_id"] == 6
        assert body["identity"]["username"] == "Identity #6"

    def test_lookup_unverified_when_not_ready(self, offline_client, reconciler):
        """Store data is served and labelled unverified while not ready."""
        reconciler.apply(IdentityCreated(token_id=3, owner=ALICE, username="alice", tx_hash="0xa", timestamp=1))

        body = offline_client.get(f"/identities/{ALICE}").json()

        assert body["blockchain_verified"] is False
        assert body["identity"]["token_id"] == 3

    def test_lookup_unknown_and_invalid(self, client):
        """Unknown addresses are 404, malformed ones 400."""
        assert client.get(f"/identities/{address(0xFF)}").status_code == 404
        assert client.get("/identities/not-an-address").status_code == 400

    def test_list(self, client, reconciler):
        """Listing is ordered by reputation and paginated."""
        reconciler.apply(IdentityCreated(token_id=1, owner=ALICE, username="alice", tx_hash="0xa", timestamp=1))
        reconciler.apply(IdentityCreated(token_id=2, owner=BOB, username="bob", tx_hash="0xb", timestamp=1))

        body = client.get("/identities", params={"limit": 1}).json()

        assert len(body["identities"]) == 1
        assert body["pagination"]["total_items"] == 2
        assert body["pagination"]["has_next"] is True
        assert body["blockchain_verified"] is False
