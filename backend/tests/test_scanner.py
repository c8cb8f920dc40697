"""
Test Suite for the Full-Sync Scanner

Key tests:
1. Probing terminates on the consecutive-miss bound and on the token cap
2. Targeted verify / repair of token ID drift with the profile untouched
3. Full sync summary: fixed, created, unchanged, missing, errors
4. Per-token failure containment
5. Ledger outages surface as errors and keep the resync signal
6. Stale stats repaired regardless of event arrival times
"""
import json
from dataclasses import replace
from unittest.mock import patch

from reputation_sync.models.db_models import IdentityDB
from reputation_sync.ledger.client import RawLedgerEvent
from reputation_sync.models.events import IdentityCreated, IdentityPurchased
from reputation_sync.services.sync import EventIngestionLoop, FullSyncScanner, Reconciler

from fakes import address

X = address(0x58)
Y = address(0x59)
Z = address(0x5A)
W = address(0x57)


def stored(session_factory, owner):
    db = session_factory()
    try:
        return db.query(IdentityDB).filter_by(owner_address=owner).one_or_none()
    finally:
        db.close()


def seed(reconciler, token_id, owner, username):
    reconciler.apply(IdentityCreated(
        token_id=token_id, owner=owner, username=username,
        tx_hash=f"0xseed{token_id}", timestamp=1_000,
    ))


def set_profile(session_factory, owner, profile):
    db = session_factory()
    try:
        record = db.query(IdentityDB).filter_by(owner_address=owner).one()
        record.profile = profile
        db.commit()
    finally:
        db.close()


# =============================================================================
# PROBING
# =============================================================================

class TestScanLedger:
    """Bounded sequential probing."""

    def test_stops_after_consecutive_misses(self, scanner, ledger):
        """A short gap is skipped; a run of misses ends the scan."""
        for token_id in (1, 2, 4):
            ledger.mint(token_id, address(token_id))

        snapshots = scanner.scan_ledger()

        assert [s.token_id for s in snapshots] == [1, 2, 4]
        # tokens 1-4 plus three misses (5, 6, 7)
        assert ledger.calls.count("owner_of") == 7

    def test_stops_at_token_cap(self, reader, session_factory, settings, health, ledger):
        """The global cap bounds a dense ledger."""
        for token_id in range(1, 11):
            ledger.mint(token_id, address(token_id))
        capped = Reconciler(session_factory, replace(settings, probe_max_tokens=5), health)

        snapshots = FullSyncScanner(reader, capped, health).scan_ledger()

        assert len(snapshots) == 5
        assert ledger.calls.count("owner_of") == 5

    def test_outage_ends_scan_at_failure_bound(self, scanner, ledger):
        """An unreachable ledger terminates after the consecutive-failure bound."""
        ledger.mint(1, address(1))
        ledger.unavailable = True

        assert scanner.scan_ledger() == []
        assert ledger.calls.count("owner_of") == 3


# =============================================================================
# TARGETED REPAIR
# =============================================================================

class TestTargetedRepair:
    """verify_address and fix_address."""

    def test_drift_repair_converges(self, scanner, reconciler, session_factory, ledger):
        """Store token 3 vs ledger token 9: fixed to 9, profile byte-identical."""
        seed(reconciler, 3, X, "xavier")
        profile = {
            "bio": "Ledger nerd", "avatar": None, "skills": ["go"],
            "achievements": [{"id": "a", "title": "Hackathon"}], "goals": [{"title": "Learn Rust"}],
            "social_links": {"github": "xavier"}, "education": [], "work_experience": [],
        }
        set_profile(session_factory, X, profile)
        before = json.dumps(stored(session_factory, X).profile, sort_keys=True)
        ledger.mint(9, X, reputation_score=320, skill_level=4, achievement_count=3, last_update=900)

        assert scanner.verify_address(X).to_dict() == {
            "correct": False, "db_token_id": 3, "ledger_token_id": 9, "error": None,
        }

        assert scanner.fix_address(X) is True

        record = stored(session_factory, X)
        assert record.token_id == 9
        assert record.reputation_score == 320
        assert record.skill_level == 4
        assert record.achievement_count == 3
        assert json.dumps(record.profile, sort_keys=True) == before
        assert scanner.verify_address(X).correct is True

    def test_fix_correct_address_is_true(self, scanner, reconciler, ledger):
        """An already-correct record reports success."""
        seed(reconciler, 2, Y, "yara")
        ledger.mint(2, Y, reputation_score=100, skill_level=1, last_update=1_000, primary_skill="")

        assert scanner.fix_address(Y) is True

    def test_fix_unknown_ledger_address_is_false(self, scanner, reconciler):
        """No ledger identity, nothing to fix."""
        seed(reconciler, 2, Y, "yara")

        assert scanner.fix_address(Y) is False

    def test_verify_missing_store_record(self, scanner, ledger):
        """Addresses the store does not know are reported, not raised."""
        ledger.mint(1, Z)

        result = scanner.verify_address(Z)

        assert result.correct is False
        assert result.error == "Identity not found in database"

    def test_verify_invalid_address(self, scanner):
        """Malformed addresses are reported as errors."""
        result = scanner.verify_address("not-an-address")

        assert result.correct is False
        assert "invalid address" in result.error


# =============================================================================
# FULL SYNC
# =============================================================================

class TestSyncAll:
    """Full enumeration and merge."""

    def test_summary_counts(self, scanner, reconciler, session_factory, ledger, health):
        """Drift fixed, missing created, matching left alone, orphan reported."""
        seed(reconciler, 3, X, "xavier")
        seed(reconciler, 2, Y, "yara")
        seed(reconciler, 8, W, "walt")
        ledger.mint(1, Z, reputation_score=150)
        ledger.mint(2, Y, reputation_score=100, skill_level=1, last_update=1_000, primary_skill="")
        ledger.mint(4, X, reputation_score=210, last_update=1_100)
        health.recommend_full_sync("reconnect")

        summary = scanner.sync_all()

        assert summary.scanned == 3
        assert summary.fixed == 1
        assert summary.created == 1
        assert summary.unchanged == 1
        assert summary.missing_on_ledger == 1
        assert summary.errors == 0
        assert stored(session_factory, X).token_id == 4
        created = stored(session_factory, Z)
        assert created.username == "Identity #1"
        assert created.reputation_score == 150
        assert not health.resync_recommended

    def test_sync_is_idempotent(self, scanner, reconciler, ledger):
        """A second run changes nothing."""
        seed(reconciler, 3, X, "xavier")
        ledger.mint(4, X, reputation_score=210, last_update=1_100)
        scanner.sync_all()

        summary = scanner.sync_all()

        assert summary.fixed == 0
        assert summary.created == 0
        assert summary.unchanged == 1

    def test_one_bad_token_does_not_abort_scan(self, scanner, reconciler, session_factory, ledger):
        """Per-token failures are counted and the scan continues."""
        for token_id, owner in ((1, X), (2, Y), (3, Z)):
            ledger.mint(token_id, owner)
        merge = reconciler.merge_snapshot

        def flaky_merge(snapshot, create_missing=False):
            if snapshot.token_id == 2:
                raise RuntimeError("boom")
            return merge(snapshot, create_missing)

        with patch.object(reconciler, "merge_snapshot", side_effect=flaky_merge):
            summary = scanner.sync_all()

        assert summary.errors == 1
        assert summary.created == 2
        assert "token 2" in summary.error_details[0]
        assert stored(session_factory, Z) is not None


# =============================================================================
# LEDGER FAILURES
# =============================================================================

class TestLedgerFailures:
    """Transport errors are sync errors, never missing tokens."""

    def test_outage_is_reported_not_clean(self, scanner, reconciler, health, ledger):
        """An unreachable ledger leaves the resync signal raised and counts errors."""
        seed(reconciler, 1, X, "xavier")
        health.recommend_full_sync("listener reconnected")
        ledger.unavailable = True

        summary = scanner.sync_all()

        assert summary.scanned == 0
        assert summary.errors == 3
        assert health.resync_recommended

    def test_transport_error_mid_scan(self, scanner, health, ledger):
        """One failing token is an error; the rest of the ledger is still merged."""
        for token_id, owner in ((1, X), (2, Y), (3, Z)):
            ledger.mint(token_id, owner)
        ledger.broken_tokens.add(2)

        summary = scanner.sync_all()

        assert summary.scanned == 2
        assert summary.created == 2
        assert summary.errors == 1
        assert "token 2" in summary.error_details[0]
        assert health.resync_recommended

    def test_empty_ledger_with_stored_records_keeps_signal(self, scanner, reconciler, health):
        """A ledger that reports nothing never clears the resync signal."""
        seed(reconciler, 1, X, "xavier")
        health.recommend_full_sync("listener reconnected")

        summary = scanner.sync_all()

        assert summary.errors == 0
        assert summary.missing_on_ledger == 1
        assert health.resync_recommended


# =============================================================================
# STALE STATS
# =============================================================================

class TestStaleStatsRepair:
    """Repair converges even when the store's last_update came from elsewhere."""

    def test_fix_after_event_without_block_time(self, scanner, reconciler, health, session_factory, ledger):
        """An IdentityCreated delivered without a block time does not block repair."""
        loop = EventIngestionLoop(reconciler, health)
        loop.handle(RawLedgerEvent(
            name="IdentityCreated", args={"tokenId": 1, "owner": X, "username": "xavier"},
            tx_hash="0xmint1", timestamp=None,
        ))
        ledger.mint(1, X, reputation_score=500, last_update=1_000)

        assert scanner.fix_address(X) is True

        record = stored(session_factory, X)
        assert record.reputation_score == 500
        assert record.last_update == 1_000

    def test_fix_after_identity_sale(self, scanner, reconciler, session_factory, ledger):
        """A later sale does not make older ledger stats look stale."""
        seed(reconciler, 1, X, "xavier")
        reconciler.apply(IdentityPurchased(
            token_id=1, buyer=Y, seller=X, price=25, tx_hash="0xsale1", timestamp=5_000,
        ))
        ledger.mint(1, Y, reputation_score=500, last_update=2_000)

        assert scanner.fix_address(Y) is True

        record = stored(session_factory, Y)
        assert record.reputation_score == 500
        assert record.last_update == 2_000
