"""
Test Suite for Merge Rules

Pure decisions behind every reconciler write: price math, price
precedence, snapshot last-writer-wins and field ownership.
"""
import math

import pytest

from reputation_sync.models.events import IdentitySnapshot
from reputation_sync.models.ownership import FIELD_OWNERSHIP, FieldOwner, check_engine_writable
from reputation_sync.models.db_models import IdentityDB
from reputation_sync.services.sync.merge_rules import (
    apply_price_penalty,
    change_percent,
    diff_fields,
    ledger_price_wins,
    snapshot_updates,
)


class TestPriceMath:
    """Change percent and penalty arithmetic."""

    def test_change_percent(self):
        """Percent change from old to new price."""
        assert change_percent(10.0, 12.5) == pytest.approx(25.0)
        assert change_percent(10.0, 5.0) == pytest.approx(-50.0)

    def test_change_percent_zero_old_price(self):
        """Old price 0 gives 0, never NaN or infinity."""
        result = change_percent(0.0, 15.0)

        assert result == 0.0
        assert math.isfinite(result)

    def test_penalty_applied_in_basis_points(self):
        """2500 bps takes a quarter off the price."""
        assert apply_price_penalty(20.0, 2500, floor=0.01) == pytest.approx(15.0)

    def test_full_penalty_hits_floor(self):
        """A 100% penalty lands on the positive floor, not zero."""
        result = apply_price_penalty(1.0, 10_000, floor=0.01)

        assert result == pytest.approx(0.01)
        assert result > 0

    def test_zero_penalty_keeps_price(self):
        """0 bps leaves the price alone."""
        assert apply_price_penalty(7.5, 0, floor=0.01) == 7.5


class TestPricePrecedence:
    """Ledger price vs stored price."""

    def test_strictly_newer_wins(self):
        """Newer ledger timestamp replaces the stored price."""
        assert ledger_price_wins(2_000, 1_000)

    def test_equal_timestamp_does_not_win(self):
        """Same timestamp keeps the stored price."""
        assert not ledger_price_wins(1_000, 1_000)

    def test_older_does_not_win(self):
        """Older ledger price never rolls the stored price back."""
        assert not ledger_price_wins(500, 1_000)


class TestSnapshotUpdates:
    """Ledger-owned stat merges from a full identity snapshot."""

    def _snapshot(self, **overrides):
        values = dict(
            token_id=4,
            owner_address="0x" + "1" * 40,
            reputation_score=250,
            skill_level=3,
            achievement_count=2,
            last_update=2_000,
            primary_skill="rust",
            is_verified=True,
        )
        values.update(overrides)
        return IdentitySnapshot(**values)

    def test_newer_snapshot_updates_changed_stats(self):
        """Only differing stats plus last_update are returned."""
        current = {
            "reputation_score": 100, "skill_level": 3, "achievement_count": 2,
            "primary_skill": "rust", "is_verified": True, "last_update": 1_000,
        }

        updates = snapshot_updates(current, self._snapshot())

        assert updates == {"reputation_score": 250, "last_update": 2_000}

    def test_older_snapshot_is_ignored(self):
        """Last-writer-wins on the ledger's own timestamp."""
        current = {"reputation_score": 900, "last_update": 5_000}

        assert snapshot_updates(current, self._snapshot(last_update=4_999)) == {}

    def test_identical_snapshot_is_noop(self):
        """Nothing changes when store already matches."""
        current = {
            "reputation_score": 250, "skill_level": 3, "achievement_count": 2,
            "primary_skill": "rust", "is_verified": True, "last_update": 2_000,
        }

        assert snapshot_updates(current, self._snapshot()) == {}

    def test_diff_fields(self):
        """Unchanged fields are dropped."""
        assert diff_fields({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": None}) == {"b": 3}


class TestFieldOwnership:
    """Every identity column has exactly one declared authority."""

    def test_every_column_has_owner(self):
        """No column is left without an ownership tag."""
        columns = {column.name for column in IdentityDB.__table__.columns}

        assert columns == set(FIELD_OWNERSHIP)

    def test_profile_is_off_chain(self):
        """The profile belongs to off-chain actors."""
        assert FIELD_OWNERSHIP["profile"] == FieldOwner.OFF_CHAIN

    def test_engine_cannot_write_profile(self):
        """A reconciliation write touching profile is a programming error."""
        with pytest.raises(ValueError):
            check_engine_writable(["reputation_score", "profile"])

    def test_engine_can_write_ledger_fields(self):
        """Ledger and hybrid fields pass the check."""
        check_engine_writable(["token_id", "reputation_score", "current_price", "tx_hash"])
