"""
Test Suite for Username Conflict Resolution

Key tests:
1. Free names are kept as-is
2. Token ID suffix on first collision
3. Timestamp suffix when the token ID suffix is also taken
4. Termination with a unique non-empty name for any finite taken set
5. Placeholder detection
"""
from reputation_sync.services.sync.usernames import (
    MAX_USERNAME_LENGTH,
    is_placeholder_username,
    placeholder_username,
    resolve_username_collision,
    username_candidates,
)


class TestResolveUsernameCollision:
    """Deterministic alternates for taken usernames."""

    def test_free_name_is_kept(self):
        """A name nobody holds is returned unchanged."""
        assert resolve_username_collision("alice", {"bob"}, token_id=7, timestamp=1700001234) == "alice"

    def test_token_suffix_on_collision(self):
        """First collision resolves to {name}_{tokenId}."""
        assert resolve_username_collision("alice", {"alice"}, token_id=7, timestamp=1700001234) == "alice_7"

    def test_timestamp_suffix_on_second_collision(self):
        """When {name}_{tokenId} is also taken, the last four timestamp digits are used."""
        taken = {"alice", "alice_7"}
        assert resolve_username_collision("alice", taken, token_id=7, timestamp=1700001234) == "alice_1234"

    def test_short_timestamp_is_zero_padded(self):
        """Timestamps under four digits still give a four-digit suffix."""
        taken = {"alice", "alice_7"}
        assert resolve_username_collision("alice", taken, token_id=7, timestamp=42) == "alice_0042"

    def test_always_terminates_with_unique_name(self):
        """Every fallback taken still yields a fresh, non-empty name."""
        taken = {"alice", "alice_7", "alice_1234", "alice_7_2", "alice_7_3"}
        result = resolve_username_collision("alice", taken, token_id=7, timestamp=1700001234)

        assert result == "alice_7_4"
        assert result not in taken

    def test_empty_desired_name_uses_placeholder(self):
        """A blank ledger username falls back to the placeholder name."""
        assert resolve_username_collision("  ", set(), token_id=12, timestamp=0) == "Identity #12"

    def test_long_names_stay_within_column_limit(self):
        """Suffixes never push a name past the column width."""
        desired = "x" * MAX_USERNAME_LENGTH
        result = resolve_username_collision(desired, {desired}, token_id=123, timestamp=0)

        assert len(result) <= MAX_USERNAME_LENGTH
        assert result.endswith("_123")

    def test_candidates_are_deterministic(self):
        """Same inputs give the same candidate order."""
        first = username_candidates("bob", 3, 99995555)
        second = username_candidates("bob", 3, 99995555)

        assert [next(first) for _ in range(5)] == [next(second) for _ in range(5)]


class TestPlaceholderUsernames:
    """System-assigned names are recognised by prefix."""

    def test_placeholder_format(self):
        """Placeholder names carry the token ID."""
        assert placeholder_username(5) == "Identity #5"

    def test_known_prefixes(self):
        """Both system prefixes count as placeholders."""
        assert is_placeholder_username("Identity #5")
        assert is_placeholder_username("User #5")
        assert is_placeholder_username("")

    def test_chosen_name_is_not_placeholder(self):
        """Owner-chosen names are never treated as placeholders."""
        assert not is_placeholder_username("alice")
        assert not is_placeholder_username("Identity")
