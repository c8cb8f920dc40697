"""
Username Conflict Resolution

Usernames are globally unique. When the ledger supplies a name that another
token already holds, a deterministic alternate is derived instead of failing:

    desired -> {desired}_{tokenId} -> {desired}_{last4 of timestamp}
            -> {desired}_{tokenId}_{n} for n = 2, 3, ...

Pure functions, no storage access.
"""
from typing import Collection, Iterator, Sequence

from ...config import PLACEHOLDER_USERNAME_PREFIXES

MAX_USERNAME_LENGTH = 100


def placeholder_username(token_id: int) -> str:
    """System-generated name used until the owner picks one."""
    return f"{PLACEHOLDER_USERNAME_PREFIXES[0]}{token_id}"


def is_placeholder_username(
    username: str,
    prefixes: Sequence[str] = PLACEHOLDER_USERNAME_PREFIXES,
) -> bool:
    return not username or any(username.startswith(prefix) for prefix in prefixes)


def _with_suffix(base: str, suffix: str) -> str:
    tail = f"_{suffix}"
    return base[:MAX_USERNAME_LENGTH - len(tail)] + tail


def username_candidates(desired: str, token_id: int, timestamp: int) -> Iterator[str]:
    """Yield candidates in resolution order. Infinite; callers stop at the first free one."""
    base = (desired or "").strip()[:MAX_USERNAME_LENGTH] or placeholder_username(token_id)
    yield base
    yield _with_suffix(base, str(token_id))
    yield _with_suffix(base, str(abs(int(timestamp)))[-4:].zfill(4))
    n = 2
    while True:
        yield _with_suffix(base, f"{token_id}_{n}")
        n += 1


def resolve_username_collision(
    desired: str,
    existing: Collection[str],
    token_id: int,
    timestamp: int,
) -> str:
    """
    Return the first candidate not present in `existing`.

    Always terminates with a non-empty name: `existing` is finite, so at most
    len(existing) + 1 candidates can be taken.
    """
    for candidate in username_candidates(desired, token_id, timestamp):
        if candidate not in existing:
            return candidate
    raise RuntimeError("unreachable")  # pragma: no cover
