"""
Merge Rules

Pure functions deciding what a ledger fact changes on an identity row.
The reconciler turns their output into field-level compare-and-set updates.
"""
from typing import Any, Dict, Mapping

from ...models.events import IdentitySnapshot
from ...models.ownership import SNAPSHOT_FIELDS

BPS_DENOMINATOR = 10_000


def change_percent(old_price: float, new_price: float) -> float:
    """Percent change; defined as 0 when the old price is 0."""
    if old_price == 0:
        return 0.0
    return (new_price - old_price) / old_price * 100


def apply_price_penalty(price: float, penalty_bps: int, floor: float) -> float:
    """price -= price * bps / 10000, never below the positive floor."""
    penalized = price - price * penalty_bps / BPS_DENOMINATOR
    return max(penalized, floor)


def ledger_price_wins(event_timestamp: int, price_updated_at: int) -> bool:
    """A ledger price replaces the stored one only if strictly newer."""
    return event_timestamp > price_updated_at


def diff_fields(current: Mapping[str, Any], desired: Mapping[str, Any]) -> Dict[str, Any]:
    """Only the fields whose value actually changes."""
    return {name: value for name, value in desired.items() if current.get(name) != value}


def snapshot_updates(current: Mapping[str, Any], snapshot: IdentitySnapshot) -> Dict[str, Any]:
    """
    Ledger-owned stat changes implied by a snapshot.

    Last-writer-wins on the ledger's own last_update: an older snapshot never
    rolls back stats written from a newer one. Token ID drift is handled
    separately by the caller since the ledger is always right about it.
    """
    if snapshot.last_update < (current.get("last_update") or 0):
        return {}
    desired: Dict[str, Any] = {name: getattr(snapshot, name) for name in SNAPSHOT_FIELDS}
    desired["last_update"] = snapshot.last_update
    return diff_fields(current, desired)
