"""
Field Ownership

Every identity column has exactly one authority:
- LEDGER: the ledger is the sole source of truth once the token is minted
- OFF_CHAIN: written by off-chain actors only; the engine preserves it verbatim
- HYBRID: seeded from the ledger, advanced off-chain, merged by an explicit rule
- PROVENANCE: bookkeeping maintained by the engine itself
"""
from enum import Enum
from typing import Dict, Iterable


class FieldOwner(str, Enum):
    LEDGER = "ledger"
    OFF_CHAIN = "off_chain"
    HYBRID = "hybrid"
    PROVENANCE = "provenance"


FIELD_OWNERSHIP: Dict[str, FieldOwner] = {
    # Identity keys
    "token_id": FieldOwner.LEDGER,
    "owner_address": FieldOwner.LEDGER,
    "is_original_owner": FieldOwner.LEDGER,
    "username": FieldOwner.HYBRID,  # owner-chosen; replaced only while a placeholder

    # Ledger stats
    "primary_skill": FieldOwner.LEDGER,
    "reputation_score": FieldOwner.LEDGER,
    "skill_level": FieldOwner.LEDGER,
    "achievement_count": FieldOwner.LEDGER,
    "is_verified": FieldOwner.LEDGER,
    "last_update": FieldOwner.LEDGER,

    # Pricing
    "nft_base_price": FieldOwner.HYBRID,
    "current_price": FieldOwner.HYBRID,  # strictly-newer ledger timestamp wins
    "price_updated_at": FieldOwner.HYBRID,

    # Off-chain profile
    "profile": FieldOwner.OFF_CHAIN,

    # Provenance
    "id": FieldOwner.PROVENANCE,
    "tx_hash": FieldOwner.PROVENANCE,
    "last_synced_at": FieldOwner.PROVENANCE,
    "created_at": FieldOwner.PROVENANCE,
    "updated_at": FieldOwner.PROVENANCE,
    "revision": FieldOwner.PROVENANCE,
}

# Ledger-owned stats refreshed from a full identity snapshot
SNAPSHOT_FIELDS = (
    "primary_skill",
    "reputation_score",
    "skill_level",
    "achievement_count",
    "is_verified",
)


def check_engine_writable(fields: Iterable[str]) -> None:
    """
    Raise if a reconciliation write would touch an off-chain-owned field.

    The only exception is the explicit profile achievement append, which
    goes through its own code path and never calls this check.
    """
    forbidden = sorted(
        name for name in fields
        if FIELD_OWNERSHIP.get(name) not in (FieldOwner.LEDGER, FieldOwner.HYBRID, FieldOwner.PROVENANCE)
    )
    if forbidden:
        raise ValueError(f"Reconciliation write touches non-ledger fields: {forbidden}")
