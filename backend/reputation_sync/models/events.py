"""
Reputation Sync - Reconciliation Events

Typed, validated change records built from raw ledger events (push mode)
or from ledger snapshots (full-sync pull mode). Ephemeral: never persisted,
consumed exactly once by the reconciler.
"""
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import ADDRESS_PATTERN


class LedgerEventKind(str, Enum):
    """Ledger events the ingestion loop subscribes to."""
    IDENTITY_CREATED = "IdentityCreated"
    PRICE_UPDATED = "PriceUpdated"
    GOAL_COMPLETED = "GoalCompleted"
    GOAL_FAILED = "GoalFailed"
    REPUTATION_UPDATED = "ReputationUpdated"
    IDENTITY_PURCHASED = "IdentityPurchased"
    ACHIEVEMENT_UNLOCKED = "AchievementUnlocked"


def normalize_address(value: str) -> str:
    """Lowercase an address after checking its shape."""
    if not isinstance(value, str) or not ADDRESS_PATTERN.match(value.strip()):
        raise ValueError(f"invalid address: {value!r}")
    return value.strip().lower()


# =============================================================================
# BASE
# =============================================================================

class ReconciliationEvent(BaseModel):
    """Common envelope: every ledger fact carries its provenance."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: LedgerEventKind
    token_id: int = Field(ge=1)
    tx_hash: str = Field(min_length=1, max_length=66)
    timestamp: int = Field(ge=0)  # ledger time, seconds
    timestamp_from_ledger: bool = True  # False when the transport gave no block time
    block_number: Optional[int] = Field(default=None, ge=0)


# =============================================================================
# EVENT KINDS
# =============================================================================

class IdentityCreated(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.IDENTITY_CREATED
    owner: str
    username: str = ""

    @field_validator("owner")
    @classmethod
    def _owner(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("username")
    @classmethod
    def _username(cls, v: str) -> str:
        return (v or "").strip()[:100]


class PriceUpdated(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.PRICE_UPDATED
    old_price: float = Field(ge=0)
    new_price: float = Field(ge=0)
    reason: str = ""


class GoalCompleted(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.GOAL_COMPLETED
    goal_index: int = Field(ge=0)
    reward_points: int = Field(ge=0)


class GoalFailed(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.GOAL_FAILED
    goal_index: int = Field(ge=0)
    price_penalty_bps: int = Field(ge=0, le=10_000)


class ReputationUpdated(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.REPUTATION_UPDATED
    new_score: int = Field(ge=0)


class IdentityPurchased(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.IDENTITY_PURCHASED
    buyer: str
    seller: str
    price: float = Field(ge=0)

    @field_validator("buyer", "seller")
    @classmethod
    def _addresses(cls, v: str) -> str:
        return normalize_address(v)


class AchievementUnlocked(ReconciliationEvent):
    kind: LedgerEventKind = LedgerEventKind.ACHIEVEMENT_UNLOCKED
    title: str = Field(min_length=1, max_length=200)
    points: int = Field(ge=0)


AnyReconciliationEvent = Union[
    IdentityCreated,
    PriceUpdated,
    GoalCompleted,
    GoalFailed,
    ReputationUpdated,
    IdentityPurchased,
    AchievementUnlocked,
]

EVENT_MODELS = {
    LedgerEventKind.IDENTITY_CREATED: IdentityCreated,
    LedgerEventKind.PRICE_UPDATED: PriceUpdated,
    LedgerEventKind.GOAL_COMPLETED: GoalCompleted,
    LedgerEventKind.GOAL_FAILED: GoalFailed,
    LedgerEventKind.REPUTATION_UPDATED: ReputationUpdated,
    LedgerEventKind.IDENTITY_PURCHASED: IdentityPurchased,
    LedgerEventKind.ACHIEVEMENT_UNLOCKED: AchievementUnlocked,
}


# =============================================================================
# LEDGER SNAPSHOT
# =============================================================================

class IdentitySnapshot(BaseModel):
    """What the ledger currently says about one token."""
    model_config = ConfigDict(frozen=True)

    token_id: int = Field(ge=1)
    owner_address: str
    reputation_score: int = 0
    skill_level: int = 0
    achievement_count: int = 0
    last_update: int = 0
    primary_skill: str = ""
    is_verified: bool = False

    @field_validator("owner_address")
    @classmethod
    def _owner(cls, v: str) -> str:
        return normalize_address(v)

    def to_dict(self) -> dict:
        return {
            **self.model_dump(),
            "source": "blockchain",
            "synced": True,
        }
