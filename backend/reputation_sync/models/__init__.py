"""Reputation Sync - Data Models"""
from .events import (
    LedgerEventKind, ReconciliationEvent, AnyReconciliationEvent,
    IdentityCreated, PriceUpdated, GoalCompleted, GoalFailed,
    ReputationUpdated, IdentityPurchased, AchievementUnlocked,
    IdentitySnapshot,
)
from .ownership import FieldOwner, FIELD_OWNERSHIP

__all__ = [
    "LedgerEventKind", "ReconciliationEvent", "AnyReconciliationEvent",
    "IdentityCreated", "PriceUpdated", "GoalCompleted", "GoalFailed",
    "ReputationUpdated", "IdentityPurchased", "AchievementUnlocked",
    "IdentitySnapshot",
    "FieldOwner", "FIELD_OWNERSHIP",
]
