"""
Reputation Sync - SQLAlchemy ORM Models
Off-chain identity store and its append-only side collections
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, JSON, Boolean, Enum as SQLEnum,
    UniqueConstraint, Index,
)

from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class PriceTrigger(str, Enum):
    """What caused a price history entry."""
    LEDGER_UPDATE = "ledger_update"
    GOAL_FAILURE = "goal_failure"


class TransferType(str, Enum):
    """Kind of token movement recorded in nft_transfers."""
    MINT = "mint"
    SALE = "sale"
    TRANSFER = "transfer"


ZERO_ADDRESS = "0x" + "0" * 40


def empty_profile() -> Dict[str, Any]:
    """Well-formed empty profile. Readers never branch on missing keys."""
    return {
        "bio": "",
        "avatar": None,
        "skills": [],
        "achievements": [],
        "goals": [],
        "social_links": {},
        "education": [],
        "work_experience": [],
    }


# =============================================================================
# IDENTITY RECORD
# =============================================================================

class IdentityDB(Base):
    """
    One row per minted identity token.

    Column ownership (ledger / off-chain / hybrid) is declared in
    models/ownership.py and enforced by the reconciler.
    """
    __tablename__ = "identities"

    id = Column(String(36), primary_key=True)  # UUID
    token_id = Column(Integer, unique=True, nullable=False, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    owner_address = Column(String(42), unique=True, nullable=False, index=True)  # lowercase
    is_original_owner = Column(Boolean, nullable=False, default=True)

    # ==========================================================================
    # LEDGER-DERIVED - the ledger is the sole authority once minted
    # ==========================================================================
    primary_skill = Column(String(100), nullable=False, default="")
    reputation_score = Column(Integer, nullable=False, default=100)
    skill_level = Column(Integer, nullable=False, default=1)
    achievement_count = Column(Integer, nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)
    last_update = Column(Integer, nullable=False, default=0)  # ledger logical timestamp

    # ==========================================================================
    # HYBRID - seeded from the ledger, advanced by off-chain business events
    # ==========================================================================
    nft_base_price = Column(Float, nullable=False, default=10.0)
    current_price = Column(Float, nullable=False, default=10.0)
    price_updated_at = Column(Integer, nullable=False, default=0)  # ledger time of last price write

    # ==========================================================================
    # OFF-CHAIN ONLY
    # ==========================================================================
    profile = Column(JSON, nullable=False, default=empty_profile)

    # Provenance
    tx_hash = Column(String(66), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    # Compare-and-set guard for every engine write
    revision = Column(Integer, nullable=False, default=0)


# =============================================================================
# SIDE COLLECTIONS (APPEND-ONLY)
# =============================================================================

class PriceHistoryDB(Base):
    """Price change log per token."""
    __tablename__ = "price_history"
    __table_args__ = (
        UniqueConstraint("token_id", "tx_hash", "triggered_by", name="uq_price_history_tx"),
        Index("idx_price_history_token_time", "token_id", "timestamp"),
    )

    id = Column(String(36), primary_key=True)
    token_id = Column(Integer, nullable=False, index=True)
    old_price = Column(Float, nullable=False)
    new_price = Column(Float, nullable=False)
    change_percent = Column(Float, nullable=False, default=0.0)
    reason = Column(String(200), nullable=False, default="")
    triggered_by = Column(SQLEnum(PriceTrigger), nullable=False)
    tx_hash = Column(String(66), nullable=True)
    applied = Column(Boolean, nullable=False, default=True)  # False when a newer price already won
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


class AchievementHistoryDB(Base):
    """Achievements unlocked on the ledger."""
    __tablename__ = "achievement_history"
    __table_args__ = (
        UniqueConstraint("token_id", "tx_hash", name="uq_achievement_history_tx"),
        Index("idx_achievement_history_token_time", "token_id", "timestamp"),
    )

    id = Column(String(36), primary_key=True)
    token_id = Column(Integer, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    points = Column(Integer, nullable=False, default=0)
    tx_hash = Column(String(66), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


class GoalProgressDB(Base):
    """Goal outcome per (token, goal index)."""
    __tablename__ = "goal_progress"
    __table_args__ = (
        UniqueConstraint("token_id", "goal_index", name="uq_goal_progress_token_goal"),
        Index("idx_goal_progress_token_time", "token_id", "updated_at"),
    )

    id = Column(String(36), primary_key=True)
    token_id = Column(Integer, nullable=False, index=True)
    goal_index = Column(Integer, nullable=False)
    title = Column(String(100), nullable=False, default="")
    reward_points = Column(Integer, nullable=False, default=0)
    penalty_bps = Column(Integer, nullable=False, default=0)
    completed = Column(Boolean, nullable=False, default=False, index=True)
    failed = Column(Boolean, nullable=False, default=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    tx_hash = Column(String(66), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class NFTTransferDB(Base):
    """Token movements: mints, identity sales and stake transfers."""
    __tablename__ = "nft_transfers"
    __table_args__ = (
        UniqueConstraint("tx_hash", "transfer_type", name="uq_nft_transfers_tx"),
        Index("idx_nft_transfers_token_time", "token_id", "timestamp"),
    )

    id = Column(String(36), primary_key=True)
    token_id = Column(Integer, nullable=False, index=True)
    from_address = Column(String(42), nullable=False, index=True)
    to_address = Column(String(42), nullable=False, index=True)
    price = Column(Float, nullable=False, default=0.0)
    tx_hash = Column(String(66), nullable=False)
    block_number = Column(Integer, nullable=True)
    transfer_type = Column(SQLEnum(TransferType), nullable=False, default=TransferType.TRANSFER)
    identity_transfer = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
