"""
Migration: Create identity store tables.

Creates the identity record table and its append-only side collections:
1. identities - one row per minted identity token
2. price_history - price changes per token
3. achievement_history - achievements unlocked on the ledger
4. goal_progress - goal outcome per (token, goal index)
5. nft_transfers - mints, identity sales and stake transfers

Enum columns use PostgreSQL enum types named after the ORM enums.
"""
from sqlalchemy import create_engine, text

from reputation_sync.config import default_database_url

# Use same DB URL pattern as main app
DATABASE_URL = default_database_url()


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def type_exists(conn, type_name: str) -> bool:
    result = conn.execute(text("SELECT EXISTS (SELECT FROM pg_type WHERE typname = :name)"), {"name": type_name})
    return result.fetchone()[0]


def run_migration():
    """Create all identity store tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        if not type_exists(conn, "pricetrigger"):
            conn.execute(text("CREATE TYPE pricetrigger AS ENUM ('LEDGER_UPDATE', 'GOAL_FAILURE')"))
            print("Created pricetrigger type")
        if not type_exists(conn, "transfertype"):
            conn.execute(text("CREATE TYPE transfertype AS ENUM ('MINT', 'SALE', 'TRANSFER')"))
            print("Created transfertype type")

        # =================================================================
        # TABLE 1: identities
        # =================================================================
        if table_exists(conn, "identities"):
            print("identities table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE identities (
                    id VARCHAR(36) PRIMARY KEY,
                    token_id INTEGER NOT NULL UNIQUE,
                    username VARCHAR(100) NOT NULL UNIQUE,
                    owner_address VARCHAR(42) NOT NULL UNIQUE,
                    is_original_owner BOOLEAN NOT NULL DEFAULT TRUE,
                    primary_skill VARCHAR(100) NOT NULL DEFAULT '',
                    reputation_score INTEGER NOT NULL DEFAULT 100,
                    skill_level INTEGER NOT NULL DEFAULT 1,
                    achievement_count INTEGER NOT NULL DEFAULT 0,
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    last_update INTEGER NOT NULL DEFAULT 0,
                    nft_base_price FLOAT NOT NULL DEFAULT 10.0,
                    current_price FLOAT NOT NULL DEFAULT 10.0,
                    price_updated_at INTEGER NOT NULL DEFAULT 0,
                    profile JSON NOT NULL,
                    tx_hash VARCHAR(66),
                    last_synced_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    revision INTEGER NOT NULL DEFAULT 0
                )
            """))
            print("Created identities table")

        # =================================================================
        # TABLE 2: price_history
        # =================================================================
        if table_exists(conn, "price_history"):
            print("price_history table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE price_history (
                    id VARCHAR(36) PRIMARY KEY,
                    token_id INTEGER NOT NULL,
                    old_price FLOAT NOT NULL,
                    new_price FLOAT NOT NULL,
                    change_percent FLOAT NOT NULL DEFAULT 0,
                    reason VARCHAR(200) NOT NULL DEFAULT '',
                    triggered_by pricetrigger NOT NULL,
                    tx_hash VARCHAR(66),
                    applied BOOLEAN NOT NULL DEFAULT TRUE,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_price_history_tx UNIQUE (token_id, tx_hash, triggered_by)
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_price_history_token_time ON price_history(token_id, timestamp)
            """))
            print("Created price_history table")

        # =================================================================
        # TABLE 3: achievement_history
        # =================================================================
        if table_exists(conn, "achievement_history"):
            print("achievement_history table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE achievement_history (
                    id VARCHAR(36) PRIMARY KEY,
                    token_id INTEGER NOT NULL,
                    title VARCHAR(200) NOT NULL,
                    points INTEGER NOT NULL DEFAULT 0,
                    tx_hash VARCHAR(66) NOT NULL,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_achievement_history_tx UNIQUE (token_id, tx_hash)
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_achievement_history_token_time ON achievement_history(token_id, timestamp)
            """))
            print("Created achievement_history table")

        # =================================================================
        # TABLE 4: goal_progress
        # =================================================================
        if table_exists(conn, "goal_progress"):
            print("goal_progress table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE goal_progress (
                    id VARCHAR(36) PRIMARY KEY,
                    token_id INTEGER NOT NULL,
                    goal_index INTEGER NOT NULL,
                    title VARCHAR(100) NOT NULL DEFAULT '',
                    reward_points INTEGER NOT NULL DEFAULT 0,
                    penalty_bps INTEGER NOT NULL DEFAULT 0,
                    completed BOOLEAN NOT NULL DEFAULT FALSE,
                    failed BOOLEAN NOT NULL DEFAULT FALSE,
                    completed_at TIMESTAMP,
                    failed_at TIMESTAMP,
                    tx_hash VARCHAR(66),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_goal_progress_token_goal UNIQUE (token_id, goal_index)
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_goal_progress_token_time ON goal_progress(token_id, updated_at)
            """))
            print("Created goal_progress table")

        # =================================================================
        # TABLE 5: nft_transfers
        # =================================================================
        if table_exists(conn, "nft_transfers"):
            print("nft_transfers table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE nft_transfers (
                    id VARCHAR(36) PRIMARY KEY,
                    token_id INTEGER NOT NULL,
                    from_address VARCHAR(42) NOT NULL,
                    to_address VARCHAR(42) NOT NULL,
                    price FLOAT NOT NULL DEFAULT 0,
                    tx_hash VARCHAR(66) NOT NULL,
                    block_number INTEGER,
                    transfer_type transfertype NOT NULL DEFAULT 'TRANSFER',
                    identity_transfer BOOLEAN NOT NULL DEFAULT FALSE,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_nft_transfers_tx UNIQUE (tx_hash, transfer_type)
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_nft_transfers_token_time ON nft_transfers(token_id, timestamp)
            """))
            conn.execute(text("""
                CREATE INDEX idx_nft_transfers_from ON nft_transfers(from_address)
            """))
            conn.execute(text("""
                CREATE INDEX idx_nft_transfers_to ON nft_transfers(to_address)
            """))
            print("Created nft_transfers table")

        conn.commit()
        print("\nIdentity store migration completed successfully!")


if __name__ == "__main__":
    run_migration()
