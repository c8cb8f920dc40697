"""
Reputation Sync - Runtime Configuration

All tunables for the ledger sync engine come from the environment.
Probe bounds, timeouts and retry limits are explicit so tests can shrink them.
"""
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
ENDPOINT_SCHEMES = ("http://", "https://", "ws://", "wss://")

# Usernames the system assigns before an owner picks one
PLACEHOLDER_USERNAME_PREFIXES: Tuple[str, ...] = ("Identity #", "User #")


# =============================================================================
# ENV HELPERS
# =============================================================================

def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def default_database_url() -> str:
    # Same local PostgreSQL convention as the rest of the backend
    return os.getenv(
        "DATABASE_URL",
        f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/reputation_sync"
    )


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass
class SyncSettings:
    """Configuration for the ledger reconciliation engine."""
    ledger_address: Optional[str] = None
    rpc_url: Optional[str] = None
    database_url: str = field(default_factory=default_database_url)
    ledger_client_factory: Optional[str] = None

    # Full-sync probing
    probe_max_consecutive_misses: int = 20
    probe_max_tokens: int = 100_000
    ledger_call_timeout_seconds: float = 10.0

    # Transient store failures
    store_retry_attempts: int = 3
    store_retry_base_delay_seconds: float = 0.2
    store_retry_max_delay_seconds: float = 2.0
    concurrent_write_attempts: int = 5

    # Pricing
    min_price: float = 0.01
    default_base_price: float = 10.0

    placeholder_prefixes: Tuple[str, ...] = PLACEHOLDER_USERNAME_PREFIXES
    internal_api_key: str = "sync-internal-key-change-in-production"

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from environment variables."""
        return cls(
            ledger_address=_env_str("CONTRACT_ADDRESS"),
            rpc_url=_env_str("RPC_URL"),
            database_url=default_database_url(),
            ledger_client_factory=_env_str("LEDGER_CLIENT_FACTORY"),
            probe_max_consecutive_misses=_env_int("SYNC_PROBE_MAX_CONSECUTIVE_MISSES", 20),
            probe_max_tokens=_env_int("SYNC_PROBE_MAX_TOKENS", 100_000),
            ledger_call_timeout_seconds=_env_float("LEDGER_CALL_TIMEOUT_SECONDS", 10.0),
            store_retry_attempts=_env_int("SYNC_STORE_RETRY_ATTEMPTS", 3),
            store_retry_base_delay_seconds=_env_float("SYNC_STORE_RETRY_BASE_DELAY_SECONDS", 0.2),
            store_retry_max_delay_seconds=_env_float("SYNC_STORE_RETRY_MAX_DELAY_SECONDS", 2.0),
            min_price=_env_float("SYNC_MIN_PRICE", 0.01),
            default_base_price=_env_float("SYNC_DEFAULT_BASE_PRICE", 10.0),
            internal_api_key=_env_str(
                "SYNC_INTERNAL_API_KEY", "sync-internal-key-change-in-production"
            ),
        )

    def validate(self) -> List[str]:
        """
        Check required ledger configuration.

        Returns a list of human-readable problems. Empty means valid.
        """
        errors: List[str] = []

        if not self.ledger_address:
            errors.append("CONTRACT_ADDRESS is not set")
        elif not ADDRESS_PATTERN.match(self.ledger_address):
            errors.append(f"CONTRACT_ADDRESS is not a valid address: {self.ledger_address!r}")

        if not self.rpc_url:
            errors.append("RPC_URL is not set")
        elif not self.rpc_url.lower().startswith(ENDPOINT_SCHEMES):
            errors.append(f"RPC_URL must be an http(s) or ws(s) endpoint: {self.rpc_url!r}")

        if self.probe_max_consecutive_misses < 1:
            errors.append("SYNC_PROBE_MAX_CONSECUTIVE_MISSES must be at least 1")
        if self.probe_max_tokens < 1:
            errors.append("SYNC_PROBE_MAX_TOKENS must be at least 1")
        if self.ledger_call_timeout_seconds <= 0:
            errors.append("LEDGER_CALL_TIMEOUT_SECONDS must be positive")
        if self.min_price <= 0:
            errors.append("SYNC_MIN_PRICE must be positive")

        return errors
