"""Reputation Sync - Ledger Client Interface"""
from .client import (
    LedgerClient, Subscription, RawLedgerEvent, EventHandler, ClientFactory,
    TimedLedgerReader, decode_identity, load_client_factory,
    LedgerError, LedgerTimeoutError, TokenNotFoundError, SubscriptionError,
)

__all__ = [
    "LedgerClient", "Subscription", "RawLedgerEvent", "EventHandler", "ClientFactory",
    "TimedLedgerReader", "decode_identity", "load_client_factory",
    "LedgerError", "LedgerTimeoutError", "TokenNotFoundError", "SubscriptionError",
]
