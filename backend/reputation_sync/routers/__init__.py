"""Reputation Sync - API Routers"""
from .sync import router as sync_router
from .identities import router as identities_router

__all__ = [
    "sync_router",
    "identities_router",
]
