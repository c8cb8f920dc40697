"""
Reputation Sync - FastAPI Application

Main entry point for the identity ledger sync backend.

Architecture:
- Ledger events -> EventIngestionLoop -> Reconciler -> identity store
- FullSyncScanner -> Reconciler (pull-mode repair of missed events)
- HealthMonitor gates every repair path on config_valid / initialized / ready
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import SyncSettings
from .database import SessionLocal, init_db
from .ledger.client import ClientFactory
from .routers import sync_router, identities_router
from .services.sync import LedgerSyncService

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(
    settings: Optional[SyncSettings] = None,
    session_factory: Callable = SessionLocal,
    client_factory: Optional[ClientFactory] = None,
    bind=None,
) -> FastAPI:
    """Build the application; the sync service lives on app.state."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize database and start the sync service on startup."""
        init_db(bind=bind)
        service = LedgerSyncService(settings or SyncSettings.from_env(), session_factory, client_factory)
        if not service.start():
            logger.warning("Ledger sync service not ready; serving store-only data")
        app.state.sync_service = service
        yield
        service.close()

    app = FastAPI(
        lifespan=lifespan,
        title="Reputation Sync",
        description="""
        Reputation Sync - Identity Ledger Reconciliation

        Keeps the off-chain identity store consistent with the on-chain
        identity ledger.

        ## Paths
        1. **Live events**: ledger subscription -> Reconciler
        2. **Full sync**: ledger enumeration -> Reconciler
        3. **Targeted repair**: verify / fix one address

        ## Key Principles
        - The ledger is authoritative for ownership, token ID and stats
        - Off-chain profile data is never overwritten by reconciliation
        - Every event is idempotent under duplicate delivery
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync_router)
    app.include_router(identities_router)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "Reputation Sync",
            "version": VERSION,
            "description": "Identity ledger reconciliation engine",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Tri-state health of the sync engine."""
        service = getattr(app.state, "sync_service", None)
        if service is None:
            return {"status": "starting", "version": VERSION}
        status = service.get_service_status()
        return {
            "status": "healthy" if status["ready"] and not status["degraded"] else (
                "degraded" if status["ready"] else "not_ready"
            ),
            "version": VERSION,
            "config_valid": status["config_valid"],
            "initialized": status["initialized"],
            "ready": status["ready"],
            "listener_count": status["listener_count"],
            "resync_recommended": status["resync_recommended"],
        }

    return app


app = create_app()


# For running with: python -m reputation_sync.main
if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8002)
