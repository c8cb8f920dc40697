"""
Ledger Sync API Routes

Internal endpoints for operators and schedulers:
status, reinitialization, targeted token ID repair, full sync and
direct ledger lookups.

Repair endpoints answer 503 while the service is not ready.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header, Request

from ..services.sync import LedgerSyncService, ServiceNotReadyError


router = APIRouter(prefix="/internal/sync", tags=["sync"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_sync_service(request: Request) -> LedgerSyncService:
    """The service instance built by the application lifespan."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ledger sync service not configured")
    return service


async def verify_internal_key(
    x_internal_key: str = Header(...),
    service: LedgerSyncService = Depends(get_sync_service),
):
    """Verify internal API key for sync endpoints."""
    if x_internal_key != service.settings.internal_api_key:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# STATUS
# =============================================================================

@router.get("/status", response_model=dict)
async def get_status(
    service: LedgerSyncService = Depends(get_sync_service),
    _: bool = Depends(verify_internal_key),
):
    """Tri-state health plus degraded/resync signals."""
    status = service.get_service_status()
    return {
        "success": True,
        "data": status,
        "message": "Ledger sync service is ready" if status["ready"] else "Ledger sync service not ready",
    }


@router.post("/reinitialize", response_model=dict)
def reinitialize(
    service: LedgerSyncService = Depends(get_sync_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Rebuild the ledger client and re-subscribe.

    Old listeners are released first.
    """
    if not service.reinitialize():
        raise HTTPException(status_code=500, detail="Failed to reinitialize ledger sync service")
    return {"success": True, "message": "Ledger sync service reinitialized successfully"}


# =============================================================================
# REPAIR
# =============================================================================

@router.post("/full-sync", response_model=dict)
def run_full_sync(
    service: LedgerSyncService = Depends(get_sync_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Enumerate every ledger identity and merge it into the store.

    Safe to run while live events are being processed.
    """
    try:
        summary = service.sync_all_identities()
    except ServiceNotReadyError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "task": "full_sync",
        "run_date": datetime.now(timezone.utc).isoformat(),
        **summary.to_dict(),
    }


@router.get("/verify/{address}", response_model=dict)
def verify_address(
    address: str,
    service: LedgerSyncService = Depends(get_sync_service),
    _: bool = Depends(verify_internal_key),
):
    """Compare stored and ledger token IDs for one address."""
    return service.verify_address_token_id(address)


@router.post("/fix/{address}", response_model=dict)
def fix_address(
    address: str,
    service: LedgerSyncService = Depends(get_sync_service),
    _: bool = Depends(verify_internal_key),
):
    """Re-align one address's stored record with the ledger."""
    try:
        fixed = service.fix_address_token_id(address)
    except ServiceNotReadyError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": fixed, "address": address.lower()}


# =============================================================================
# LEDGER LOOKUP
# =============================================================================

@router.get("/ledger/{address}", response_model=dict)
def get_ledger_identity(
    address: str,
    service: LedgerSyncService = Depends(get_sync_service),
    _: bool = Depends(verify_internal_key),
):
    """Identity as the ledger currently reports it."""
    snapshot = service.get_ledger_identity(address)
    if snapshot is None:
        return {"success": False, "data": None, "message": "No identity found for this address"}
    return {"success": True, "data": snapshot.to_dict(), "source": "blockchain"}
