"""
Identity API Routes

Read-side endpoints over the identity store.

When the ledger sync service is ready, reads are verified against the
ledger and drifted token IDs are repaired before the response is built
(blockchain_verified=True). Otherwise the store's data is served as-is
and labelled blockchain_verified=False.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import IdentityDB
from ..models.events import normalize_address
from ..services.sync import LedgerSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/identities", tags=["identities"])


def get_optional_sync_service(request: Request) -> Optional[LedgerSyncService]:
    return getattr(request.app.state, "sync_service", None)


def identity_to_dict(identity: IdentityDB) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "token_id": identity.token_id,
        "username": identity.username,
        "owner_address": identity.owner_address,
        "is_original_owner": identity.is_original_owner,
        "primary_skill": identity.primary_skill,
        "reputation_score": identity.reputation_score,
        "skill_level": identity.skill_level,
        "achievement_count": identity.achievement_count,
        "is_verified": identity.is_verified,
        "last_update": identity.last_update,
        "nft_base_price": identity.nft_base_price,
        "current_price": identity.current_price,
        "profile": identity.profile,
        "tx_hash": identity.tx_hash,
        "last_synced_at": identity.last_synced_at.isoformat() if identity.last_synced_at else None,
        "created_at": identity.created_at.isoformat() if identity.created_at else None,
    }


def _verify_and_repair(service: LedgerSyncService, address: str) -> bool:
    """
    Merge the ledger's current view of one address into the store.

    Repairs token ID drift and stale stats alike. Returns True when the
    stored record can be labelled ledger-verified.
    """
    try:
        verification = service.verify_address_token_id(address)
        if verification["ledger_token_id"] is not None:
            if not verification["correct"]:
                logger.info(f"Auto-fixing token ID mismatch for {address}")
            return service.fix_address_token_id(address)
    except Exception as e:
        logger.error(f"Sync error for {address}: {e}")
    return False


@router.get("", response_model=dict)
def list_identities(
    page: int = 1,
    limit: int = 20,
    verify_ledger: bool = False,
    db: Session = Depends(get_db),
    service: Optional[LedgerSyncService] = Depends(get_optional_sync_service),
):
    """
    List identities by reputation.

    With verify_ledger=true and a ready sync service, each listed identity
    is verified (and repaired) against the ledger first.
    """
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    query = db.query(IdentityDB).order_by(IdentityDB.reputation_score.desc(), IdentityDB.created_at.desc())
    identities = query.offset((page - 1) * limit).limit(limit).all()

    verified = bool(verify_ledger and service is not None and service.ready)
    if verified:
        addresses = [identity.owner_address for identity in identities]
        for address in addresses:
            _verify_and_repair(service, address)
        db.expire_all()
        identities = query.offset((page - 1) * limit).limit(limit).all()

    total = db.query(IdentityDB).count()
    return {
        "success": True,
        "identities": [identity_to_dict(identity) for identity in identities],
        "blockchain_verified": verified,
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_items": total,
            "has_next": page * limit < total,
            "has_prev": page > 1,
        },
    }


@router.get("/{address}", response_model=dict)
def get_identity(
    address: str,
    db: Session = Depends(get_db),
    service: Optional[LedgerSyncService] = Depends(get_optional_sync_service),
):
    """
    Identity for an owner address.

    Ledger identities unknown to the store are imported on first lookup
    when the sync service is ready.
    """
    try:
        address = normalize_address(address)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid address")

    ready = service is not None and service.ready
    verified = False
    identity = db.query(IdentityDB).filter(IdentityDB.owner_address == address).first()

    if ready:
        if identity is None:
            verified = service.import_ledger_identity(address)
        else:
            verified = _verify_and_repair(service, address)
        db.expire_all()
        identity = db.query(IdentityDB).filter(IdentityDB.owner_address == address).first()

    if identity is None:
        raise HTTPException(status_code=404, detail="No identity found for this address")

    return {
        "success": True,
        "identity": identity_to_dict(identity),
        "blockchain_verified": verified,
    }
