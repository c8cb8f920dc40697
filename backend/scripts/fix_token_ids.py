#!/usr/bin/env python3
"""
Token ID Repair Script
Backs up the identity store, then re-aligns it with the identity ledger.

Usage:
    python -m scripts.fix_token_ids [address ...]

Each address given is verified (and fixed) before the full sync runs, and
verified again afterwards.

Example:
    CONTRACT_ADDRESS=0x... RPC_URL=https://rpc.example LEDGER_CLIENT_FACTORY=mypkg.ledger:build \
        python -m scripts.fix_token_ids 0x0941c361bbe04e739fab4fbac2e4b3a72edc810c
"""
import json
import os
import sys
import time
from typing import Dict, List

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from reputation_sync.config import SyncSettings
from reputation_sync.database import SessionLocal, init_db
from reputation_sync.models.db_models import IdentityDB
from reputation_sync.routers.identities import identity_to_dict
from reputation_sync.services.sync import LedgerSyncService, ServiceNotReadyError


def load_identities() -> List[Dict]:
    db: Session = SessionLocal()
    try:
        return [identity_to_dict(identity) for identity in db.query(IdentityDB).order_by(IdentityDB.token_id).all()]
    finally:
        db.close()


def write_backup(identities: List[Dict], directory: str = ".") -> str:
    path = os.path.join(directory, f"backup-identities-{int(time.time() * 1000)}.json")
    with open(path, "w") as f:
        json.dump(identities, f, indent=2, default=str)
    return path


def print_status(service: LedgerSyncService) -> None:
    status = service.get_service_status()
    print(f"  Config Valid: {'yes' if status['config_valid'] else 'NO'}")
    print(f"  Initialized:  {'yes' if status['initialized'] else 'NO'}")
    print(f"  Ready:        {'yes' if status['ready'] else 'NO'}")
    print(f"  Contract:     {status['contract_address']}")
    print(f"  RPC:          {status['rpc_url']}")
    for error in status["config_errors"]:
        print(f"  Error: {error}")


def run(addresses: List[str]) -> bool:
    settings = SyncSettings.from_env()
    errors = settings.validate()
    if errors:
        print("Environment validation failed:")
        for error in errors:
            print(f"  - {error}")
        return False

    init_db()
    service = LedgerSyncService(settings, SessionLocal)
    try:
        print("\nCHECKING LEDGER SYNC SERVICE STATUS:")
        if not service.start():
            print("Service not ready. Attempting reinitialization...")
            if not service.reinitialize():
                print_status(service)
                print("Failed to initialize ledger sync service. Check your configuration.")
                return False
        print_status(service)

        before = load_identities()
        print(f"\nCURRENT STORE STATE: {len(before)} identities")
        for identity in before:
            print(f"  {identity['username']} ({identity['owner_address']}): Token ID {identity['token_id']}")

        backup_path = write_backup(before)
        print(f"\nBackup created: {backup_path}")

        for address in addresses:
            verification = service.verify_address_token_id(address)
            print(f"\nVerification for {address}: {verification}")
            if not verification["correct"] and verification["ledger_token_id"] is not None:
                fixed = service.fix_address_token_id(address)
                print(f"Fix result: {'success' if fixed else 'FAILED'}")

        print("\nSTARTING FULL LEDGER SYNC...")
        summary = service.sync_all_identities()

        after = load_identities()
        old_tokens = {identity["owner_address"]: identity["token_id"] for identity in before}
        print("\nPOST-SYNC STORE STATE:")
        for identity in after:
            old = old_tokens.get(identity["owner_address"])
            note = f"(was {old}) FIXED" if old is not None and old != identity["token_id"] else ""
            print(f"  {identity['username']} ({identity['owner_address']}): Token ID {identity['token_id']} {note}")

        for address in addresses:
            verification = service.verify_address_token_id(address)
            label = "VERIFIED" if verification["correct"] else "MISMATCH"
            print(f"  {address}: DB={verification['db_token_id']}, Ledger={verification['ledger_token_id']} - {label}")

        print("\nSYNC SUMMARY:")
        print(f"  Total identities: {len(after)} (was {len(before)})")
        for key, value in summary.to_dict().items():
            if key != "error_details":
                print(f"  {key}: {value}")
        for detail in summary.error_details:
            print(f"  error: {detail}")
        print(f"  Backup saved: {backup_path}")
        return summary.errors == 0

    except ServiceNotReadyError as e:
        print(f"Error: {e}")
        return False
    finally:
        service.close()


def main():
    if any(arg in ("-h", "--help") for arg in sys.argv[1:]):
        print(__doc__)
        sys.exit(0)

    success = run(sys.argv[1:])
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
