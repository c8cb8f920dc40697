"""
Reconciler

Applies one ledger fact to the identity store as an idempotent, minimal,
field-level write.

Core rules:
1. Ledger-owned fields follow the ledger. Off-chain profile data is never
   nulled or replaced; the only profile write is the achievement append.
2. Every identity write is UPDATE ... SET <changed columns> WHERE id = ? AND
   revision = ?. A lost compare-and-set re-reads and recomputes.
3. Duplicate deliveries are detected by transaction hash on the side
   collections and by value comparison on the identity row.
4. Transient store errors are retried with bounded backoff, then surfaced
   to the health monitor. Malformed or unresolvable events are dropped.

No in-process locks: concurrent writers (other instances, the full-sync
scanner) converge through the store's per-row conditional updates.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import SyncSettings
from ...models.db_models import (
    IdentityDB, PriceHistoryDB, AchievementHistoryDB, GoalProgressDB, NFTTransferDB,
    PriceTrigger, TransferType, ZERO_ADDRESS, empty_profile,
)
from ...models.events import (
    LedgerEventKind, ReconciliationEvent, IdentitySnapshot,
    IdentityCreated, PriceUpdated, GoalCompleted, GoalFailed,
    ReputationUpdated, IdentityPurchased, AchievementUnlocked,
)
from ...models.ownership import SNAPSHOT_FIELDS, check_engine_writable
from .errors import ConcurrentModificationError, EventValidationError, is_transient_store_error
from .health import HealthMonitor
from .merge_rules import (
    apply_price_penalty, change_percent, diff_fields, ledger_price_wins, snapshot_updates,
)
from .retry import with_retry
from .sinks import OutcomeStatus, ReconciliationOutcome
from .usernames import is_placeholder_username, resolve_username_collision, username_candidates

logger = logging.getLogger(__name__)

SNAPSHOT_KIND = "IdentitySnapshot"


def ledger_time(timestamp: int) -> datetime:
    """Ledger seconds -> naive UTC datetime, matching the store's DateTime columns."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


class Reconciler:
    """
    State-transition logic between ledger facts and the identity store.

    One session per attempt; the session factory is typically the
    application's SessionLocal.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: SyncSettings,
        health: Optional[HealthMonitor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.health = health
        self._sleep = sleep
        self._handlers = {
            LedgerEventKind.IDENTITY_CREATED: self._apply_identity_created,
            LedgerEventKind.PRICE_UPDATED: self._apply_price_updated,
            LedgerEventKind.GOAL_COMPLETED: self._apply_goal_completed,
            LedgerEventKind.GOAL_FAILED: self._apply_goal_failed,
            LedgerEventKind.REPUTATION_UPDATED: self._apply_reputation_updated,
            LedgerEventKind.IDENTITY_PURCHASED: self._apply_identity_purchased,
            LedgerEventKind.ACHIEVEMENT_UNLOCKED: self._apply_achievement_unlocked,
        }

    # =========================================================================
    # PUBLIC ENTRY POINTS
    # =========================================================================

    def apply(self, event: ReconciliationEvent) -> ReconciliationOutcome:
        """Apply one ledger event. Never raises for store or data errors."""
        handler = self._handlers.get(event.kind)
        if handler is None:
            return self.drop(event.kind.value, event.token_id, event.tx_hash, f"No handler for {event.kind}")
        return self._execute(
            event.kind.value, event.token_id, event.tx_hash,
            lambda db: handler(db, event),
        )

    def merge_snapshot(self, snapshot: IdentitySnapshot, create_missing: bool = False) -> ReconciliationOutcome:
        """
        Merge a ledger snapshot into the record held by the snapshot's owner.

        Shared by targeted repair and the full scan so drift repaired by
        rescan behaves exactly like drift repaired by live events.
        """
        return self._execute(
            SNAPSHOT_KIND, snapshot.token_id, None,
            lambda db: self._merge_snapshot(db, snapshot, create_missing),
        )

    # =========================================================================
    # EXECUTION / FAILURE SEMANTICS
    # =========================================================================

    def _execute(
        self,
        kind: str,
        token_id: Optional[int],
        tx_hash: Optional[str],
        fn: Callable[[Session], ReconciliationOutcome],
    ) -> ReconciliationOutcome:
        def on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            logger.warning(f"{kind} token={token_id}: transient store error (attempt {attempt}), retrying in {delay:.2f}s: {exc}")

        try:
            outcome = with_retry(
                lambda: self._run_with_cas(fn),
                attempts=self.settings.store_retry_attempts,
                base_delay_seconds=self.settings.store_retry_base_delay_seconds,
                max_delay_seconds=self.settings.store_retry_max_delay_seconds,
                retry_if=is_transient_store_error,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except EventValidationError as e:
            return self.drop(kind, token_id, tx_hash, str(e))
        except IntegrityError as e:
            return self.drop(kind, token_id, tx_hash, f"Unresolvable store constraint: {e.orig}")
        except ConcurrentModificationError as e:
            logger.error(f"{kind} token={token_id}: {e}")
            return ReconciliationOutcome(OutcomeStatus.FAILED, kind, token_id, tx_hash, message=str(e))
        except Exception as e:
            if not is_transient_store_error(e):
                raise
            if self.health:
                self.health.record_store_failure(f"{kind} token={token_id}: {e}")
            return ReconciliationOutcome(
                OutcomeStatus.FAILED, kind, token_id, tx_hash,
                message=f"Store unavailable after {self.settings.store_retry_attempts} attempts: {e}",
            )

        if self.health and self.health.last_store_error:
            self.health.clear_store_failure()
        outcome.kind = kind
        outcome.token_id = outcome.token_id if outcome.token_id is not None else token_id
        outcome.tx_hash = tx_hash
        return outcome

    def _run_with_cas(self, fn: Callable[[Session], ReconciliationOutcome]) -> ReconciliationOutcome:
        """Re-run the whole read/compute/write cycle when a concurrent writer wins."""
        attempts = max(1, self.settings.concurrent_write_attempts)
        last_error: Optional[Exception] = None
        for _ in range(attempts):
            try:
                return self._run(fn)
            except (ConcurrentModificationError, IntegrityError) as e:
                # Integrity races (same token inserted twice) resolve on re-read
                last_error = e
        raise last_error

    def _run(self, fn: Callable[[Session], ReconciliationOutcome]) -> ReconciliationOutcome:
        db = self.session_factory()
        try:
            outcome = fn(db)
            db.commit()
            return outcome
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def drop(self, kind: str, token_id: Optional[int], tx_hash: Optional[str], message: str) -> ReconciliationOutcome:
        logger.error(f"Dropping {kind} token={token_id} tx={tx_hash}: {message}")
        if self.health:
            self.health.record_dropped_event()
        return ReconciliationOutcome(OutcomeStatus.DROPPED, kind, token_id, tx_hash, message=message)

    # =========================================================================
    # STORE HELPERS
    # =========================================================================

    @staticmethod
    def _by_token(db: Session, token_id: int) -> Optional[IdentityDB]:
        return db.query(IdentityDB).filter(IdentityDB.token_id == token_id).first()

    @staticmethod
    def _by_owner(db: Session, owner_address: str) -> Optional[IdentityDB]:
        return db.query(IdentityDB).filter(IdentityDB.owner_address == owner_address.lower()).first()

    @staticmethod
    def _current(record: IdentityDB) -> Dict[str, Any]:
        return {column.name: getattr(record, column.name) for column in IdentityDB.__table__.columns}

    def _update_identity(
        self,
        db: Session,
        record: IdentityDB,
        values: Dict[str, Any],
        allow_profile: bool = False,
    ) -> List[str]:
        """Compare-and-set the given columns. Returns the changed column names."""
        values = diff_fields(self._current(record), values)
        if not values:
            return []
        if not allow_profile:
            check_engine_writable(values)

        payload = dict(values)
        payload["revision"] = record.revision + 1
        payload["updated_at"] = datetime.utcnow()
        payload["last_synced_at"] = datetime.utcnow()

        rows = db.query(IdentityDB).filter(
            IdentityDB.id == record.id,
            IdentityDB.revision == record.revision,
        ).update(payload, synchronize_session=False)
        if rows != 1:
            raise ConcurrentModificationError(
                f"Identity token={record.token_id} changed concurrently (revision {record.revision})"
            )
        return sorted(values)

    def _free_username(
        self,
        db: Session,
        desired: str,
        token_id: int,
        timestamp: int,
        exclude_id: Optional[str] = None,
    ) -> str:
        """Resolve `desired` against the usernames currently stored."""
        base = next(username_candidates(desired, token_id, timestamp))
        prefix = base[:60]
        query = db.query(IdentityDB.username).filter(IdentityDB.username.like(f"{prefix}%"))
        if exclude_id:
            query = query.filter(IdentityDB.id != exclude_id)
        taken = {row[0] for row in query.all()}
        username = resolve_username_collision(desired, taken, token_id, timestamp)
        if username != base:
            logger.info(f"Username '{base}' taken; token {token_id} gets '{username}'")
        return username

    def _record_transfer(
        self,
        db: Session,
        token_id: int,
        from_address: str,
        to_address: str,
        price: float,
        tx_hash: str,
        block_number: Optional[int],
        transfer_type: TransferType,
        identity_transfer: bool,
        timestamp: int,
    ) -> None:
        db.add(NFTTransferDB(
            id=str(uuid4()),
            token_id=token_id,
            from_address=from_address,
            to_address=to_address,
            price=price,
            tx_hash=tx_hash,
            block_number=block_number,
            transfer_type=transfer_type,
            identity_transfer=identity_transfer,
            timestamp=ledger_time(timestamp),
        ))

    @staticmethod
    def _transfer_exists(db: Session, tx_hash: str, transfer_type: TransferType) -> bool:
        return db.query(NFTTransferDB.id).filter(
            NFTTransferDB.tx_hash == tx_hash,
            NFTTransferDB.transfer_type == transfer_type,
        ).first() is not None

    @staticmethod
    def _price_entry_exists(db: Session, token_id: int, tx_hash: str, trigger: PriceTrigger) -> bool:
        return db.query(PriceHistoryDB.id).filter(
            PriceHistoryDB.token_id == token_id,
            PriceHistoryDB.tx_hash == tx_hash,
            PriceHistoryDB.triggered_by == trigger,
        ).first() is not None

    def _record_price(
        self,
        db: Session,
        token_id: int,
        old_price: float,
        new_price: float,
        reason: str,
        trigger: PriceTrigger,
        tx_hash: str,
        applied: bool,
        timestamp: int,
    ) -> None:
        db.add(PriceHistoryDB(
            id=str(uuid4()),
            token_id=token_id,
            old_price=old_price,
            new_price=new_price,
            change_percent=change_percent(old_price, new_price),
            reason=reason[:200],
            triggered_by=trigger,
            tx_hash=tx_hash,
            applied=applied,
            timestamp=ledger_time(timestamp),
        ))

    def _missing_identity(self, event: ReconciliationEvent, changed: List[str]) -> ReconciliationOutcome:
        """Event arrived for a token the store does not know yet."""
        if self.health:
            self.health.recommend_full_sync(f"{event.kind.value} for unknown token {event.token_id}")
        return ReconciliationOutcome(
            OutcomeStatus.SKIPPED,
            changed_fields=changed,
            message=f"Token {event.token_id} not in store; identity fields not updated",
        )

    @staticmethod
    def _result(changed: List[str], message: str = "") -> ReconciliationOutcome:
        status = OutcomeStatus.APPLIED if changed else OutcomeStatus.UNCHANGED
        return ReconciliationOutcome(status, changed_fields=changed, message=message)

    # =========================================================================
    # IdentityCreated
    # =========================================================================

    def _apply_identity_created(self, db: Session, event: IdentityCreated) -> ReconciliationOutcome:
        changed: List[str] = []
        if not self._transfer_exists(db, event.tx_hash, TransferType.MINT):
            self._record_transfer(
                db, event.token_id, ZERO_ADDRESS, event.owner, 0.0, event.tx_hash,
                event.block_number, TransferType.MINT, False, event.timestamp,
            )
            changed.append("nft_transfers")

        record = self._by_token(db, event.token_id)
        if record is None:
            holder = self._by_owner(db, event.owner)
            if holder is not None:
                # Same owner stored under a stale token ID: the ledger wins
                logger.warning(
                    f"Owner {event.owner} stored with token {holder.token_id}, "
                    f"ledger minted {event.token_id}; re-keying"
                )
                return self._result(changed + self._refresh_created(db, holder, event, rekey=True))
            return self._insert_identity(db, event, changed)

        return self._result(changed + self._refresh_created(db, record, event, rekey=False))

    def _refresh_created(self, db: Session, record: IdentityDB, event: IdentityCreated, rekey: bool) -> List[str]:
        values: Dict[str, Any] = {
            "is_verified": True,
            "tx_hash": event.tx_hash,
        }
        if event.timestamp_from_ledger:
            values["last_update"] = max(record.last_update or 0, event.timestamp)
        if rekey:
            values["token_id"] = event.token_id

        if record.owner_address != event.owner:
            other = self._by_owner(db, event.owner)
            if other is not None and other.id != record.id:
                logger.error(
                    f"Token {event.token_id}: owner {event.owner} already holds token "
                    f"{other.token_id}; keeping owner {record.owner_address}"
                )
            else:
                values["owner_address"] = event.owner

        if (
            event.username
            and event.username != record.username
            and is_placeholder_username(record.username, self.settings.placeholder_prefixes)
            and not is_placeholder_username(event.username, self.settings.placeholder_prefixes)
        ):
            values["username"] = self._free_username(
                db, event.username, event.token_id, event.timestamp, exclude_id=record.id
            )

        return self._update_identity(db, record, values)

    def _insert_identity(self, db: Session, event: IdentityCreated, changed: List[str]) -> ReconciliationOutcome:
        username = self._free_username(db, event.username, event.token_id, event.timestamp)
        now = datetime.utcnow()
        db.add(IdentityDB(
            id=str(uuid4()),
            token_id=event.token_id,
            username=username,
            owner_address=event.owner,
            is_original_owner=True,
            is_verified=True,
            last_update=event.timestamp if event.timestamp_from_ledger else 0,
            nft_base_price=self.settings.default_base_price,
            current_price=self.settings.default_base_price,
            price_updated_at=0,
            profile=empty_profile(),
            tx_hash=event.tx_hash,
            last_synced_at=now,
            created_at=now,
            updated_at=now,
            revision=0,
        ))
        # Surface uniqueness races here so the cycle re-reads and takes the update path
        db.flush()
        logger.info(f"Created identity token={event.token_id} username='{username}' owner={event.owner}")
        return ReconciliationOutcome(
            OutcomeStatus.APPLIED,
            changed_fields=changed + ["identity"],
            message=f"username={username}",
        )

    # =========================================================================
    # PriceUpdated
    # =========================================================================

    def _apply_price_updated(self, db: Session, event: PriceUpdated) -> ReconciliationOutcome:
        if self._price_entry_exists(db, event.token_id, event.tx_hash, PriceTrigger.LEDGER_UPDATE):
            return self._result([], "duplicate delivery")

        record = self._by_token(db, event.token_id)
        wins = record is not None and ledger_price_wins(event.timestamp, record.price_updated_at or 0)
        self._record_price(
            db, event.token_id, event.old_price, event.new_price,
            event.reason or "ledger price update", PriceTrigger.LEDGER_UPDATE,
            event.tx_hash, wins, event.timestamp,
        )

        if record is None:
            return self._missing_identity(event, ["price_history"])
        if not wins:
            logger.info(
                f"Token {event.token_id}: ledger price at t={event.timestamp} is not newer than "
                f"stored price at t={record.price_updated_at}; keeping {record.current_price}"
            )
            return self._result(["price_history"], "stale ledger price not applied")

        changed = self._update_identity(db, record, {
            "current_price": event.new_price,
            "price_updated_at": event.timestamp,
        })
        return self._result(["price_history"] + changed)

    # =========================================================================
    # ReputationUpdated
    # =========================================================================

    def _apply_reputation_updated(self, db: Session, event: ReputationUpdated) -> ReconciliationOutcome:
        record = self._by_token(db, event.token_id)
        if record is None:
            return self._missing_identity(event, [])
        values: Dict[str, Any] = {"reputation_score": event.new_score}
        if event.timestamp_from_ledger:
            values["last_update"] = max(record.last_update or 0, event.timestamp)
        changed = self._update_identity(db, record, values)
        return self._result(changed)

    # =========================================================================
    # GoalCompleted / GoalFailed
    # =========================================================================

    def _settle_goal(self, db: Session, event: ReconciliationEvent, completed: bool, values: Dict[str, Any]) -> bool:
        """
        Move a goal into its terminal state exactly once.

        Returns False if the goal was already completed or failed.
        """
        goal = db.query(GoalProgressDB).filter(
            GoalProgressDB.token_id == event.token_id,
            GoalProgressDB.goal_index == event.goal_index,
        ).first()
        when = ledger_time(event.timestamp)
        state = {"completed": True, "completed_at": when} if completed else {"failed": True, "failed_at": when}

        if goal is None:
            db.add(GoalProgressDB(
                id=str(uuid4()),
                token_id=event.token_id,
                goal_index=event.goal_index,
                title=f"Goal #{event.goal_index}",
                tx_hash=event.tx_hash,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
                **values,
                **state,
            ))
            db.flush()
            return True

        rows = db.query(GoalProgressDB).filter(
            GoalProgressDB.id == goal.id,
            GoalProgressDB.completed.is_(False),
            GoalProgressDB.failed.is_(False),
        ).update(
            {**values, **state, "tx_hash": event.tx_hash, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
        return rows == 1

    def _apply_goal_completed(self, db: Session, event: GoalCompleted) -> ReconciliationOutcome:
        if not self._settle_goal(db, event, True, {"reward_points": event.reward_points}):
            return self._result([], f"goal {event.goal_index} already settled")

        record = self._by_token(db, event.token_id)
        if record is None:
            return self._missing_identity(event, ["goal_progress"])
        changed = self._update_identity(db, record, {
            "reputation_score": record.reputation_score + event.reward_points,
        })
        return self._result(["goal_progress"] + changed)

    def _apply_goal_failed(self, db: Session, event: GoalFailed) -> ReconciliationOutcome:
        if not self._settle_goal(db, event, False, {"penalty_bps": event.price_penalty_bps}):
            return self._result([], f"goal {event.goal_index} already settled")

        record = self._by_token(db, event.token_id)
        if record is None:
            return self._missing_identity(event, ["goal_progress"])

        old_price = record.current_price
        new_price = apply_price_penalty(old_price, event.price_penalty_bps, self.settings.min_price)
        self._record_price(
            db, event.token_id, old_price, new_price,
            f"Goal #{event.goal_index} failed ({event.price_penalty_bps} bps penalty)",
            PriceTrigger.GOAL_FAILURE, event.tx_hash, True, event.timestamp,
        )
        changed = self._update_identity(db, record, {
            "current_price": new_price,
            "price_updated_at": max(record.price_updated_at or 0, event.timestamp),
        })
        return self._result(["goal_progress", "price_history"] + changed)

    # =========================================================================
    # IdentityPurchased
    # =========================================================================

    def _apply_identity_purchased(self, db: Session, event: IdentityPurchased) -> ReconciliationOutcome:
        if self._transfer_exists(db, event.tx_hash, TransferType.SALE):
            return self._result([], "duplicate delivery")

        record = self._by_token(db, event.token_id)
        identity_transfer = (
            record is not None
            and record.is_original_owner
            and record.owner_address == event.seller
        )
        if identity_transfer:
            buyer_record = self._by_owner(db, event.buyer)
            if buyer_record is not None and buyer_record.id != record.id:
                logger.warning(
                    f"Token {event.token_id}: buyer {event.buyer} already holds token "
                    f"{buyer_record.token_id}; recording as stake transfer"
                )
                identity_transfer = False

        self._record_transfer(
            db, event.token_id, event.seller, event.buyer, event.price, event.tx_hash,
            event.block_number, TransferType.SALE, identity_transfer, event.timestamp,
        )

        if record is None:
            return self._missing_identity(event, ["nft_transfers"])
        if not identity_transfer:
            logger.info(f"Stake purchase: token {event.token_id} -> {event.buyer}; identity stays with {record.owner_address}")
            return self._result(["nft_transfers"], "stake transfer")

        logger.info(f"Original owner sold identity token {event.token_id}: {event.seller} -> {event.buyer}")
        changed = self._update_identity(db, record, {
            "owner_address": event.buyer,
            "is_original_owner": False,
        })
        return self._result(["nft_transfers"] + changed, "identity transfer")

    # =========================================================================
    # AchievementUnlocked
    # =========================================================================

    def _apply_achievement_unlocked(self, db: Session, event: AchievementUnlocked) -> ReconciliationOutcome:
        exists = db.query(AchievementHistoryDB.id).filter(
            AchievementHistoryDB.token_id == event.token_id,
            AchievementHistoryDB.tx_hash == event.tx_hash,
        ).first()
        if exists is not None:
            return self._result([], "duplicate delivery")

        db.add(AchievementHistoryDB(
            id=str(uuid4()),
            token_id=event.token_id,
            title=event.title,
            points=event.points,
            tx_hash=event.tx_hash,
            timestamp=ledger_time(event.timestamp),
        ))

        record = self._by_token(db, event.token_id)
        if record is None:
            return self._missing_identity(event, ["achievement_history"])

        # Append-only: every other profile key is carried over untouched
        profile = dict(record.profile or empty_profile())
        achievements = list(profile.get("achievements") or [])
        if any(a.get("tx_hash") == event.tx_hash for a in achievements if isinstance(a, dict)):
            return self._result(["achievement_history"])
        achievements.append({
            "id": f"ledger_{event.tx_hash}",
            "title": event.title,
            "points": event.points,
            "date_achieved": ledger_time(event.timestamp).isoformat(),
            "verified": True,
            "source": "ledger",
            "tx_hash": event.tx_hash,
        })
        profile["achievements"] = achievements
        changed = self._update_identity(db, record, {"profile": profile}, allow_profile=True)
        return self._result(["achievement_history"] + [f"{name}.achievements" for name in changed])

    # =========================================================================
    # SNAPSHOT MERGE (full sync / targeted repair)
    # =========================================================================

    def _merge_snapshot(self, db: Session, snapshot: IdentitySnapshot, create_missing: bool) -> ReconciliationOutcome:
        record = self._by_owner(db, snapshot.owner_address)
        if record is None:
            if create_missing and self._by_token(db, snapshot.token_id) is None:
                event = IdentityCreated(
                    token_id=snapshot.token_id,
                    owner=snapshot.owner_address,
                    username="",
                    tx_hash=f"sync:{snapshot.token_id}",
                    timestamp=snapshot.last_update,
                )
                outcome = self._insert_identity(db, event, [])
                record = self._by_token(db, snapshot.token_id)
                stats = self._update_identity(db, record, {
                    name: getattr(snapshot, name) for name in SNAPSHOT_FIELDS
                })
                outcome.changed_fields += stats
                return outcome
            return ReconciliationOutcome(
                OutcomeStatus.UNCHANGED,
                message=f"No store record for {snapshot.owner_address}",
            )

        current = self._current(record)
        if record.token_id != snapshot.token_id:
            other = self._by_token(db, snapshot.token_id)
            if other is not None and other.id != record.id:
                raise EventValidationError(
                    f"Token {snapshot.token_id} already stored for {other.owner_address}; "
                    f"cannot re-key {snapshot.owner_address}"
                )
            logger.warning(
                f"Token ID drift for {snapshot.owner_address}: store={record.token_id} "
                f"ledger={snapshot.token_id}"
            )
            # Stats stored under the wrong token are meaningless; take the snapshot wholesale
            values = {name: getattr(snapshot, name) for name in SNAPSHOT_FIELDS}
            values["token_id"] = snapshot.token_id
            values["last_update"] = snapshot.last_update
        else:
            values = snapshot_updates(current, snapshot)

        changed = self._update_identity(db, record, values)
        return self._result(changed)
