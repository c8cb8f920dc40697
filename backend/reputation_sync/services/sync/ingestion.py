"""
Event Ingestion Loop

Subscribes to every ledger event kind, normalizes each raw event into a
typed ReconciliationEvent and hands it to the Reconciler.

Guarantees:
- A failing handler never stops delivery of later events.
- Subscription is all-or-nothing: a partial registration is rolled back.
- Re-subscription releases every previous handle first, so listener count
  never grows across reconnects.
- Reconnect raises the resync signal; gaps are closed by the full-sync
  scanner, never by this loop.
"""
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ...ledger.client import EventHandler, LedgerClient, RawLedgerEvent, Subscription
from ...models.events import EVENT_MODELS, LedgerEventKind, ReconciliationEvent
from .errors import EventValidationError
from .health import HealthMonitor
from .reconciler import Reconciler
from .sinks import LoggingSink, OutcomeSink, ReconciliationOutcome

logger = logging.getLogger(__name__)


# =============================================================================
# NORMALIZATION
# =============================================================================

# ABI argument name -> model field name
ARG_ALIASES: Dict[str, str] = {
    "tokenId": "token_id",
    "owner": "owner",
    "username": "username",
    "oldPrice": "old_price",
    "newPrice": "new_price",
    "reason": "reason",
    "goalIndex": "goal_index",
    "rewardPoints": "reward_points",
    "pricePenaltyBps": "price_penalty_bps",
    "penaltyBps": "price_penalty_bps",
    "newScore": "new_score",
    "buyer": "buyer",
    "seller": "seller",
    "price": "price",
    "title": "title",
    "points": "points",
}


def _event_timestamp(raw: RawLedgerEvent) -> Tuple[int, bool]:
    """(timestamp, came_from_ledger)."""
    if raw.timestamp is not None:
        return int(raw.timestamp), True
    if raw.args.get("timestamp") is not None:
        return int(raw.args["timestamp"]), True
    # Transport without block times: receipt time, usable for history ordering only
    return int(time.time()), False


def normalize_event(raw: RawLedgerEvent) -> ReconciliationEvent:
    """
    Build the typed event for a raw ledger log.

    Raises EventValidationError for unknown kinds or malformed payloads.
    """
    try:
        kind = LedgerEventKind(raw.name)
    except ValueError:
        raise EventValidationError(f"Unknown ledger event: {raw.name!r}")

    fields: Dict[str, Any] = {}
    for name, value in (raw.args or {}).items():
        target = ARG_ALIASES.get(name)
        if target is None and name in EVENT_MODELS[kind].model_fields and name != "kind":
            target = name
        if target is not None:
            fields[target] = value

    try:
        fields["tx_hash"] = raw.tx_hash
        fields["block_number"] = raw.block_number
        fields["timestamp"], fields["timestamp_from_ledger"] = _event_timestamp(raw)
        return EVENT_MODELS[kind](**fields)
    except (ValidationError, TypeError, ValueError) as e:
        raise EventValidationError(f"Malformed {raw.name} event (tx={raw.tx_hash}): {e}") from e


# =============================================================================
# LOOP
# =============================================================================

class EventIngestionLoop:
    """Owns the live subscription set for one ledger client."""

    def __init__(
        self,
        reconciler: Reconciler,
        health: HealthMonitor,
        sink: Optional[OutcomeSink] = None,
    ):
        self.reconciler = reconciler
        self.health = health
        self.sink = sink or LoggingSink()
        self._client: Optional[LedgerClient] = None
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    def start(self, client: LedgerClient) -> bool:
        """Subscribe to every event kind. Returns False if any registration failed."""
        with self._lock:
            self._release()
            self._client = client
            registered: List[Subscription] = []
            for kind in LedgerEventKind:
                try:
                    registered.append(client.subscribe(kind.value, self._handler_for(kind)))
                except Exception as e:
                    for subscription in registered:
                        self._unsubscribe_quietly(subscription)
                    self.health.record_subscription_failure(f"{kind.value}: {e}")
                    return False
            self._subscriptions = registered

        self.health.mark_listening(True)
        logger.info(f"Listening for {len(registered)} ledger event kinds")
        return True

    def stop(self) -> None:
        """Release every subscription handle."""
        with self._lock:
            self._release()
        self.health.mark_listening(False)

    def handle_disconnect(self) -> bool:
        """
        Tear down and re-establish the subscription after a connection loss.

        Events emitted while disconnected are not replayed; the resync
        signal tells operators (or a scheduler) to run a full sync.
        """
        logger.warning("Ledger connection lost; re-subscribing")
        self.health.recommend_full_sync("ledger connection lost; events may have been missed")
        client = self._client
        if client is None:
            self.stop()
            return False
        return self.start(client)

    def _release(self) -> None:
        for subscription in self._subscriptions:
            self._unsubscribe_quietly(subscription)
        self._subscriptions = []

    @staticmethod
    def _unsubscribe_quietly(subscription: Subscription) -> None:
        try:
            subscription.unsubscribe()
        except Exception as e:
            logger.warning(f"Failed to release ledger subscription: {e}")

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _handler_for(self, kind: LedgerEventKind) -> EventHandler:
        def handler(raw: RawLedgerEvent) -> None:
            self.handle(raw)
        handler.__name__ = f"on_{kind.value}"
        return handler

    def handle(self, raw: RawLedgerEvent) -> Optional[ReconciliationOutcome]:
        """Process one raw event. Never raises."""
        try:
            try:
                event = normalize_event(raw)
            except EventValidationError as e:
                outcome = self.reconciler.drop(raw.name, raw.args.get("tokenId"), raw.tx_hash, str(e))
            else:
                outcome = self.reconciler.apply(event)
            self.sink(outcome)
            return outcome
        except Exception:
            logger.exception(f"Handler for {raw.name} (tx={raw.tx_hash}) failed")
            self.health.record_event_failure()
            return None
