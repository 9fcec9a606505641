"""In-memory event store for the raffle service.

The raffle and the coordinator publish their observable events here; the
operator, the auto-fulfiller and the web server subscribe to them.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import asdict
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from raffle.lottery.models import (
    LiveFeedItem,
    RaffleEvent,
    RaffleSnapshot,
    RoundSnapshot,
)
from raffle.utils.common import from_wei, shorten_eth_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[Optional[dict]], None]

# Events that are mirrored into the live activity feed.
LIVE_FEED_EVENTS = {
    "RaffleEnter",
    "RequestedRaffleWinner",
    "WinnerPicked",
    "RandomWordsRequested",
    "RandomWordsFulfilled",
}


class MemoryStore:
    """Volatile storage for raffle events, live feed and round history."""

    def __init__(
        self,
        *,
        feed_capacity: int = 100,
        history_capacity: int = 20,
        event_capacity: int = 1000,
    ) -> None:
        self._lock = Lock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._feed_capacity = feed_capacity
        self._history_capacity = history_capacity
        self._events: deque[RaffleEvent] = deque(maxlen=event_capacity)
        self._live_feed: deque[LiveFeedItem] = deque(maxlen=feed_capacity)
        self._history: deque[RoundSnapshot] = deque(maxlen=history_capacity)
        self._raffle_snapshot: Optional[RaffleSnapshot] = None
        self._sequence = 0

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug("[MemoryStore] Added listener for event_type=%s, callback=%s", event_type, callback)

    def remove_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

    def _emit(self, event_type: str, payload: dict | None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
        for callback in listeners:
            try:
                logger.debug("Emitting %s event to listener", event_type)
                callback(payload)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event_type, exc)

    # ------------------------------------------------------------------
    # Event publishing
    # ------------------------------------------------------------------
    def emit_event(self, name: str, args: Dict[str, Any], *, timestamp: int = 0) -> RaffleEvent:
        """Record an observable event and notify listeners.

        Listeners registered for ``name`` receive the serialized event, as do
        listeners registered for the catch-all ``"raffle_event"`` type.
        Events named in ``LIVE_FEED_EVENTS`` are also appended to the live
        feed.
        """
        with self._lock:
            self._sequence += 1
            event = RaffleEvent(name=name, args=dict(args), timestamp=timestamp, sequence=self._sequence)
            self._events.append(event)

        logger.info("[MemoryStore] %s %s", name, args)
        if name in LIVE_FEED_EVENTS:
            self.add_live_feed(
                event_type=name,
                message=self._generate_event_message(name, args),
                details={**args, "timestamp": timestamp},
            )

        payload = self._serialize_event(event)
        self._emit(name, payload)
        self._emit("raffle_event", payload)
        return event

    def add_live_feed(
        self,
        *,
        event_type: str,
        message: str,
        details: Dict[str, Any] | None = None,
    ) -> None:
        """Append a live-feed item and notify ``live_feed`` listeners."""
        safe_details = dict(details or {})
        feed_item = LiveFeedItem(
            event_type=event_type,
            message=message,
            details=safe_details,
            event_time=int(safe_details.get("timestamp", 0) or 0),
        )
        with self._lock:
            self._live_feed.append(feed_item)
        self._emit("live_feed", self._serialize_feed_item(feed_item))

    def set_raffle_snapshot(self, snapshot: RaffleSnapshot) -> None:
        with self._lock:
            self._raffle_snapshot = snapshot
        self._emit("raffle_update", self._serialize_snapshot(snapshot))

    def add_history_snapshot(self, snapshot: RoundSnapshot) -> None:
        with self._lock:
            self._history.append(snapshot)
        logger.info("[MemoryStore] Added history snapshot for round %s", snapshot.round_id)
        self._emit("history_update", self._serialize_history())

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get_raffle_snapshot(self) -> Optional[RaffleSnapshot]:
        with self._lock:
            return self._raffle_snapshot

    def get_events(self, name: Optional[str] = None, limit: Optional[int] = None) -> List[RaffleEvent]:
        with self._lock:
            items = list(self._events)
        if name is not None:
            items = [item for item in items if item.name == name]
        if limit is not None:
            return items[-limit:]
        return items

    def get_round_history(self, limit: Optional[int] = None) -> List[RoundSnapshot]:
        with self._lock:
            items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    def get_live_feed(self, limit: Optional[int] = None) -> List[LiveFeedItem]:
        with self._lock:
            items = list(self._live_feed)
        if limit is not None:
            return items[-limit:]
        return items

    def clear_all_data(self) -> None:
        with self._lock:
            self._events.clear()
            self._live_feed.clear()
            self._history.clear()
            self._raffle_snapshot = None
        self._emit("history_update", self._serialize_history())
        logger.debug("[MemoryStore] clear_all_data called")

    # ------------------------------------------------------------------
    # Runtime resizing helpers
    # ------------------------------------------------------------------
    def set_feed_capacity(self, capacity: int) -> None:
        """Resize the live feed capacity (max entries)."""
        with self._lock:
            if capacity == self._feed_capacity:
                return
            old_items = list(self._live_feed)
            self._live_feed = deque(old_items[-capacity:], maxlen=capacity)
            self._feed_capacity = capacity
        logger.info("[MemoryStore] live feed capacity set to %s", capacity)

    def set_history_capacity(self, capacity: int) -> None:
        """Resize the round history capacity (max snapshots)."""
        with self._lock:
            if capacity == self._history_capacity:
                return
            old_items = list(self._history)
            self._history = deque(old_items[-capacity:], maxlen=capacity)
            self._history_capacity = capacity
        logger.info("[MemoryStore] history capacity set to %s", capacity)

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _serialize_event(event: RaffleEvent) -> dict:
        return {
            "name": event.name,
            "args": dict(event.args),
            "timestamp": event.timestamp,
            "sequence": event.sequence,
        }

    @staticmethod
    def _serialize_feed_item(item: LiveFeedItem) -> dict:
        return {
            "id": item.get_item_id(),
            "type": item.event_type,
            "message": item.message,
            "details": item.details,
            "timestamp": item.event_time,
        }

    @staticmethod
    def _serialize_snapshot(snapshot: RaffleSnapshot) -> dict:
        payload = asdict(snapshot)
        payload["state"] = snapshot.state.name
        return payload

    def _serialize_history(self) -> dict:
        rounds = [asdict(snapshot) for snapshot in self.get_round_history()]
        rounds.sort(key=lambda item: item["round_id"], reverse=True)
        return {"rounds": rounds}

    def _generate_event_message(self, event_type: str, args: Dict[str, Any] | None) -> str:
        """Generate a short human-friendly message for the live feed."""
        a = args or {}
        if event_type == "RaffleEnter":
            player = shorten_eth_address(a.get("player", "")) or "a player"
            amount = a.get("amount")
            if isinstance(amount, int):
                return f"{player} entered for {from_wei(amount):.4f} ETH"
            return f"{player} entered the raffle"

        if event_type == "RequestedRaffleWinner":
            return f"Draw started for round {a.get('roundId')} (request {a.get('requestId')})"

        if event_type == "WinnerPicked":
            winner = shorten_eth_address(a.get("winner", "")) or "unknown"
            return f"Round {a.get('roundId')} winner: {winner}"

        if event_type == "RandomWordsRequested":
            return f"Randomness requested (request {a.get('requestId')})"

        if event_type == "RandomWordsFulfilled":
            status = "delivered" if a.get("success") else "delivery failed"
            return f"Randomness {status} (request {a.get('requestId')})"

        return event_type


# Global store used by the application entry point.
memory_store = MemoryStore()
