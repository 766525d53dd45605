"""
In-process fan-out of campaign events to every open client connection.

Delivery is at-most-once with no backlog: a client that was not connected when
an event was published refetches authoritative state instead. Receivers filter
by the ``campaign_id`` carried in every payload.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, Set

from schemas import EventEnvelope

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "turn_change",
    "turn_ended",
    "turn_based_changed",
    "participant_joined",
    "participant_added",
    "participant_removed",
    "item_rewarded",
    "currency_rewarded",
    "npc_action",
})


class QueueConnection:
    """Connection handle for one WebSocket, bound to the loop that serves it.

    ``send`` may be called from any thread; messages are handed to the loop
    and drained by the WebSocket endpoint.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    def send(self, message: Dict[str, Any]) -> None:
        if self.loop.is_closed():
            raise ConnectionError("connection loop is closed")
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)


class BroadcastHub:
    def __init__(self):
        self._connections: Set[Any] = set()
        self._lock = threading.Lock()

    def subscribe(self, connection) -> None:
        with self._lock:
            self._connections.add(connection)
        logger.info("Realtime client connected (%d open)", len(self._connections))

    def unsubscribe(self, connection) -> None:
        with self._lock:
            self._connections.discard(connection)
        logger.info("Realtime client disconnected (%d open)", len(self._connections))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> int:
        """Send ``{"type", "payload"}`` to every open connection; returns how many accepted it."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        message = EventEnvelope(type=event_type, payload=payload).model_dump(mode="json")
        with self._lock:
            connections = list(self._connections)

        delivered = 0
        dead = []
        for connection in connections:
            try:
                connection.send(message)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping realtime connection after failed send: %s", exc)
                dead.append(connection)

        for connection in dead:
            self.unsubscribe(connection)

        logger.debug("Published %s to %d connection(s)", event_type, delivered)
        return delivered


hub = BroadcastHub()
