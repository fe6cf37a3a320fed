"""
Realtime fan-out of negotiation events

The core publishes `message_posted` and `offer_updated` events after a
successful write. Delivery is best-effort: clients reconcile by re-reading the
chat thread on reconnect, the persisted history is the source of truth.
"""
import asyncio
import logging
from typing import Dict, Set, Protocol, Any

from negotiation_models import RealtimeEvent

logger = logging.getLogger(__name__)

MESSAGE_POSTED = "message_posted"
OFFER_UPDATED = "offer_updated"


def room_name(negotiation_id: str) -> str:
    return f"negotiation_{negotiation_id}"


class Broadcaster(Protocol):
    def publish(self, event: RealtimeEvent) -> None:
        ...


class NullBroadcaster:
    """Broadcaster for scripts and batch jobs where nobody is listening"""

    def publish(self, event: RealtimeEvent) -> None:
        logger.debug(f"Dropping {event.event} for negotiation {event.negotiation_id}")


class RealtimeHub:
    """
    In-process pub/sub keyed by negotiation room.

    Each WebSocket connection joins a room and gets its own queue. publish()
    must be called from the event loop thread (the FastAPI handlers are).
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._rooms: Dict[str, Set[asyncio.Queue]] = {}

    def join(self, negotiation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._rooms.setdefault(room_name(negotiation_id), set()).add(queue)
        logger.info(f"Subscriber joined room {room_name(negotiation_id)}")
        return queue

    def leave(self, negotiation_id: str, queue: asyncio.Queue) -> None:
        room = room_name(negotiation_id)
        subscribers = self._rooms.get(room)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._rooms[room]
        logger.info(f"Subscriber left room {room}")

    def subscriber_count(self, negotiation_id: str) -> int:
        return len(self._rooms.get(room_name(negotiation_id), ()))

    def publish(self, event: RealtimeEvent) -> None:
        payload: Dict[str, Any] = event.model_dump(mode="json")
        for queue in list(self._rooms.get(room_name(event.negotiation_id), ())):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                # Slow consumer; it will catch up by re-fetching the thread
                logger.warning(f"Dropping {event.event} for a slow subscriber of {room_name(event.negotiation_id)}")
