"""
Queue event fan-out.

The token engine hands committed domain events to an `EventDispatcher`, which
publishes them in order on a background task so that no queue operation waits
on the transport. Delivery is best effort: a failed publish is logged and the
event is dropped, the committed mutation stands.
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol
from uuid import UUID

from pydantic import BaseModel, Field

from queueflow.core.cache import CacheService
from queueflow.schemas.token import TokenRead

logger = logging.getLogger(__name__)


class QueueEventType(str, Enum):
    TOKEN_ENQUEUED = "token_enqueued"
    TOKEN_POSITIONS_CHANGED = "token_positions_changed"
    TOKEN_CALLED = "token_called"
    TOKEN_COMPLETED = "token_completed"
    TOKEN_CANCELLED = "token_cancelled"
    QUEUE_OCCUPANCY_CHANGED = "queue_occupancy_changed"
    TOKEN_ASSIGNED = "token_assigned"
    CUSTOMER_MESSAGED = "customer_messaged"


class QueueEvent(BaseModel):
    event_type: QueueEventType
    queue_id: UUID
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> str:
        return self.model_dump_json()


class EventPublisher(Protocol):
    async def publish(self, event: QueueEvent) -> None:
        ...


class RedisEventPublisher:
    """Publishes each event as JSON on the `queue_events:<queue_id>` channel."""

    def __init__(self, cache: CacheService):
        self.cache = cache

    async def publish(self, event: QueueEvent) -> None:
        channel = self.cache.queue_channel(event.queue_id)
        receivers = await self.cache.publish(channel, event.to_message())
        logger.debug(f"Published {event.event_type.value} to {channel} ({receivers} subscribers)")


class InMemoryEventPublisher:
    """
    Keeps published events in a list. Used when Redis is unreachable so that
    single-process deployments still have an ordered event log, and in tests.
    """

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: List[QueueEvent] = []

    async def publish(self, event: QueueEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def for_queue(self, queue_id: UUID) -> List[QueueEvent]:
        return [e for e in self.events if e.queue_id == queue_id]


class EventDispatcher:
    """
    FIFO hand-off between the token engine and an EventPublisher.

    `emit()` never awaits the publisher. A single worker drains the buffer, so
    events leave in exactly the order they were emitted; the engine emits while
    still holding the queue lock, which makes that order the mutation order.
    """

    def __init__(self, publisher: EventPublisher, max_buffer: int = 10000):
        self.publisher = publisher
        self._buffer: asyncio.Queue[QueueEvent] = asyncio.Queue(maxsize=max_buffer)
        self._worker: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def emit(self, events: Iterable[QueueEvent]) -> None:
        for event in events:
            try:
                self._buffer.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(f"Event buffer full, dropping {event.event_type.value} for queue {event.queue_id}")

    async def start(self):
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._drain())
        logger.info(f"Event dispatcher started with {type(self.publisher).__name__}")

    async def stop(self):
        """Publishes whatever is already buffered, then stops the worker."""
        if not self._running:
            return
        await self._buffer.join()
        self._running = False
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("Event dispatcher stopped")

    async def flush(self):
        """Wait until every buffered event has been handed to the publisher."""
        await self._buffer.join()

    async def _drain(self):
        while True:
            event = await self._buffer.get()
            try:
                await self.publisher.publish(event)
            except Exception as e:
                logger.warning(
                    f"Failed to publish {event.event_type.value} for queue {event.queue_id}: {e}"
                )
            finally:
                self._buffer.task_done()


def token_payload(token) -> Dict[str, Any]:
    return json.loads(TokenRead.model_validate(token).model_dump_json())


def active_list_payload(tokens) -> List[Dict[str, Any]]:
    return [token_payload(t) for t in tokens]
