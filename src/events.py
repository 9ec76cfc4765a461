"""
Audit Events - Recording and streaming of human-readable resource events.

The EventRecorder is what reconcilers call; it logs the event, stores it in
the event history and publishes it on the in-memory EventBus, which backs
the Server-Sent Events watch endpoint.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import ComponentTemplate

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Severity of an audit event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class AuditEvent:
    """A human-readable event about a resource."""

    event_type: EventType
    reason: str
    message: str
    resource_id: int
    namespace: str
    name: str
    timestamp: str

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return f"event: {self.event_type.value}\ndata: {json.dumps(data)}\n\n"

    @classmethod
    def for_resource(
        cls,
        resource: ComponentTemplate,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> "AuditEvent":
        return cls(
            event_type=event_type,
            reason=reason,
            message=message,
            resource_id=resource.id,
            namespace=resource.namespace,
            name=resource.name,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[AuditEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[AuditEvent]:
        return self

    async def __anext__(self) -> AuditEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes without
    blocking; events for subscribers whose queue is full are dropped.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: AuditEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[AuditEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and end its iteration with a ``None`` sentinel.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")


class EventRecorder:
    """
    Fire-and-forget audit event recorder.

    Failing to store or publish an event is logged and never raised, so
    event plumbing can't fail a reconciliation.
    """

    def __init__(self, db: Any = None, event_bus: Optional[EventBus] = None):
        self._db = db
        self._event_bus = event_bus

    async def event(
        self,
        resource: ComponentTemplate,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        event = AuditEvent.for_resource(resource, event_type, reason, message)
        log = logger.warning if event_type is EventType.WARNING else logger.info
        log(f"{resource.namespace}/{resource.name}: {reason}: {message}")

        try:
            if self._db is not None:
                await self._db.record_event(
                    resource.id, event_type.value, reason, message
                )
            if self._event_bus is not None:
                await self._event_bus.publish(event)
        except Exception as e:
            logger.warning(f"Failed to record event {reason} for {resource.name}: {e}")
