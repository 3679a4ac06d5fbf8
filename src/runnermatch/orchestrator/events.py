"""Dispatch events and the in-process event bus.

The dispatcher publishes an event for every offer made, every offer
resolved, and every terminal task outcome. Subscribers (the SSE endpoint,
notification bridges, tests) each get their own queue so a slow consumer
never blocks the dispatcher or other consumers.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, ClassVar

import structlog
from pydantic import BaseModel, Field

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.offer import OfferState

logger = structlog.get_logger(__name__)


class DispatchEvent(BaseModel):
    """Base class for dispatch events."""

    event_type: ClassVar[str] = "dispatch"

    task_id: uuid.UUID
    occurred_at: datetime = Field(default_factory=utcnow)

    def to_sse(self) -> dict[str, Any]:
        """Convert event to dictionary format for SSE transmission."""
        return {
            "event": self.event_type,
            "data": self.model_dump_json(),
        }


class OfferCreated(DispatchEvent):
    event_type: ClassVar[str] = "offer_created"

    offer_id: uuid.UUID
    performer_id: uuid.UUID
    expires_at: datetime


class OfferResolved(DispatchEvent):
    event_type: ClassVar[str] = "offer_resolved"

    offer_id: uuid.UUID
    performer_id: uuid.UUID
    outcome: OfferState


class TaskAssigned(DispatchEvent):
    event_type: ClassVar[str] = "task_assigned"

    performer_id: uuid.UUID


class TaskUnfulfilled(DispatchEvent):
    event_type: ClassVar[str] = "task_unfulfilled"


class TaskCancelled(DispatchEvent):
    event_type: ClassVar[str] = "task_cancelled"


_CLOSED = object()


class EventSubscription:
    """One subscriber's view of the bus; iterate it to receive events.

    Registered with the bus on creation, so no event published after
    ``subscribe()`` returns can be missed.
    """

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, item: Any) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> DispatchEvent | None:
        """Next event, or None once the subscription is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel so later calls also see the end
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        """Stop receiving events and wake any pending ``get``."""
        self._bus._unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[DispatchEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DispatchEvent]:
        try:
            while True:
                event = await self.get()
                if event is None:
                    break
                yield event
        finally:
            self._bus._unsubscribe(self)

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class EventBus:
    """Fans dispatch events out to subscribers.

    Owned by the application and passed to the dispatcher; there is no
    module-level instance.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self.max_queue_size = max_queue_size
        self._subscriptions: list[EventSubscription] = []
        self.logger = logger.bind(component="EventBus")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> EventSubscription:
        """Register a new subscriber."""
        subscription = EventSubscription(self, self.max_queue_size)
        self._subscriptions.append(subscription)
        self.logger.debug("event_subscriber_added", total=len(self._subscriptions))
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            self.logger.debug(
                "event_subscriber_removed", total=len(self._subscriptions)
            )

    async def publish(self, event: DispatchEvent) -> None:
        """Deliver an event to every current subscriber.

        Subscribers whose queue is full miss the event; the drop is counted
        on the subscription and logged.
        """
        for subscription in list(self._subscriptions):
            before = subscription.dropped
            subscription._offer(event)
            if subscription.dropped != before:
                self.logger.warning(
                    "event_dropped_for_slow_subscriber",
                    event_type=event.event_type,
                    task_id=str(event.task_id),
                )
        self.logger.debug(
            "event_published",
            event_type=event.event_type,
            task_id=str(event.task_id),
            subscriber_count=len(self._subscriptions),
        )

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscriptions):
            subscription.close()
