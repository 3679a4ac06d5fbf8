"""Server-Sent Events (SSE) endpoint for dispatch events.

Streams every event published on the application's ``EventBus`` (offers
created and resolved, tasks assigned, unfulfilled or cancelled) to
connected clients, optionally filtered to a single task.
"""

from __future__ import annotations

from typing import AsyncIterator
from uuid import UUID

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from runnermatch.logging import get_logger
from runnermatch.orchestrator.events import EventBus

logger = get_logger(__name__)


def create_events_router() -> APIRouter:
    """Create the events router with SSE streaming endpoint."""
    router = APIRouter(prefix="/events", tags=["events"])

    @router.get("/stream")
    async def stream_events(
        request: Request, task_id: UUID | None = None
    ) -> EventSourceResponse:
        """Stream dispatch events until the client disconnects.

        Args:
            request: FastAPI request object for disconnection detection.
            task_id: Only stream events for this task.
        """
        bus: EventBus = request.app.state.event_bus
        subscription = bus.subscribe()
        logger.info(
            "sse_client_connected",
            task_id=str(task_id) if task_id else None,
            total_clients=bus.subscriber_count,
        )

        async def event_generator() -> AsyncIterator[dict]:
            try:
                async for event in subscription:
                    if await request.is_disconnected():
                        break
                    if task_id is not None and event.task_id != task_id:
                        continue
                    yield event.to_sse()
            finally:
                subscription.close()
                logger.info("sse_client_disconnected", total_clients=bus.subscriber_count)

        return EventSourceResponse(event_generator())

    return router
