"""Persistence boundary for the dispatch engine.

The matching and orchestration layers talk to storage only through the
``DispatchStore`` protocol defined here. ``SqlDispatchStore`` implements it
on top of the SQLAlchemy query modules, opening a short-lived session per
call so that concurrent dispatch runs never share a session.

Reads feeding the ranker raise ``DataUnavailable`` on backend failure so the
caller can degrade (empty history, empty pool) instead of aborting.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from runnermatch.database.models.offer import Offer, OfferState
from runnermatch.database.models.performer import Performer
from runnermatch.database.models.task import Task, TaskKind, TaskStatus
from runnermatch.database.queries import offer as offer_queries
from runnermatch.database.queries import performer as performer_queries
from runnermatch.database.queries import task as task_queries
from runnermatch.geo import Location, bounding_box


class DataUnavailable(Exception):
    """Raised when a read needed for ranking cannot be served."""


class OfferConflictError(Exception):
    """Raised when storage refuses a new offer.

    Either the runner was already offered this task or the task already
    has a pending offer, which means another dispatcher owns it.

    Attributes:
        task_id: Task the offer was for.
        performer_id: Runner the offer was for.
    """

    def __init__(self, task_id: uuid.UUID, performer_id: uuid.UUID):
        self.task_id = task_id
        self.performer_id = performer_id
        super().__init__(
            f"Offer of task {task_id} to performer {performer_id} conflicts "
            "with an existing offer"
        )


class CompletedHistory(BaseModel):
    """Raw completed-task categories for one runner.

    Attributes:
        task_categories: One category list per completed task.
        total_count: Number of completed tasks.
    """

    task_categories: list[list[str]] = Field(default_factory=list)
    total_count: int = Field(default=0, ge=0)


@runtime_checkable
class DispatchStore(Protocol):
    """Reads and writes the dispatch engine needs from storage."""

    async def list_pending_tasks(self, kind: TaskKind | None = None) -> list[Task]: ...

    async def get_task(self, task_id: uuid.UUID) -> Task | None: ...

    async def get_completed_task_categories(
        self, performer_id: uuid.UUID, kind: TaskKind | None = None
    ) -> CompletedHistory: ...

    async def get_available_performers_near(
        self, location: Location, radius_m: float
    ) -> list[Performer]: ...

    async def record_offer(
        self,
        task_id: uuid.UUID,
        performer_id: uuid.UUID,
        offered_at: datetime,
        expires_at: datetime,
    ) -> Offer: ...

    async def record_offer_outcome(
        self, offer_id: uuid.UUID, outcome: OfferState
    ) -> bool: ...

    async def get_offer(self, offer_id: uuid.UUID) -> Offer | None: ...

    async def list_offers(self, task_id: uuid.UUID) -> list[Offer]: ...

    async def get_pending_offer(self, task_id: uuid.UUID) -> Offer | None: ...

    async def list_overdue_offers(self, before: datetime) -> list[Offer]: ...

    async def assign_task(self, task_id: uuid.UUID, performer_id: uuid.UUID) -> bool: ...

    async def mark_unfulfilled(self, task_id: uuid.UUID) -> bool: ...

    async def mark_cancelled(self, task_id: uuid.UUID) -> bool: ...


class SqlDispatchStore:
    """``DispatchStore`` backed by the SQLAlchemy query modules.

    Attributes:
        session_factory: Factory producing a fresh AsyncSession per call.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def list_pending_tasks(self, kind: TaskKind | None = None) -> list[Task]:
        async with self.session_factory() as session:
            return await task_queries.list_tasks(
                session, status_filter=TaskStatus.pending, kind=kind
            )

    async def get_task(self, task_id: uuid.UUID) -> Task | None:
        async with self.session_factory() as session:
            return await task_queries.get_task(session, task_id)

    async def get_completed_task_categories(
        self, performer_id: uuid.UUID, kind: TaskKind | None = None
    ) -> CompletedHistory:
        try:
            async with self.session_factory() as session:
                rows = await task_queries.get_completed_task_categories(
                    session, performer_id, kind
                )
        except SQLAlchemyError as e:
            raise DataUnavailable(
                f"History lookup failed for performer {performer_id}: {e}"
            ) from e
        return CompletedHistory(task_categories=rows, total_count=len(rows))

    async def get_available_performers_near(
        self, location: Location, radius_m: float
    ) -> list[Performer]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(location, radius_m)
        try:
            async with self.session_factory() as session:
                return await performer_queries.list_available_performers_in_box(
                    session, min_lat, max_lat, min_lon, max_lon
                )
        except SQLAlchemyError as e:
            raise DataUnavailable(f"Performer snapshot failed: {e}") from e

    async def record_offer(
        self,
        task_id: uuid.UUID,
        performer_id: uuid.UUID,
        offered_at: datetime,
        expires_at: datetime,
    ) -> Offer:
        try:
            async with self.session_factory() as session:
                return await offer_queries.create_offer(
                    session, task_id, performer_id, offered_at, expires_at
                )
        except IntegrityError as e:
            raise OfferConflictError(task_id, performer_id) from e

    async def record_offer_outcome(
        self, offer_id: uuid.UUID, outcome: OfferState
    ) -> bool:
        async with self.session_factory() as session:
            return await offer_queries.resolve_offer(session, offer_id, outcome)

    async def get_offer(self, offer_id: uuid.UUID) -> Offer | None:
        async with self.session_factory() as session:
            return await offer_queries.get_offer(session, offer_id)

    async def list_offers(self, task_id: uuid.UUID) -> list[Offer]:
        async with self.session_factory() as session:
            return await offer_queries.list_offers(session, task_id)

    async def get_pending_offer(self, task_id: uuid.UUID) -> Offer | None:
        async with self.session_factory() as session:
            return await offer_queries.get_pending_offer(session, task_id)

    async def list_overdue_offers(self, before: datetime) -> list[Offer]:
        async with self.session_factory() as session:
            return await offer_queries.list_overdue_offers(session, before)

    async def assign_task(self, task_id: uuid.UUID, performer_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            return await task_queries.assign_task(session, task_id, performer_id)

    async def mark_unfulfilled(self, task_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            return await task_queries.mark_unfulfilled(session, task_id)

    async def mark_cancelled(self, task_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            return await task_queries.mark_cancelled(session, task_id)
