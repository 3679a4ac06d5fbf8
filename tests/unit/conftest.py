"""Shared fixtures for unit tests.

Provides an in-memory ``DispatchStore`` with the same compare-and-set and
uniqueness semantics as the SQL store, plus factories for runners and
tasks that register them with it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

import pytest

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.offer import Offer, OfferState
from runnermatch.database.models.performer import Performer
from runnermatch.database.models.task import Task, TaskKind, TaskStatus
from runnermatch.geo import Location
from runnermatch.store import CompletedHistory, DataUnavailable, OfferConflictError

# Origin used by most tests; one degree of latitude is ~111 km
ORIGIN = Location(latitude=51.5, longitude=-0.12)
METERS_PER_DEGREE_LAT = 111_194.93


def north_of(origin: Location, meters: float) -> tuple[float, float]:
    """Coordinates ``meters`` due north of ``origin``."""
    return origin.latitude + meters / METERS_PER_DEGREE_LAT, origin.longitude


class InMemoryDispatchStore:
    """Dict-backed store for exercising the matching and dispatch layers."""

    def __init__(self) -> None:
        self.tasks: dict[uuid.UUID, Task] = {}
        self.performers: dict[uuid.UUID, Performer] = {}
        self.offers: dict[uuid.UUID, Offer] = {}
        self.completed: dict[uuid.UUID, list[tuple[TaskKind, list[str]]]] = {}
        self.history_failures: set[uuid.UUID] = set()
        self.pool_unavailable = False

    # Setup helpers

    def add_task(self, task: Task) -> Task:
        self.tasks[task.id] = task
        return task

    def add_performer(self, performer: Performer) -> Performer:
        self.performers[performer.id] = performer
        return performer

    def add_completed(
        self,
        performer_id: uuid.UUID,
        *categories: list[str],
        kind: TaskKind = TaskKind.errand,
    ) -> None:
        self.completed.setdefault(performer_id, []).extend(
            (kind, list(c)) for c in categories
        )

    # DispatchStore

    async def list_pending_tasks(self, kind: TaskKind | None = None) -> list[Task]:
        tasks = [
            t
            for t in self.tasks.values()
            if t.status == TaskStatus.pending and (kind is None or t.kind == kind)
        ]
        return sorted(tasks, key=lambda t: (t.created_at, t.id))

    async def get_task(self, task_id: uuid.UUID) -> Task | None:
        return self.tasks.get(task_id)

    async def get_completed_task_categories(
        self, performer_id: uuid.UUID, kind: TaskKind | None = None
    ) -> CompletedHistory:
        if performer_id in self.history_failures:
            raise DataUnavailable(f"history for {performer_id} unavailable")
        rows = [
            categories
            for task_kind, categories in self.completed.get(performer_id, [])
            if kind is None or task_kind == kind
        ]
        return CompletedHistory(task_categories=rows, total_count=len(rows))

    async def get_available_performers_near(
        self, location: Location, radius_m: float
    ) -> list[Performer]:
        if self.pool_unavailable:
            raise DataUnavailable("performer snapshot unavailable")
        return [p for p in self.performers.values() if p.is_available]

    async def record_offer(
        self,
        task_id: uuid.UUID,
        performer_id: uuid.UUID,
        offered_at: datetime,
        expires_at: datetime,
    ) -> Offer:
        for existing in self.offers.values():
            if existing.task_id != task_id:
                continue
            if existing.performer_id == performer_id or existing.state == OfferState.pending:
                raise OfferConflictError(task_id, performer_id)
        offer = Offer(
            id=uuid.uuid4(),
            task_id=task_id,
            performer_id=performer_id,
            state=OfferState.pending,
            offered_at=offered_at,
            expires_at=expires_at,
            created_at=offered_at,
            updated_at=offered_at,
        )
        self.offers[offer.id] = offer
        return offer

    async def record_offer_outcome(self, offer_id: uuid.UUID, outcome: OfferState) -> bool:
        offer = self.offers.get(offer_id)
        if offer is None or offer.state != OfferState.pending:
            return False
        offer.state = outcome
        offer.resolved_at = utcnow()
        return True

    async def get_offer(self, offer_id: uuid.UUID) -> Offer | None:
        return self.offers.get(offer_id)

    async def list_offers(self, task_id: uuid.UUID) -> list[Offer]:
        offers = [o for o in self.offers.values() if o.task_id == task_id]
        return sorted(offers, key=lambda o: o.offered_at)

    async def get_pending_offer(self, task_id: uuid.UUID) -> Offer | None:
        for offer in self.offers.values():
            if offer.task_id == task_id and offer.state == OfferState.pending:
                return offer
        return None

    async def list_overdue_offers(self, before: datetime) -> list[Offer]:
        return [
            o
            for o in self.offers.values()
            if o.state == OfferState.pending and o.expires_at < before
        ]

    async def _move_task(self, task_id: uuid.UUID, target: TaskStatus, **values: Any) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.pending:
            return False
        task.status = target
        for key, value in values.items():
            setattr(task, key, value)
        return True

    async def assign_task(self, task_id: uuid.UUID, performer_id: uuid.UUID) -> bool:
        return await self._move_task(
            task_id,
            TaskStatus.assigned,
            assigned_performer_id=performer_id,
            assigned_at=utcnow(),
        )

    async def mark_unfulfilled(self, task_id: uuid.UUID) -> bool:
        return await self._move_task(task_id, TaskStatus.unfulfilled)

    async def mark_cancelled(self, task_id: uuid.UUID) -> bool:
        return await self._move_task(task_id, TaskStatus.cancelled)


@pytest.fixture
def store() -> InMemoryDispatchStore:
    """Create an empty in-memory store."""
    return InMemoryDispatchStore()


@pytest.fixture
def make_performer(store: InMemoryDispatchStore) -> Callable[..., Performer]:
    """Factory adding a runner ``meters`` north of ``ORIGIN`` to the store."""

    def _make(
        meters: float | None = 100.0,
        rating: float | None = 4.0,
        is_available: bool = True,
        name: str = "runner",
        location_updated_at: datetime | None = None,
    ) -> Performer:
        lat, lon = north_of(ORIGIN, meters) if meters is not None else (None, None)
        now = utcnow()
        performer = Performer(
            id=uuid.uuid4(),
            name=name,
            latitude=lat,
            longitude=lon,
            location_updated_at=location_updated_at or now,
            is_available=is_available,
            rating=rating,
            created_at=now,
            updated_at=now,
        )
        return store.add_performer(performer)

    return _make


@pytest.fixture
def make_task(store: InMemoryDispatchStore) -> Callable[..., Task]:
    """Factory adding a pending task at ``ORIGIN`` to the store."""
    counter = {"n": 0}

    def _make(
        categories: list[str] | None = None,
        kind: TaskKind = TaskKind.errand,
        status: TaskStatus = TaskStatus.pending,
        origin: Location | None = ORIGIN,
        title: str = "Pick up groceries",
    ) -> Task:
        counter["n"] += 1
        created = utcnow() + timedelta(microseconds=counter["n"])
        task = Task(
            id=uuid.uuid4(),
            kind=kind,
            title=title,
            categories=["food"] if categories is None else categories,
            origin_latitude=origin.latitude if origin else None,
            origin_longitude=origin.longitude if origin else None,
            status=status,
            created_at=created,
            updated_at=created,
        )
        return store.add_task(task)

    return _make


@pytest.fixture
def origin() -> Location:
    """Task origin used by ``make_task``."""
    return ORIGIN
