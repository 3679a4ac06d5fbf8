"""Task query functions for Runnermatch.

Provides async functions for creating and reading Task records and for
the compare-and-set status updates the dispatcher relies on. Every status
change is a single ``UPDATE ... WHERE status = <expected>``; callers learn
whether they won from the boolean result.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.task import Task, TaskKind, TaskStatus

logger = structlog.get_logger(__name__)


async def create_task(
    session: AsyncSession,
    kind: TaskKind,
    title: str,
    categories: list[str],
    origin_latitude: float | None,
    origin_longitude: float | None,
    requester_id: str | None = None,
) -> Task:
    """Create a new pending task.

    Args:
        session: Active async database session.
        kind: Errand or commission.
        title: Short task description.
        categories: Ordered category tags.
        origin_latitude: Latitude where the task starts.
        origin_longitude: Longitude where the task starts.
        requester_id: Identifier of the person posting the task.

    Returns:
        The newly created Task instance.
    """
    task = Task(
        kind=kind,
        title=title,
        categories=list(categories),
        origin_latitude=origin_latitude,
        origin_longitude=origin_longitude,
        requester_id=requester_id,
        status=TaskStatus.pending,
    )

    session.add(task)
    await session.commit()

    logger.info(
        "task_created",
        task_id=str(task.id),
        kind=kind.value,
        title=title,
        categories=task.categories,
    )

    return task


async def get_task(
    session: AsyncSession,
    task_id: UUID,
) -> Task | None:
    """Retrieve a task by ID.

    Args:
        session: Active async database session.
        task_id: UUID of the task to retrieve.

    Returns:
        The Task instance if found, None otherwise.
    """
    stmt = select(Task).where(Task.id == task_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_tasks(
    session: AsyncSession,
    status_filter: TaskStatus | None = None,
    kind: TaskKind | None = None,
) -> list[Task]:
    """List tasks, oldest first, with optional filters.

    Args:
        session: Active async database session.
        status_filter: Optional status to filter by.
        kind: Optional task kind to filter by.

    Returns:
        List of matching Task instances.
    """
    stmt = select(Task)

    if status_filter is not None:
        stmt = stmt.where(Task.status == status_filter)

    if kind is not None:
        stmt = stmt.where(Task.kind == kind)

    stmt = stmt.order_by(Task.created_at.asc(), Task.id.asc())

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def transition_task_status(
    session: AsyncSession,
    task_id: UUID,
    expected: TaskStatus,
    target: TaskStatus,
    **values: Any,
) -> bool:
    """Move a task from ``expected`` to ``target`` if it is still ``expected``.

    Args:
        session: Active async database session.
        task_id: UUID of the task to update.
        expected: Status the task must currently hold.
        target: Status to set.
        **values: Extra columns to set in the same statement.

    Returns:
        True if this call performed the transition, False if the task was
        missing or no longer in ``expected``.
    """
    stmt = (
        update(Task)
        .where(Task.id == task_id)
        .where(Task.status == expected)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    applied = result.rowcount == 1
    logger.debug(
        "task_status_cas",
        task_id=str(task_id),
        expected=expected.value,
        target=target.value,
        applied=applied,
    )
    return applied


async def assign_task(
    session: AsyncSession,
    task_id: UUID,
    performer_id: UUID,
    assigned_at: datetime | None = None,
) -> bool:
    """Assign a pending task to a runner.

    Returns:
        True if the task moved pending -> assigned.
    """
    return await transition_task_status(
        session,
        task_id,
        TaskStatus.pending,
        TaskStatus.assigned,
        assigned_performer_id=performer_id,
        assigned_at=assigned_at or utcnow(),
    )


async def mark_unfulfilled(session: AsyncSession, task_id: UUID) -> bool:
    """Mark a pending task as unfulfilled."""
    return await transition_task_status(
        session, task_id, TaskStatus.pending, TaskStatus.unfulfilled
    )


async def mark_cancelled(session: AsyncSession, task_id: UUID) -> bool:
    """Mark a pending task as cancelled."""
    return await transition_task_status(
        session, task_id, TaskStatus.pending, TaskStatus.cancelled
    )


async def complete_task(
    session: AsyncSession,
    task_id: UUID,
    completed_at: datetime | None = None,
) -> bool:
    """Mark an assigned task as completed by its runner."""
    return await transition_task_status(
        session,
        task_id,
        TaskStatus.assigned,
        TaskStatus.completed,
        completed_at=completed_at or utcnow(),
    )


async def get_completed_task_categories(
    session: AsyncSession,
    performer_id: UUID,
    kind: TaskKind | None = None,
) -> list[list[str]]:
    """Category lists of every task the runner has completed.

    Args:
        session: Active async database session.
        performer_id: Runner whose history to read.
        kind: Only count completed tasks of this kind. None for all kinds.

    Returns:
        One category list per completed task, oldest first.
    """
    stmt = (
        select(Task.categories)
        .where(Task.assigned_performer_id == performer_id)
        .where(Task.status == TaskStatus.completed)
        .order_by(Task.completed_at.asc(), Task.id.asc())
    )
    if kind is not None:
        stmt = stmt.where(Task.kind == kind)
    result = await session.execute(stmt)
    return [list(categories or []) for categories in result.scalars().all()]
