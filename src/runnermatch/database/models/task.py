"""Task model for Runnermatch.

Defines the Task table together with the TaskKind and TaskStatus enums.
A task is an errand or commission posted by a requester; the dispatch
engine moves it out of ``pending`` exactly once.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Float, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from runnermatch.database.models.base import Base, TimestampMixin, UTCDateTime
from runnermatch.geo import Location


class TaskKind(enum.Enum):
    """Kind of work a task represents."""

    errand = "errand"
    commission = "commission"


class TaskStatus(enum.Enum):
    """State machine for task lifecycle.

    States:
        pending: Waiting for a runner; eligible for dispatch.
        assigned: A runner accepted an offer.
        unfulfilled: Every eligible runner was offered the task and none accepted.
        cancelled: Withdrawn by the requester before anyone accepted.
        completed: The assigned runner finished the work.
    """

    pending = "pending"
    assigned = "assigned"
    unfulfilled = "unfulfilled"
    cancelled = "cancelled"
    completed = "completed"


class Task(TimestampMixin, Base):
    """An errand or commission waiting for, or held by, a runner.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        kind: Errand or commission.
        title: Short description shown to runners.
        requester_id: Opaque identifier of the person who posted the task.
        categories: Ordered category tags, e.g. ``["food", "pickup"]``.
        origin_latitude: Latitude where the task starts.
        origin_longitude: Longitude where the task starts.
        status: Current state in the task lifecycle.
        assigned_performer_id: Runner holding the task once assigned.
        assigned_at: When the winning offer was accepted.
        completed_at: When the runner finished the work.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_kind", "status", "kind"),
        Index("ix_tasks_assigned_performer_status", "assigned_performer_id", "status"),
    )

    kind: Mapped[TaskKind] = mapped_column(nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    requester_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    categories: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    origin_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    origin_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        default=TaskStatus.pending,
        nullable=False,
    )
    assigned_performer_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("performers.id"),
        nullable=True,
    )
    assigned_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    @property
    def origin(self) -> Location | None:
        """Origin location, or None when either coordinate is missing."""
        if self.origin_latitude is None or self.origin_longitude is None:
            return None
        return Location(
            latitude=self.origin_latitude,
            longitude=self.origin_longitude,
        )
