"""Offer model for Runnermatch.

An offer is a time-boxed proposal of one task to one runner. Offers are
created pending and resolved exactly once; the table constraints back the
dispatcher's own bookkeeping:

- a runner is offered a given task at most once;
- a task has at most one pending offer at a time.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from runnermatch.database.models.base import Base, TimestampMixin, UTCDateTime


class OfferState(enum.Enum):
    """Offer lifecycle. Every state except ``pending`` is final."""

    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class Offer(TimestampMixin, Base):
    """A single offer of a task to a runner.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        task_id: Task being offered.
        performer_id: Runner receiving the offer.
        state: Current offer state.
        offered_at: When the offer was made.
        expires_at: Deadline for an answer; always after ``offered_at``.
        resolved_at: When the offer left ``pending``.
    """

    __tablename__ = "offers"
    __table_args__ = (
        UniqueConstraint("task_id", "performer_id", name="uq_offers_task_performer"),
        CheckConstraint("expires_at > offered_at", name="ck_offers_deadline_after_offer"),
        Index(
            "uq_offers_task_pending",
            "task_id",
            unique=True,
            postgresql_where=text("state = 'pending'"),
            sqlite_where=text("state = 'pending'"),
        ),
        Index("ix_offers_state_expires_at", "state", "expires_at"),
    )

    task_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tasks.id"),
        nullable=False,
    )
    performer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("performers.id"),
        nullable=False,
    )
    state: Mapped[OfferState] = mapped_column(
        default=OfferState.pending,
        nullable=False,
    )
    offered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
