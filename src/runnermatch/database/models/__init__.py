"""SQLAlchemy ORM models for Runnermatch.

This module defines the database schema for performers, tasks and offers.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from runnermatch.database.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from runnermatch.database.models.offer import Offer, OfferState
from runnermatch.database.models.performer import Performer
from runnermatch.database.models.task import Task, TaskKind, TaskStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Performer",
    "Task",
    "TaskKind",
    "TaskStatus",
    "Offer",
    "OfferState",
]
