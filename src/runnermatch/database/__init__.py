"""Database layer for Runnermatch.

This module handles database connections, session management, and provides
the SQLAlchemy async engine configuration.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from runnermatch.database.connection import get_engine, get_session_factory
from runnermatch.database.models import (
    Base,
    Offer,
    OfferState,
    Performer,
    Task,
    TaskKind,
    TaskStatus,
    TimestampMixin,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "Performer",
    "Task",
    "TaskKind",
    "TaskStatus",
    "Offer",
    "OfferState",
]
