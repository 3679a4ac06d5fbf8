"""Engine and session factories for the dispatch store.

Deployments run on PostgreSQL through asyncpg with a sized pool. A
``sqlite+aiosqlite://`` URL gives a single-file database for local runs and
the test suite; SQLite keeps its dialect's default pool.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from runnermatch.config import DatabaseConfig


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Build the async engine described by ``config``.

    Pool sizing only applies to server backends.
    """
    kwargs: dict[str, Any] = {"echo": config.echo}
    if not config.url.startswith("sqlite"):
        kwargs["pool_size"] = config.pool_size
        kwargs["max_overflow"] = config.max_overflow
    return create_async_engine(config.url, **kwargs)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for ``engine``.

    Sessions keep loaded attributes after commit; the store hands ORM rows
    back to callers after the session that loaded them has closed.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
