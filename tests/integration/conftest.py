"""Shared fixtures for integration tests.

Each test gets its own SQLite database file so that the per-call sessions
opened by ``SqlDispatchStore`` see each other's commits.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from runnermatch.config import DispatchConfig, RunnermatchConfig
from runnermatch.database.connection import get_session_factory
from runnermatch.database.models import Base, Performer, Task, TaskKind
from runnermatch.database.queries import performer as performer_queries
from runnermatch.database.queries import task as task_queries
from runnermatch.geo import Location
from runnermatch.store import SqlDispatchStore
from runnermatch.web.app import create_app

ORIGIN = Location(latitude=51.5, longitude=-0.12)
METERS_PER_DEGREE_LAT = 111_194.93


def north_of(origin: Location, meters: float) -> tuple[float, float]:
    """Coordinates ``meters`` due north of ``origin``."""
    return origin.latitude + meters / METERS_PER_DEGREE_LAT, origin.longitude


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a SQLite engine with the full schema.

    Yields:
        AsyncEngine bound to a fresh database file.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'runnermatch.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for direct query calls.

    Query functions commit their own work, so there is nothing to roll
    back; the session is simply closed after the test.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def origin() -> Location:
    return ORIGIN


@pytest.fixture
def add_performer(db_session: AsyncSession):
    """Factory registering a runner ``meters`` north of ``ORIGIN``."""

    async def _add(
        name: str = "runner",
        meters: float | None = 100,
        rating: float | None = 4.0,
        is_available: bool = True,
    ) -> Performer:
        lat, lon = north_of(ORIGIN, meters) if meters is not None else (None, None)
        return await performer_queries.create_performer(
            db_session, name, lat, lon, rating, is_available=is_available
        )

    return _add


@pytest.fixture
def add_task(db_session: AsyncSession):
    """Factory creating a pending errand at ``ORIGIN``."""

    async def _add(
        categories: list[str] | None = None,
        title: str = "Pick up groceries",
        kind: TaskKind = TaskKind.errand,
    ) -> Task:
        return await task_queries.create_task(
            db_session,
            kind,
            title,
            categories if categories is not None else ["food"],
            ORIGIN.latitude,
            ORIGIN.longitude,
        )

    return _add


@pytest_asyncio.fixture
async def sql_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> SqlDispatchStore:
    return SqlDispatchStore(session_factory)


@pytest.fixture
def config() -> RunnermatchConfig:
    """Configuration with a fast poll loop and no sweep grace."""
    return RunnermatchConfig(
        dispatch=DispatchConfig(
            offer_timeout_seconds=2.0,
            search_radius_meters=500,
            poll_interval_seconds=0.05,
            sweep_grace_seconds=0,
        )
    )


@pytest_asyncio.fixture
async def app(
    config: RunnermatchConfig,
    session_factory: async_sessionmaker[AsyncSession],
):
    """FastAPI application wired to the test database.

    The dispatcher is stopped after the test so no dispatch run outlives it.
    """
    app = create_app(config, session_factory=session_factory)
    yield app
    await app.state.dispatcher.stop()


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing the FastAPI app.

    Yields:
        AsyncClient configured to test the application.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
