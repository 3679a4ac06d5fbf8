"""FastAPI application factory for Runnermatch.

This module provides the main application factory function that creates
and configures a FastAPI application with:
- CORS middleware for cross-origin requests
- Request logging middleware with correlation IDs
- Database, store, event bus and dispatcher lifecycle management
- Runner answer, task dispatch, SSE and health endpoints

Example usage:
    >>> from runnermatch.config import RunnermatchConfig
    >>> from runnermatch.web.app import create_app
    >>>
    >>> app = create_app(RunnermatchConfig(), run_dispatcher=True)
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from runnermatch import __version__
from runnermatch.config import RunnermatchConfig
from runnermatch.database.connection import get_engine, get_session_factory
from runnermatch.logging import get_logger
from runnermatch.orchestrator.dispatcher import Dispatcher, create_dispatcher
from runnermatch.orchestrator.events import EventBus
from runnermatch.store import SqlDispatchStore
from runnermatch.web.middleware import RequestLoggingMiddleware
from runnermatch.web.routes import (
    create_events_router,
    create_health_router,
    create_offers_router,
    create_tasks_router,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


def _wire(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: Dispatcher | None = None,
) -> None:
    """Attach store, event bus and dispatcher to ``app.state``."""
    config: RunnermatchConfig = app.state.config
    if dispatcher is None:
        store = SqlDispatchStore(session_factory)
        dispatcher = create_dispatcher(config, store, EventBus())

    app.state.session_factory = session_factory
    app.state.store = dispatcher.store
    app.state.event_bus = dispatcher.event_bus
    app.state.dispatcher = dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle.

    Creates the engine and dispatcher unless they were injected, starts the
    dispatch poll loop when requested, and on shutdown stops the dispatcher,
    closes SSE subscriptions and disposes of the engine it created.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup, cleans up on context exit
    """
    config: RunnermatchConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = None
    if app.state.session_factory is None:
        engine = get_engine(config.database)
        _wire(app, get_session_factory(engine))
        logger.info(
            "database_pool_initialized",
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )

    dispatcher: Dispatcher = app.state.dispatcher
    if app.state.run_dispatcher:
        await dispatcher.start()

    yield

    logger.info("app_shutdown_begin")
    await dispatcher.stop()
    app.state.event_bus.close()
    if engine is not None:
        await engine.dispose()
        logger.info("database_pool_disposed")


def create_app(
    config: RunnermatchConfig | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    dispatcher: Dispatcher | None = None,
    run_dispatcher: bool = False,
) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Optional RunnermatchConfig. If None, creates default config.
        session_factory: Session factory to use instead of creating an
            engine from ``config.database`` at startup.
        dispatcher: Dispatcher to use instead of building one. Requires
            ``session_factory``.
        run_dispatcher: Start the dispatch poll loop with the application.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = RunnermatchConfig()

    app = FastAPI(
        title="Runnermatch",
        version=__version__,
        description="Runner matching and dispatch engine",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.run_dispatcher = run_dispatcher
    app.state.session_factory = None
    if session_factory is not None:
        _wire(app, session_factory, dispatcher)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_offers_router())
    app.include_router(create_tasks_router())
    app.include_router(create_events_router())

    logger.info(
        "app_created",
        cors_origins=config.web.cors_origins,
        version=__version__,
        run_dispatcher=run_dispatcher,
    )

    return app
