"""Health check endpoints for Runnermatch.

- ``GET /health/``: liveness, always ok while the process serves requests
- ``GET /health/ready``: readiness, verifies database connectivity and
  reports whether the dispatch poll loop is running
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from runnermatch.logging import get_logger

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str


class ReadinessResponse(BaseModel):
    """Readiness check response model.

    Attributes:
        status: "ok" or "unhealthy"
        database: "connected" or "disconnected"
        dispatcher: "running" or "stopped"
        active_dispatches: Tasks currently being offered by this process
    """

    status: str
    database: str
    dispatcher: str
    active_dispatches: int


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Dependency that retrieves session factory from app state."""
    return request.app.state.session_factory  # type: ignore[return-value]


def create_health_router() -> APIRouter:
    """Create health check router with endpoints."""
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        request: Request,
        session_factory: async_sessionmaker[AsyncSession] = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> dict[str, Any]:
        """Readiness check with database connectivity verification."""
        dispatcher = request.app.state.dispatcher
        dispatcher_state = {
            "dispatcher": "running" if dispatcher.is_running else "stopped",
            "active_dispatches": dispatcher.active_dispatches,
        }

        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "readiness_check_failed",
                database="disconnected",
                error=str(exc),
            )
            return {"status": "unhealthy", "database": "disconnected", **dispatcher_state}

        logger.debug("readiness_check_passed", database="connected")
        return {"status": "ok", "database": "connected", **dispatcher_state}

    return router
