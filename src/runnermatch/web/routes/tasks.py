"""Task dispatch REST API endpoints for Runnermatch.

Provides routes to inspect a task with its offers, start dispatching it,
withdraw it, and preview the current candidate ranking.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from runnermatch.database.models.task import Task
from runnermatch.logging import get_logger
from runnermatch.matching.ranker import RankedCandidate
from runnermatch.orchestrator.dispatcher import AlreadyDispatching, Dispatcher, InvalidTask

logger = get_logger(__name__)


# --- Pydantic Schemas ---


class OfferResponse(BaseModel):
    """Response schema for offer data."""

    id: UUID
    performer_id: UUID
    state: str
    offered_at: datetime
    expires_at: datetime
    resolved_at: datetime | None


class TaskResponse(BaseModel):
    """Response schema for task data with its offers."""

    id: UUID
    kind: str
    title: str
    categories: list[str]
    status: str
    assigned_performer_id: UUID | None
    assigned_at: datetime | None
    dispatching: bool
    offers: list[OfferResponse]


class DispatchAccepted(BaseModel):
    """Response for a dispatch request."""

    task_id: UUID
    status: str


class WithdrawResponse(BaseModel):
    """Response for a withdrawal request."""

    task_id: UUID
    withdrawn: bool
    status: str


class RankingResponse(BaseModel):
    """Ranking preview for a task."""

    task_id: UUID
    excluded: list[UUID]
    candidates: list[RankedCandidate]


# --- Dependency Injection ---


def get_dispatcher(request: Request) -> Dispatcher:
    """Extract the dispatcher from FastAPI app state."""
    return request.app.state.dispatcher


async def _load_task(dispatcher: Dispatcher, task_id: UUID) -> Task:
    task = await dispatcher.store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


# --- Route Handlers ---


def create_tasks_router() -> APIRouter:
    """Create the tasks router."""
    router = APIRouter(prefix="/tasks", tags=["tasks"])

    @router.get("/{task_id}", response_model=TaskResponse)
    async def get_task_endpoint(
        task_id: UUID,
        dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008
    ) -> TaskResponse:
        """Get a task and every offer made for it."""
        task = await _load_task(dispatcher, task_id)
        offers = await dispatcher.store.list_offers(task_id)
        return TaskResponse(
            id=task.id,
            kind=task.kind.value,
            title=task.title,
            categories=list(task.categories or []),
            status=task.status.value,
            assigned_performer_id=task.assigned_performer_id,
            assigned_at=task.assigned_at,
            dispatching=dispatcher.is_dispatching(task_id),
            offers=[
                OfferResponse(
                    id=o.id,
                    performer_id=o.performer_id,
                    state=o.state.value,
                    offered_at=o.offered_at,
                    expires_at=o.expires_at,
                    resolved_at=o.resolved_at,
                )
                for o in offers
            ],
        )

    @router.post("/{task_id}/dispatch", response_model=DispatchAccepted, status_code=202)
    async def dispatch_task_endpoint(
        task_id: UUID,
        dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008
    ) -> DispatchAccepted:
        """Start dispatching a pending task in the background.

        Raises:
            HTTPException: 404 if the task does not exist, 409 if it is
                already being dispatched, 422 if it cannot be dispatched.
        """
        task = await _load_task(dispatcher, task_id)
        try:
            dispatcher.launch(task)
        except AlreadyDispatching:
            raise HTTPException(status_code=409, detail=f"Task {task_id} is already dispatching")
        except InvalidTask as e:
            logger.warning("dispatch_rejected", task_id=str(task_id), reason=e.reason)
            raise HTTPException(status_code=422, detail=e.reason)

        logger.info("dispatch_requested", task_id=str(task_id))
        return DispatchAccepted(task_id=task_id, status="dispatching")

    @router.delete("/{task_id}", response_model=WithdrawResponse)
    async def withdraw_task_endpoint(
        task_id: UUID,
        dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008
    ) -> WithdrawResponse:
        """Withdraw a task. Fails (``withdrawn: false``) once a runner accepted."""
        await _load_task(dispatcher, task_id)
        withdrawn = await dispatcher.withdraw(task_id)
        task = await _load_task(dispatcher, task_id)

        logger.info("task_withdraw_requested", task_id=str(task_id), withdrawn=withdrawn)
        return WithdrawResponse(task_id=task_id, withdrawn=withdrawn, status=task.status.value)

    @router.get("/{task_id}/ranking", response_model=RankingResponse)
    async def ranking_preview_endpoint(
        task_id: UUID,
        dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008
    ) -> RankingResponse:
        """Rank the runners currently eligible for a task without offering it.

        Runners already offered the task are excluded, as they would be
        on the next dispatch pass.
        """
        task = await _load_task(dispatcher, task_id)
        if task.origin is None:
            raise HTTPException(status_code=422, detail="no origin location")

        offers = await dispatcher.store.list_offers(task_id)
        excluded = sorted({o.performer_id for o in offers})
        ranked = await dispatcher.ranker.rank(task, exclude=frozenset(excluded))
        return RankingResponse(task_id=task_id, excluded=excluded, candidates=ranked)

    return router
