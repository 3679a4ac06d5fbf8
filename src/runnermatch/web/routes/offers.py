"""Runner answer endpoints.

``POST /offers/{offer_id}/accept`` and ``POST /offers/{offer_id}/decline``
are idempotent: an answer to an offer that is already resolved (or past its
deadline) returns 200 with ``applied: false`` and the offer's actual state.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from runnermatch.logging import get_logger
from runnermatch.orchestrator.dispatcher import Dispatcher

logger = get_logger(__name__)


class OfferAnswerResponse(BaseModel):
    """Result of an accept or decline request.

    Attributes:
        offer_id: Offer that was answered.
        task_id: Task the offer is for.
        performer_id: Runner the offer was made to.
        applied: Whether this request changed the offer.
        state: Offer state after the request.
        resolved_at: When the offer left pending, if it has.
    """

    offer_id: UUID
    task_id: UUID
    performer_id: UUID
    applied: bool
    state: str
    resolved_at: datetime | None


def get_dispatcher(request: Request) -> Dispatcher:
    """Extract the dispatcher from FastAPI app state."""
    return request.app.state.dispatcher


async def _answer(dispatcher: Dispatcher, offer_id: UUID, accept: bool) -> OfferAnswerResponse:
    try:
        if accept:
            applied = await dispatcher.accept(offer_id)
        else:
            applied = await dispatcher.decline(offer_id)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Offer {offer_id} not found")

    offer = await dispatcher.store.get_offer(offer_id)
    if offer is None:
        raise HTTPException(status_code=404, detail=f"Offer {offer_id} not found")

    logger.info(
        "offer_answered",
        offer_id=str(offer_id),
        answer="accept" if accept else "decline",
        applied=applied,
        state=offer.state.value,
    )
    return OfferAnswerResponse(
        offer_id=offer.id,
        task_id=offer.task_id,
        performer_id=offer.performer_id,
        applied=applied,
        state=offer.state.value,
        resolved_at=offer.resolved_at,
    )


def create_offers_router() -> APIRouter:
    """Create the offers router."""
    router = APIRouter(prefix="/offers", tags=["offers"])

    @router.post("/{offer_id}/accept", response_model=OfferAnswerResponse)
    async def accept_offer(
        offer_id: UUID,
        dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008
    ) -> OfferAnswerResponse:
        """Accept an offer."""
        return await _answer(dispatcher, offer_id, accept=True)

    @router.post("/{offer_id}/decline", response_model=OfferAnswerResponse)
    async def decline_offer(
        offer_id: UUID,
        dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008
    ) -> OfferAnswerResponse:
        """Decline an offer."""
        return await _answer(dispatcher, offer_id, accept=False)

    return router
