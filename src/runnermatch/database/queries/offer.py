"""Offer query functions for Runnermatch.

Provides async functions for recording offers and resolving them. An offer
is resolved with a compare-and-set on ``state = 'pending'`` so that exactly
one of accept, decline and expiry takes effect.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.offer import Offer, OfferState

logger = structlog.get_logger(__name__)


async def create_offer(
    session: AsyncSession,
    task_id: UUID,
    performer_id: UUID,
    offered_at: datetime,
    expires_at: datetime,
) -> Offer:
    """Record a pending offer.

    Args:
        session: Active async database session.
        task_id: Task being offered.
        performer_id: Runner receiving the offer.
        offered_at: When the offer is made.
        expires_at: Answer deadline, strictly after ``offered_at``.

    Returns:
        The newly created Offer instance.

    Raises:
        ValueError: If ``expires_at`` is not after ``offered_at``.
        IntegrityError: If the runner was already offered this task or the
            task already has a pending offer. The session is rolled back.
    """
    if expires_at <= offered_at:
        raise ValueError("expires_at must be after offered_at")

    offer = Offer(
        task_id=task_id,
        performer_id=performer_id,
        state=OfferState.pending,
        offered_at=offered_at,
        expires_at=expires_at,
    )

    session.add(offer)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(
            "offer_rejected_by_constraint",
            task_id=str(task_id),
            performer_id=str(performer_id),
        )
        raise

    logger.info(
        "offer_recorded",
        offer_id=str(offer.id),
        task_id=str(task_id),
        performer_id=str(performer_id),
        expires_at=expires_at.isoformat(),
    )

    return offer


async def get_offer(
    session: AsyncSession,
    offer_id: UUID,
) -> Offer | None:
    """Retrieve an offer by ID."""
    stmt = select(Offer).where(Offer.id == offer_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_offers(
    session: AsyncSession,
    task_id: UUID,
) -> list[Offer]:
    """All offers made for a task, in the order they were made."""
    stmt = (
        select(Offer)
        .where(Offer.task_id == task_id)
        .order_by(Offer.offered_at.asc(), Offer.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_pending_offer(
    session: AsyncSession,
    task_id: UUID,
) -> Offer | None:
    """The task's outstanding offer, if any."""
    stmt = (
        select(Offer)
        .where(Offer.task_id == task_id)
        .where(Offer.state == OfferState.pending)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def resolve_offer(
    session: AsyncSession,
    offer_id: UUID,
    outcome: OfferState,
    resolved_at: datetime | None = None,
) -> bool:
    """Resolve a pending offer.

    Args:
        session: Active async database session.
        offer_id: Offer to resolve.
        outcome: Final state (accepted, declined or expired).
        resolved_at: Resolution time. Defaults to now.

    Returns:
        True if this call moved the offer out of pending, False if it was
        already resolved or does not exist.

    Raises:
        ValueError: If ``outcome`` is ``pending``.
    """
    if outcome == OfferState.pending:
        raise ValueError("An offer cannot be resolved to pending")

    now = resolved_at or utcnow()
    stmt = (
        update(Offer)
        .where(Offer.id == offer_id)
        .where(Offer.state == OfferState.pending)
        .values(state=outcome, resolved_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    applied = result.rowcount == 1
    logger.debug(
        "offer_resolution_cas",
        offer_id=str(offer_id),
        outcome=outcome.value,
        applied=applied,
    )
    return applied


async def list_overdue_offers(
    session: AsyncSession,
    before: datetime,
) -> list[Offer]:
    """Pending offers whose deadline passed before ``before``."""
    stmt = (
        select(Offer)
        .where(Offer.state == OfferState.pending)
        .where(Offer.expires_at < before)
        .order_by(Offer.expires_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
