"""Performer query functions for Runnermatch.

Provides async functions for registering runners, updating their live
location and availability, and reading the available pool around a point.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.performer import Performer

logger = structlog.get_logger(__name__)


async def create_performer(
    session: AsyncSession,
    name: str,
    latitude: float | None = None,
    longitude: float | None = None,
    rating: float | None = None,
    is_available: bool = True,
    location_updated_at: datetime | None = None,
) -> Performer:
    """Register a runner.

    Args:
        session: Active async database session.
        name: Display name.
        latitude: Current latitude, if known.
        longitude: Current longitude, if known.
        rating: Aggregate rating on a 0..5 scale.
        is_available: Whether the runner is taking work.
        location_updated_at: When the location was reported. Defaults to
            now when a location is given.

    Returns:
        The newly created Performer instance.
    """
    if location_updated_at is None and latitude is not None and longitude is not None:
        location_updated_at = utcnow()

    performer = Performer(
        name=name,
        latitude=latitude,
        longitude=longitude,
        rating=rating,
        is_available=is_available,
        location_updated_at=location_updated_at,
    )

    session.add(performer)
    await session.commit()

    logger.info(
        "performer_created",
        performer_id=str(performer.id),
        name=name,
        is_available=is_available,
    )

    return performer


async def get_performer(
    session: AsyncSession,
    performer_id: UUID,
) -> Performer | None:
    """Retrieve a runner by ID."""
    stmt = select(Performer).where(Performer.id == performer_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_performers(
    session: AsyncSession,
    available_only: bool = False,
) -> list[Performer]:
    """List runners ordered by name."""
    stmt = select(Performer)
    if available_only:
        stmt = stmt.where(Performer.is_available.is_(True))
    stmt = stmt.order_by(Performer.name.asc(), Performer.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_performer_location(
    session: AsyncSession,
    performer_id: UUID,
    latitude: float,
    longitude: float,
    reported_at: datetime | None = None,
) -> bool:
    """Record a new location report for a runner.

    Returns:
        True if the runner exists and was updated.
    """
    stmt = (
        update(Performer)
        .where(Performer.id == performer_id)
        .values(
            latitude=latitude,
            longitude=longitude,
            location_updated_at=reported_at or utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def set_performer_availability(
    session: AsyncSession,
    performer_id: UUID,
    is_available: bool,
) -> bool:
    """Switch a runner's availability flag.

    Returns:
        True if the runner exists and was updated.
    """
    stmt = (
        update(Performer)
        .where(Performer.id == performer_id)
        .values(is_available=is_available, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    logger.info(
        "performer_availability_changed",
        performer_id=str(performer_id),
        is_available=is_available,
    )
    return result.rowcount == 1


async def list_available_performers_in_box(
    session: AsyncSession,
    min_lat: float,
    max_lat: float,
    min_lon: float,
    max_lon: float,
) -> list[Performer]:
    """Available runners with a location inside a lat/lon box.

    When the box touches the antimeridian the longitude bounds are not
    applied, leaving the exact distance check to the caller.

    Args:
        session: Active async database session.
        min_lat: Southern bound in degrees.
        max_lat: Northern bound in degrees.
        min_lon: Western bound in degrees.
        max_lon: Eastern bound in degrees.

    Returns:
        Matching Performer instances ordered by ID.
    """
    stmt = (
        select(Performer)
        .where(Performer.is_available.is_(True))
        .where(Performer.latitude.is_not(None))
        .where(Performer.longitude.is_not(None))
        .where(Performer.latitude.between(min_lat, max_lat))
    )

    if min_lon > -180.0 and max_lon < 180.0:
        stmt = stmt.where(Performer.longitude.between(min_lon, max_lon))

    stmt = stmt.order_by(Performer.id.asc())

    result = await session.execute(stmt)
    return list(result.scalars().all())
