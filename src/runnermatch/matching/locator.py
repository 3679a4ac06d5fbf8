"""Candidate locator.

Selects the runners eligible for a task: available, with a usable location,
within the search radius of the task origin (``distance <= radius``), and
not already offered the task. The store supplies a coarse bounding-box
snapshot; the exact haversine check happens here.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta
from typing import AbstractSet, Iterable

import structlog
from pydantic import BaseModel, ConfigDict

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.performer import Performer
from runnermatch.geo import Location, haversine_distance
from runnermatch.store import DataUnavailable, DispatchStore

logger = structlog.get_logger(__name__)


class Candidate(BaseModel):
    """A runner found near a task, with its measured distance."""

    model_config = ConfigDict(frozen=True)

    performer_id: uuid.UUID
    location: Location
    distance_m: float
    rating: float | None = None


def performer_location(performer: Performer) -> Location | None:
    """The runner's location if both coordinates are finite and in range."""
    lat, lon = performer.latitude, performer.longitude
    if lat is None or lon is None:
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return Location(latitude=lat, longitude=lon)


def filter_candidates(
    origin: Location,
    performers: Iterable[Performer],
    radius_m: float,
    exclude: AbstractSet[uuid.UUID] = frozenset(),
    now: datetime | None = None,
    freshness_seconds: float | None = None,
) -> list[Candidate]:
    """Reduce a performer snapshot to the eligible candidate pool.

    Args:
        origin: Task origin.
        performers: Snapshot from the store.
        radius_m: Search radius in meters; a runner exactly on it is kept.
        exclude: Runners already offered this task.
        now: Reference time for the freshness check.
        freshness_seconds: When set, drop runners whose location is older.

    Returns:
        Candidates ordered by distance, then performer ID.
    """
    cutoff: datetime | None = None
    if freshness_seconds is not None:
        cutoff = (now or utcnow()) - timedelta(seconds=freshness_seconds)

    candidates: list[Candidate] = []
    for performer in performers:
        if performer.id in exclude or not performer.is_available:
            continue

        location = performer_location(performer)
        if location is None:
            continue

        if cutoff is not None and (
            performer.location_updated_at is None
            or performer.location_updated_at < cutoff
        ):
            continue

        distance = haversine_distance(origin, location)
        if distance > radius_m:
            continue

        candidates.append(
            Candidate(
                performer_id=performer.id,
                location=location,
                distance_m=distance,
                rating=performer.rating,
            )
        )

    candidates.sort(key=lambda c: (c.distance_m, c.performer_id))
    return candidates


class CandidateLocator:
    """Finds eligible runners around a task origin.

    Attributes:
        store: Storage backend supplying the live performer snapshot.
        radius_m: Search radius in meters.
        freshness_seconds: Optional maximum age of a location report.
    """

    def __init__(
        self,
        store: DispatchStore,
        radius_m: float,
        freshness_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.radius_m = radius_m
        self.freshness_seconds = freshness_seconds
        self._logger = logger.bind(component="CandidateLocator")

    async def locate(
        self,
        origin: Location,
        exclude: AbstractSet[uuid.UUID] = frozenset(),
        now: datetime | None = None,
    ) -> list[Candidate]:
        """Read a fresh snapshot and return the eligible pool.

        A failed snapshot yields an empty pool for this pass.
        """
        try:
            performers = await self.store.get_available_performers_near(
                origin, self.radius_m
            )
        except DataUnavailable as e:
            self._logger.warning("candidate_pool_unavailable", error=str(e))
            return []

        candidates = filter_candidates(
            origin,
            performers,
            self.radius_m,
            exclude=exclude,
            now=now,
            freshness_seconds=self.freshness_seconds,
        )
        self._logger.debug(
            "candidates_located",
            snapshot_size=len(performers),
            eligible=len(candidates),
            excluded=len(exclude),
        )
        return candidates
