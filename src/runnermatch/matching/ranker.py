"""Composite ranker.

Scores each candidate on three signals and combines them linearly:

- distance: ``1 - distance / radius``, floored at 0
- rating: ``rating / max_rating``, clamped to [0, 1]; unrated is 0
- affinity: TF-IDF cosine similarity of task and history categories

Candidates are ordered by final score (highest first), then by distance
(closest first), then by performer ID, so identical inputs always produce
the same order.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import AbstractSet, Iterable, Mapping

import structlog
from pydantic import BaseModel, ConfigDict

from runnermatch.config import RankingConfig
from runnermatch.database.models.task import Task
from runnermatch.matching.affinity import affinity_score
from runnermatch.matching.history import HistoryProfileBuilder, PerformerHistoryDocument
from runnermatch.matching.locator import Candidate, CandidateLocator

logger = structlog.get_logger(__name__)


class RankedCandidate(BaseModel):
    """A candidate with its per-signal and combined scores."""

    model_config = ConfigDict(frozen=True)

    performer_id: uuid.UUID
    distance_m: float
    distance_score: float
    rating_score: float
    affinity_score: float
    final_score: float


def distance_score(distance_m: float, radius_m: float) -> float:
    """Map a distance to [0, 1], 1 at the origin and 0 at the radius."""
    if radius_m <= 0:
        return 0.0
    return max(0.0, min(1.0, 1.0 - distance_m / radius_m))


def rating_score(rating: float | None, max_rating: float) -> float:
    """Map a rating to [0, 1]; missing or non-finite ratings score 0."""
    if rating is None or not math.isfinite(rating) or max_rating <= 0:
        return 0.0
    return max(0.0, min(1.0, rating / max_rating))


def rank_candidates(
    task_tags: Iterable[str],
    candidates: Iterable[Candidate],
    histories: Mapping[uuid.UUID, PerformerHistoryDocument],
    radius_m: float,
    weights: RankingConfig,
) -> list[RankedCandidate]:
    """Score and order a candidate pool.

    Args:
        task_tags: Category tags of the task.
        candidates: Eligible runners with their distances.
        histories: History document per runner; a missing entry counts
            as an empty history.
        radius_m: Search radius used to normalize distances.
        weights: Signal weights and rating scale.

    Returns:
        Ranked candidates, best first.
    """
    tags = list(task_tags)
    ranked: list[RankedCandidate] = []

    for candidate in candidates:
        history = histories.get(candidate.performer_id)
        if history is None:
            history = PerformerHistoryDocument.empty(candidate.performer_id)

        d_score = distance_score(candidate.distance_m, radius_m)
        r_score = rating_score(candidate.rating, weights.max_rating)
        a_score = affinity_score(tags, history)
        final = (
            weights.distance_weight * d_score
            + weights.rating_weight * r_score
            + weights.affinity_weight * a_score
        )

        ranked.append(
            RankedCandidate(
                performer_id=candidate.performer_id,
                distance_m=candidate.distance_m,
                distance_score=d_score,
                rating_score=r_score,
                affinity_score=a_score,
                final_score=final,
            )
        )

    ranked.sort(key=lambda r: (-r.final_score, r.distance_m, r.performer_id))
    return ranked


class CompositeRanker:
    """Produces a fresh ranking for a task on every call.

    Attributes:
        locator: Candidate locator reading the live pool.
        history_builder: Builder for runner history documents.
        weights: Ranking weights.
    """

    def __init__(
        self,
        locator: CandidateLocator,
        history_builder: HistoryProfileBuilder,
        weights: RankingConfig,
    ) -> None:
        self.locator = locator
        self.history_builder = history_builder
        self.weights = weights
        self._logger = logger.bind(component="CompositeRanker")

    async def rank(
        self,
        task: Task,
        exclude: AbstractSet[uuid.UUID] = frozenset(),
        now: datetime | None = None,
    ) -> list[RankedCandidate]:
        """Rank the runners currently eligible for ``task``.

        Args:
            task: Task being dispatched. Must have an origin.
            exclude: Runners already offered this task.
            now: Reference time for location freshness.

        Returns:
            Ranked candidates, best first. Empty when nobody is eligible.
        """
        origin = task.origin
        if origin is None:
            return []

        candidates = await self.locator.locate(origin, exclude=exclude, now=now)
        if not candidates:
            return []

        histories = await self.history_builder.build_many(
            (c.performer_id for c in candidates), kind=task.kind
        )
        ranked = rank_candidates(
            task.categories or [],
            candidates,
            histories,
            self.locator.radius_m,
            self.weights,
        )

        self._logger.debug(
            "candidates_ranked",
            task_id=str(task.id),
            count=len(ranked),
            top_performer_id=str(ranked[0].performer_id),
            top_score=round(ranked[0].final_score, 4),
        )
        return ranked
