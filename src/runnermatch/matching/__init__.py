"""Candidate matching for Runnermatch.

This package turns a pending task into an ordered list of runners:

- ``locator``: geographic filter over the live runner pool
- ``history``: completed-task category documents per runner
- ``affinity``: TF-IDF cosine similarity of task and history categories
- ``ranker``: weighted combination of distance, rating and affinity
"""

from runnermatch.matching.affinity import (
    SHARED_TERM_IDF,
    AffinityExplanation,
    affinity_score,
    cosine_similarity,
    explain_affinity,
    normalize_terms,
    parse_category_tags,
)
from runnermatch.matching.history import (
    HistoryProfileBuilder,
    PerformerHistoryDocument,
    build_history_document,
)
from runnermatch.matching.locator import Candidate, CandidateLocator, filter_candidates
from runnermatch.matching.ranker import (
    CompositeRanker,
    RankedCandidate,
    distance_score,
    rank_candidates,
    rating_score,
)

__all__ = [
    "SHARED_TERM_IDF",
    "AffinityExplanation",
    "affinity_score",
    "cosine_similarity",
    "explain_affinity",
    "normalize_terms",
    "parse_category_tags",
    "HistoryProfileBuilder",
    "PerformerHistoryDocument",
    "build_history_document",
    "Candidate",
    "CandidateLocator",
    "filter_candidates",
    "CompositeRanker",
    "RankedCandidate",
    "distance_score",
    "rank_candidates",
    "rating_score",
]
