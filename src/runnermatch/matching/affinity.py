"""TF-IDF category affinity between a task and a runner's history.

The task's category tags form the query document and the runner's
completed-task categories form the history document. Both are weighted
with TF-IDF over a corpus made of exactly those two documents, and the
affinity is the cosine similarity of the two weight vectors.

Term frequency differs per side:

- query: ``count(t) / len(query)``
- history: ``tasks containing t / total completed tasks``

IDF over the two-document corpus is ``ln(2)`` for a term found in one
document and the constant ``SHARED_TERM_IDF`` for a term found in both.
A shared term would otherwise get ``ln(1) = 0`` and could never
contribute to the similarity.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import TYPE_CHECKING, Collection, Iterable, Mapping, Sequence

from pydantic import BaseModel

if TYPE_CHECKING:
    from runnermatch.matching.history import PerformerHistoryDocument

SHARED_TERM_IDF = 0.1
UNSHARED_TERM_IDF = math.log(2.0)

AffinityVector = dict[str, float]


class AffinityExplanation(BaseModel):
    """Both weight vectors and the resulting score, for diagnostics."""

    query_vector: AffinityVector
    history_vector: AffinityVector
    score: float


def parse_category_tags(raw: str | None) -> list[str]:
    """Split a comma-separated category string into normalized tags.

    >>> parse_category_tags(" Food, Pickup ,,Groceries")
    ['food', 'pickup', 'groceries']
    """
    if not raw:
        return []
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def normalize_terms(tags: Iterable[str]) -> list[str]:
    """Lowercase, trim and drop empty tags, keeping order and duplicates.

    A tag holding a comma-separated list is expanded in place.
    """
    terms: list[str] = []
    for tag in tags:
        if tag is None:
            continue
        terms.extend(parse_category_tags(str(tag)))
    return terms


def term_frequency(terms: Sequence[str]) -> dict[str, float]:
    """Token-count term frequency."""
    if not terms:
        return {}
    total = len(terms)
    return {term: count / total for term, count in Counter(terms).items()}


def task_count_frequency(
    task_tags: Sequence[Sequence[str]], total_tasks: int
) -> dict[str, float]:
    """Fraction of completed tasks that carry each term.

    A task listing the same category twice counts once for it.
    """
    if total_tasks <= 0:
        return {}
    counts: Counter[str] = Counter()
    for tags in task_tags:
        counts.update(set(tags))
    return {term: count / total_tasks for term, count in counts.items()}


def inverse_document_frequency(
    term: str, query_terms: Collection[str], history_terms: Collection[str]
) -> float:
    """IDF of ``term`` over the two-document corpus."""
    df = int(term in query_terms) + int(term in history_terms)
    if df == 0:
        return 0.0
    if df == 2:
        return SHARED_TERM_IDF
    return UNSHARED_TERM_IDF


def _idf_table(query_terms: set[str], history_terms: set[str]) -> dict[str, float]:
    return {
        term: inverse_document_frequency(term, query_terms, history_terms)
        for term in query_terms | history_terms
    }


def _weigh(tf: Mapping[str, float], idf: Mapping[str, float]) -> AffinityVector:
    return {term: freq * idf.get(term, 0.0) for term, freq in tf.items()}


def history_frequency(history: PerformerHistoryDocument) -> dict[str, float]:
    """History-side term frequency.

    Task-count based when per-task grouping is known, token-count based
    over the flattened tags otherwise.
    """
    if history.total_tasks > 0 and history.task_tags:
        return task_count_frequency(history.task_tags, history.total_tasks)
    return term_frequency(history.tags)


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine similarity of two sparse vectors, clamped to [0, 1].

    Returns 0.0 when either vector has zero norm or the result is not finite.
    """
    if not a or not b:
        return 0.0

    dot = sum(weight * b.get(term, 0.0) for term, weight in a.items())
    norm_a = math.sqrt(sum(w * w for w in a.values()))
    norm_b = math.sqrt(sum(w * w for w in b.values()))

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = dot / (norm_a * norm_b)
    if not math.isfinite(similarity):
        return 0.0
    return min(1.0, max(0.0, similarity))


def explain_affinity(
    task_tags: Iterable[str], history: PerformerHistoryDocument
) -> AffinityExplanation:
    """Compute both TF-IDF vectors and their cosine similarity.

    Args:
        task_tags: Category tags of the task being dispatched.
        history: The candidate's history document.

    Returns:
        AffinityExplanation with empty vectors and a 0.0 score when either
        side has no terms.
    """
    query_terms = normalize_terms(task_tags)
    history_terms = history.tags

    if not query_terms or not history_terms:
        return AffinityExplanation(query_vector={}, history_vector={}, score=0.0)

    idf = _idf_table(set(query_terms), set(history_terms))
    query_vec = _weigh(term_frequency(query_terms), idf)
    history_vec = _weigh(history_frequency(history), idf)

    return AffinityExplanation(
        query_vector=query_vec,
        history_vector=history_vec,
        score=cosine_similarity(query_vec, history_vec),
    )


def affinity_score(task_tags: Iterable[str], history: PerformerHistoryDocument) -> float:
    """Category affinity in [0, 1] between a task and a runner's history."""
    return explain_affinity(task_tags, history).score
