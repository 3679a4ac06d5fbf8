"""History profile builder.

Turns a runner's completed tasks into a ``PerformerHistoryDocument``: one
entry per completed task holding that task's distinct normalized
categories. The number of completed tasks is kept alongside so the affinity
scorer can use it as the term-frequency denominator.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Iterable

import structlog
from pydantic import BaseModel, ConfigDict

from runnermatch.database.models.task import TaskKind
from runnermatch.matching.affinity import normalize_terms
from runnermatch.store import CompletedHistory, DataUnavailable, DispatchStore

logger = structlog.get_logger(__name__)


class PerformerHistoryDocument(BaseModel):
    """Completed-task categories for one runner.

    Attributes:
        performer_id: Runner the document describes.
        task_tags: Distinct normalized categories of each completed task.
        total_tasks: Number of completed tasks.
    """

    model_config = ConfigDict(frozen=True)

    performer_id: uuid.UUID
    task_tags: tuple[tuple[str, ...], ...] = ()
    total_tasks: int = 0

    @property
    def tags(self) -> list[str]:
        """All task categories flattened, in task order."""
        return [tag for tags in self.task_tags for tag in tags]

    @classmethod
    def empty(cls, performer_id: uuid.UUID) -> PerformerHistoryDocument:
        return cls(performer_id=performer_id)


def _distinct(tags: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for tag in normalize_terms(tags):
        seen.setdefault(tag, None)
    return tuple(seen)


def build_history_document(
    performer_id: uuid.UUID, history: CompletedHistory
) -> PerformerHistoryDocument:
    """Build a history document from raw completed-task categories.

    Args:
        performer_id: Runner the history belongs to.
        history: Category lists as read from storage.

    Returns:
        PerformerHistoryDocument with one entry per completed task.
    """
    task_tags = tuple(_distinct(categories) for categories in history.task_categories)
    return PerformerHistoryDocument(
        performer_id=performer_id,
        task_tags=task_tags,
        total_tasks=max(history.total_count, len(task_tags)),
    )


class HistoryProfileBuilder:
    """Reads runner histories from the store.

    Attributes:
        store: Storage backend.
    """

    def __init__(self, store: DispatchStore) -> None:
        self.store = store
        self._logger = logger.bind(component="HistoryProfileBuilder")

    async def build(
        self, performer_id: uuid.UUID, kind: TaskKind | None = None
    ) -> PerformerHistoryDocument:
        """Build one runner's history document.

        Args:
            performer_id: Runner to look up.
            kind: Only count completed tasks of this kind.

        Raises:
            DataUnavailable: If the history cannot be read.
        """
        history = await self.store.get_completed_task_categories(performer_id, kind)
        return build_history_document(performer_id, history)

    async def build_many(
        self, performer_ids: Iterable[uuid.UUID], kind: TaskKind | None = None
    ) -> dict[uuid.UUID, PerformerHistoryDocument]:
        """Build history documents for several runners concurrently.

        A runner whose lookup raises ``DataUnavailable`` gets an empty
        document. Any other error propagates.

        Args:
            performer_ids: Runners to look up.
            kind: Only count completed tasks of this kind, so errand
                runners are profiled on errands and commission runners
                on commissions.

        Returns:
            Mapping of runner ID to history document.
        """
        ids = list(dict.fromkeys(performer_ids))
        if not ids:
            return {}

        results = await asyncio.gather(
            *(self.build(performer_id, kind) for performer_id in ids),
            return_exceptions=True,
        )

        documents: dict[uuid.UUID, PerformerHistoryDocument] = {}
        for performer_id, result in zip(ids, results):
            if isinstance(result, DataUnavailable):
                self._logger.warning(
                    "history_unavailable",
                    performer_id=str(performer_id),
                    error=str(result),
                )
                documents[performer_id] = PerformerHistoryDocument.empty(performer_id)
            elif isinstance(result, BaseException):
                raise result
            else:
                documents[performer_id] = result

        return documents
