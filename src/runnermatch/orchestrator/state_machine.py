"""Offer and task state machines for the Runnermatch dispatcher.

This module declares the allowed offer and task transitions and applies
them through the store's compare-and-set operations. A transition that is
not in the tables is rejected before touching storage; a transition that
loses a race is reported to the caller instead of being retried.
"""

from __future__ import annotations

import enum
import uuid

import structlog

from runnermatch.database.models.offer import OfferState
from runnermatch.database.models.task import TaskStatus
from runnermatch.store import DispatchStore

logger = structlog.get_logger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current state.
        target: The attempted target state.
        entity_id: The ID of the task or offer that failed to transition.
    """

    def __init__(self, current: enum.Enum, target: enum.Enum, entity_id: str | None = None):
        self.current = current
        self.target = target
        self.entity_id = entity_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if entity_id:
            msg += f" for {entity_id}"
        super().__init__(msg)


class StaleOfferTransition(Exception):
    """Raised when an offer was already resolved by someone else.

    Attributes:
        offer_id: Offer the signal was for.
        target: State the caller tried to set.
        actual: State the offer holds now.
    """

    def __init__(self, offer_id: uuid.UUID, target: OfferState, actual: OfferState):
        self.offer_id = offer_id
        self.target = target
        self.actual = actual
        super().__init__(
            f"Offer {offer_id} is already {actual.value}; {target.value} not applied"
        )


# Authoritative transition tables
OFFER_TRANSITIONS: dict[OfferState, set[OfferState]] = {
    OfferState.pending: {OfferState.accepted, OfferState.declined, OfferState.expired},
    OfferState.accepted: set(),
    OfferState.declined: set(),
    OfferState.expired: set(),
}

TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.pending: {TaskStatus.assigned, TaskStatus.unfulfilled, TaskStatus.cancelled},
    TaskStatus.assigned: {TaskStatus.completed},
    TaskStatus.unfulfilled: set(),
    TaskStatus.cancelled: set(),
    TaskStatus.completed: set(),
}


def validate_transition(current: enum.Enum, target: enum.Enum) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current offer or task state.
        target: Target state of the same kind.

    Returns:
        True if the transition is listed in the matching table.
    """
    if isinstance(current, OfferState) and isinstance(target, OfferState):
        return target in OFFER_TRANSITIONS.get(current, set())
    if isinstance(current, TaskStatus) and isinstance(target, TaskStatus):
        return target in TASK_TRANSITIONS.get(current, set())
    return False


class OfferStateMachine:
    """Resolves offers exactly once."""

    def __init__(self, store: DispatchStore) -> None:
        self.store = store
        self.logger = logger.bind(component="OfferStateMachine")

    async def resolve(self, offer_id: uuid.UUID, target: OfferState) -> None:
        """Move a pending offer to ``target``.

        Args:
            offer_id: Offer to resolve.
            target: accepted, declined or expired.

        Raises:
            InvalidTransitionError: If ``target`` is not reachable from pending.
            StaleOfferTransition: If the offer was already resolved.
            ValueError: If the offer does not exist.
        """
        if not validate_transition(OfferState.pending, target):
            raise InvalidTransitionError(OfferState.pending, target, f"offer {offer_id}")

        if await self.store.record_offer_outcome(offer_id, target):
            self.logger.info(
                "offer_resolved",
                offer_id=str(offer_id),
                outcome=target.value,
            )
            return

        offer = await self.store.get_offer(offer_id)
        if offer is None:
            raise ValueError(f"Offer {offer_id} not found")
        raise StaleOfferTransition(offer_id, target, offer.state)


class TaskStateMachine:
    """Moves tasks out of ``pending`` through the store's CAS operations."""

    def __init__(self, store: DispatchStore) -> None:
        self.store = store
        self.logger = logger.bind(component="TaskStateMachine")

    async def transition(
        self,
        task_id: uuid.UUID,
        target: TaskStatus,
        performer_id: uuid.UUID | None = None,
    ) -> bool:
        """Move a pending task to ``target``.

        Args:
            task_id: Task to update.
            target: assigned, unfulfilled or cancelled.
            performer_id: Winning runner, required for ``assigned``.

        Returns:
            True if this call performed the transition, False if the task
            had already left ``pending``.

        Raises:
            InvalidTransitionError: If ``target`` is not reachable from pending.
            ValueError: If ``assigned`` is requested without a performer.
        """
        if not validate_transition(TaskStatus.pending, target):
            raise InvalidTransitionError(TaskStatus.pending, target, f"task {task_id}")

        if target == TaskStatus.assigned:
            if performer_id is None:
                raise ValueError("performer_id is required to assign a task")
            applied = await self.store.assign_task(task_id, performer_id)
        elif target == TaskStatus.unfulfilled:
            applied = await self.store.mark_unfulfilled(task_id)
        else:
            applied = await self.store.mark_cancelled(task_id)

        self.logger.info(
            "task_transition",
            task_id=str(task_id),
            from_status=TaskStatus.pending.value,
            to_status=target.value,
            performer_id=str(performer_id) if performer_id else None,
            applied=applied,
        )
        return applied
