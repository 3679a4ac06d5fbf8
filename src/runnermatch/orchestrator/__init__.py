"""Dispatch orchestration for Runnermatch.

This package contains the offer/task state machines, the dispatcher that
runs the offer protocol, the event bus carrying dispatch outcomes, and the
sweeper for offers orphaned by a crashed process.
"""

from runnermatch.orchestrator.dispatcher import (
    AlreadyDispatching,
    DispatchOutcome,
    DispatchResult,
    Dispatcher,
    InvalidTask,
    create_dispatcher,
    create_ranker,
    validate_task,
)
from runnermatch.orchestrator.events import (
    DispatchEvent,
    EventBus,
    EventSubscription,
    OfferCreated,
    OfferResolved,
    TaskAssigned,
    TaskCancelled,
    TaskUnfulfilled,
)
from runnermatch.orchestrator.state_machine import (
    OFFER_TRANSITIONS,
    TASK_TRANSITIONS,
    InvalidTransitionError,
    OfferStateMachine,
    StaleOfferTransition,
    TaskStateMachine,
    validate_transition,
)
from runnermatch.orchestrator.sweeper import OfferSweeper, SweepReport

__all__ = [
    "AlreadyDispatching",
    "DispatchOutcome",
    "DispatchResult",
    "Dispatcher",
    "InvalidTask",
    "create_dispatcher",
    "create_ranker",
    "validate_task",
    "DispatchEvent",
    "EventBus",
    "EventSubscription",
    "OfferCreated",
    "OfferResolved",
    "TaskAssigned",
    "TaskCancelled",
    "TaskUnfulfilled",
    "OFFER_TRANSITIONS",
    "TASK_TRANSITIONS",
    "InvalidTransitionError",
    "OfferStateMachine",
    "StaleOfferTransition",
    "TaskStateMachine",
    "validate_transition",
    "OfferSweeper",
    "SweepReport",
]
