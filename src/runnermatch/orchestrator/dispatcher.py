"""Task dispatcher for the Runnermatch orchestrator.

The dispatcher drives each pending task through the offer protocol:

1. Rank the eligible runners from a fresh snapshot.
2. Offer the task to the best runner with a deadline.
3. Wait for the first of accept, decline or deadline.
4. On accept, assign the task. Otherwise exclude the runner and go to 1.
5. When nobody is left, mark the task unfulfilled.

Every task is dispatched in its own asyncio task. The only suspension point
inside the offer loop that waits on a runner is the wait in step 3; offer
and task records change only through compare-and-set writes, so a signal
that loses a race is a no-op.

A poll loop (``start``/``stop``) periodically picks up pending tasks and
expires offers orphaned by a crashed process via the ``OfferSweeper``.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from runnermatch.config import DispatchConfig, RunnermatchConfig
from runnermatch.database.models.base import utcnow
from runnermatch.database.models.offer import Offer, OfferState
from runnermatch.database.models.task import Task, TaskKind, TaskStatus
from runnermatch.logging import bind_dispatch_context, clear_dispatch_context
from runnermatch.matching.affinity import normalize_terms
from runnermatch.matching.history import HistoryProfileBuilder
from runnermatch.matching.locator import CandidateLocator
from runnermatch.matching.ranker import CompositeRanker
from runnermatch.orchestrator.events import (
    EventBus,
    OfferCreated,
    OfferResolved,
    TaskAssigned,
    TaskCancelled,
    TaskUnfulfilled,
)
from runnermatch.orchestrator.state_machine import (
    OfferStateMachine,
    StaleOfferTransition,
    TaskStateMachine,
)
from runnermatch.orchestrator.sweeper import OfferSweeper
from runnermatch.store import DispatchStore, OfferConflictError

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class InvalidTask(Exception):
    """Raised when a task cannot be dispatched.

    Attributes:
        task_id: The offending task.
        reason: Why it was rejected.
    """

    def __init__(self, task_id: uuid.UUID, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} cannot be dispatched: {reason}")


class AlreadyDispatching(Exception):
    """Raised when a task is already being dispatched by this dispatcher."""

    def __init__(self, task_id: uuid.UUID):
        self.task_id = task_id
        super().__init__(f"Task {task_id} is already being dispatched")


class DispatchOutcome(str, Enum):
    """How a dispatch run ended.

    Attributes:
        ASSIGNED: A runner accepted.
        UNFULFILLED: The candidate pool was exhausted.
        CANCELLED: The task was withdrawn.
        SUPERSEDED: Another dispatcher owns the task, or it was settled
            outside this run.
    """

    ASSIGNED = "assigned"
    UNFULFILLED = "unfulfilled"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class DispatchResult(BaseModel):
    """Result of one dispatch run.

    Attributes:
        task_id: Task that was dispatched.
        outcome: How the run ended.
        performer_id: Runner holding the task when ``outcome`` is assigned.
        offered: Runners offered the task during this run, in order.
    """

    task_id: uuid.UUID
    outcome: DispatchOutcome
    performer_id: uuid.UUID | None = None
    offered: list[uuid.UUID] = Field(default_factory=list)


class _DispatchRun:
    """In-process bookkeeping for one task being dispatched."""

    def __init__(self, task_id: uuid.UUID) -> None:
        self.task_id = task_id
        self.cancel_requested = False
        self.active_offer: Offer | None = None
        self.finished: asyncio.Future[DispatchResult | None] = (
            asyncio.get_running_loop().create_future()
        )
        self.handle: asyncio.Task[DispatchResult | None] | None = None

    def finish(self, result: DispatchResult | None) -> None:
        if not self.finished.done():
            self.finished.set_result(result)


def validate_task(task: Task) -> None:
    """Check that a task can enter the offer loop.

    Raises:
        InvalidTask: If the task is not pending, has no category tags,
            or has no origin.
    """
    if task.status != TaskStatus.pending:
        raise InvalidTask(task.id, f"status is {task.status.value}, not pending")
    if not normalize_terms(task.categories or []):
        raise InvalidTask(task.id, "no category tags")
    if task.origin is None:
        raise InvalidTask(task.id, "no origin location")


class Dispatcher:
    """Runs the offer/timeout/reassignment protocol for pending tasks.

    Attributes:
        store: Storage backend.
        ranker: Ranker producing a fresh candidate order per pass.
        event_bus: Bus receiving every dispatch event.
        config: Offer timeout, poll interval and concurrency limits.
        sweeper: Optional sweeper run at the start of each poll cycle.
    """

    def __init__(
        self,
        store: DispatchStore,
        ranker: CompositeRanker,
        event_bus: EventBus,
        config: DispatchConfig,
        sweeper: OfferSweeper | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.ranker = ranker
        self.event_bus = event_bus
        self.config = config
        self.sweeper = sweeper
        self.offer_state_machine = OfferStateMachine(store)
        self.task_state_machine = TaskStateMachine(store)
        self._clock = clock

        self._runs: dict[uuid.UUID, _DispatchRun] = {}
        self._waiters: dict[uuid.UUID, asyncio.Future[OfferState]] = {}
        self._semaphore = asyncio.Semaphore(config.max_concurrent_dispatches)
        self._running: bool = False
        self._stop_event = asyncio.Event()
        self._poll_task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="Dispatcher")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Whether the poll loop is currently active."""
        return self._running

    @property
    def active_dispatches(self) -> int:
        """Number of tasks currently being dispatched in this process."""
        return len(self._runs)

    @property
    def active_offer_ids(self) -> frozenset[uuid.UUID]:
        """Pending offers owned by a live dispatch in this process."""
        return frozenset(self._waiters)

    def is_dispatching(self, task_id: uuid.UUID) -> bool:
        return task_id in self._runs

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, kind: TaskKind | None = None) -> None:
        """Start the poll loop.

        Args:
            kind: Only dispatch tasks of this kind. None for all kinds.

        Raises:
            RuntimeError: If the dispatcher is already running.
        """
        if self._running:
            raise RuntimeError("Dispatcher is already running")

        self._running = True
        self._stop_event.clear()
        self._logger.info(
            "dispatcher_starting",
            kind=kind.value if kind else None,
            poll_interval=self.config.poll_interval_seconds,
        )
        self._poll_task = asyncio.create_task(
            self._poll_loop(kind),
            name="dispatcher-poll",
        )

    async def stop(self) -> None:
        """Stop the poll loop and cancel in-flight dispatches.

        Offers left pending by a cancelled dispatch are expired later by
        the sweeper. Safe to call if the dispatcher is not running.
        """
        if self._running:
            self._logger.info("dispatcher_stopping", active=self.active_dispatches)
            self._running = False
            self._stop_event.set()

            if self._poll_task is not None:
                try:
                    await self._poll_task
                except asyncio.CancelledError:
                    pass
                finally:
                    self._poll_task = None

        runs = list(self._runs.values())
        handles = [run.handle for run in runs if run.handle is not None]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
            self._logger.info("dispatches_cancelled", count=len(handles))

        # A dispatch cancelled before it started never ran its own cleanup
        for run in runs:
            if self._runs.get(run.task_id) is run:
                del self._runs[run.task_id]
            run.finish(None)

        self._logger.info("dispatcher_stopped")

    async def _poll_loop(self, kind: TaskKind | None) -> None:
        """Poll for pending tasks until stopped."""
        self._logger.info("poll_loop_started")

        while self._running:
            try:
                await self.poll_once(kind)
            except Exception:
                self._logger.exception("poll_loop_error")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), self.config.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

        self._logger.info("poll_loop_exited")

    async def poll_once(self, kind: TaskKind | None = None) -> list[uuid.UUID]:
        """Run one poll cycle.

        Sweeps orphaned offers, then launches dispatches for pending tasks
        not already being dispatched here, up to the concurrency limit.
        Tasks that fail validation are logged and skipped.

        Args:
            kind: Only consider tasks of this kind.

        Returns:
            IDs of the tasks launched in this cycle.
        """
        if self.sweeper is not None:
            await self.sweeper.sweep(active_offer_ids=self.active_offer_ids)

        tasks = await self.store.list_pending_tasks(kind)
        launched: list[uuid.UUID] = []

        for task in tasks:
            if self.active_dispatches >= self.config.max_concurrent_dispatches:
                self._logger.debug(
                    "dispatch_capacity_reached", active=self.active_dispatches
                )
                break
            if task.id in self._runs:
                continue
            try:
                self.launch(task)
            except InvalidTask as e:
                self._logger.warning(
                    "task_not_dispatchable", task_id=str(task.id), reason=e.reason
                )
                continue
            launched.append(task.id)

        if launched:
            self._logger.info("dispatches_launched", count=len(launched))
        return launched

    # ------------------------------------------------------------------
    # Dispatch entry points
    # ------------------------------------------------------------------

    def launch(self, task: Task) -> asyncio.Task[DispatchResult | None]:
        """Dispatch a task in the background.

        Raises:
            InvalidTask: If the task cannot be dispatched.
            AlreadyDispatching: If the task is already being dispatched here.
        """
        run = self._register(task)
        handle = asyncio.create_task(
            self._run_guarded(task, run),
            name=f"dispatch-{task.id}",
        )
        run.handle = handle
        return handle

    async def dispatch_task(self, task: Task) -> DispatchResult:
        """Dispatch a task and wait for the outcome.

        Raises:
            InvalidTask: If the task cannot be dispatched.
            AlreadyDispatching: If the task is already being dispatched here.
        """
        run = self._register(task)
        return await self._execute(task, run)

    async def dispatch_pending(self, kind: TaskKind | None = None) -> list[DispatchResult]:
        """Dispatch every currently pending task and wait for all outcomes.

        Tasks failing validation are skipped with a warning.
        """
        tasks = await self.store.list_pending_tasks(kind)
        handles: list[asyncio.Task[DispatchResult | None]] = []
        for task in tasks:
            if task.id in self._runs:
                continue
            try:
                handles.append(self.launch(task))
            except InvalidTask as e:
                self._logger.warning(
                    "task_not_dispatchable", task_id=str(task.id), reason=e.reason
                )

        results = await asyncio.gather(*handles)
        return [result for result in results if result is not None]

    def _register(self, task: Task) -> _DispatchRun:
        validate_task(task)
        if task.id in self._runs:
            raise AlreadyDispatching(task.id)
        run = _DispatchRun(task.id)
        self._runs[task.id] = run
        return run

    async def _run_guarded(self, task: Task, run: _DispatchRun) -> DispatchResult | None:
        try:
            return await self._execute(task, run)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("dispatch_failed", task_id=str(task.id))
            return None

    async def _execute(self, task: Task, run: _DispatchRun) -> DispatchResult:
        result: DispatchResult | None = None
        try:
            async with self._semaphore:
                bind_dispatch_context(task_id=str(task.id))
                result = await self._offer_loop(task, run)
            self._logger.info(
                "dispatch_finished",
                task_id=str(task.id),
                outcome=result.outcome.value,
                offers=len(result.offered),
            )
            return result
        finally:
            clear_dispatch_context()
            self._runs.pop(task.id, None)
            run.finish(result)

    # ------------------------------------------------------------------
    # Offer loop
    # ------------------------------------------------------------------

    async def _offer_loop(self, task: Task, run: _DispatchRun) -> DispatchResult:
        existing = await self.store.list_offers(task.id)
        if any(offer.state == OfferState.pending for offer in existing):
            self._logger.info("task_offer_owned_elsewhere", task_id=str(task.id))
            return DispatchResult(task_id=task.id, outcome=DispatchOutcome.SUPERSEDED)

        excluded: set[uuid.UUID] = {offer.performer_id for offer in existing}
        offered: list[uuid.UUID] = []

        while True:
            if run.cancel_requested:
                return await self._cancel(task.id, offered)

            ranked = await self.ranker.rank(
                task, exclude=frozenset(excluded), now=self._clock()
            )

            # The task may have been withdrawn or settled while ranking
            if run.cancel_requested:
                return await self._cancel(task.id, offered)
            current = await self.store.get_task(task.id)
            if current is None or current.status != TaskStatus.pending:
                return await self._settled_elsewhere(task.id, offered)

            if not ranked:
                return await self._exhausted(task.id, offered)

            top = ranked[0]
            offered_at = self._clock()
            expires_at = offered_at + timedelta(seconds=self.config.offer_timeout_seconds)
            try:
                offer = await self.store.record_offer(
                    task.id, top.performer_id, offered_at, expires_at
                )
            except OfferConflictError as e:
                self._logger.warning(
                    "offer_conflict",
                    task_id=str(task.id),
                    performer_id=str(e.performer_id),
                )
                return DispatchResult(
                    task_id=task.id, outcome=DispatchOutcome.SUPERSEDED, offered=offered
                )

            excluded.add(top.performer_id)
            offered.append(top.performer_id)
            if run.cancel_requested:
                return await self._retract(offer, offered)

            future: asyncio.Future[OfferState] = asyncio.get_running_loop().create_future()
            self._waiters[offer.id] = future
            run.active_offer = offer
            bind_dispatch_context(task_id=str(task.id), offer_id=str(offer.id))

            try:
                await self.event_bus.publish(
                    OfferCreated(
                        task_id=task.id,
                        offer_id=offer.id,
                        performer_id=offer.performer_id,
                        expires_at=offer.expires_at,
                    )
                )
                self._logger.info(
                    "offer_created",
                    performer_id=str(offer.performer_id),
                    score=round(top.final_score, 4),
                    expires_at=offer.expires_at.isoformat(),
                )
                outcome = await self._await_outcome(offer, future, run)
            finally:
                self._waiters.pop(offer.id, None)
                run.active_offer = None

            if outcome == OfferState.accepted:
                return await self._assign(task.id, offer.performer_id, offered)

            self._logger.info(
                "offer_reassigning",
                performer_id=str(offer.performer_id),
                outcome=outcome.value,
            )

    async def _await_outcome(
        self,
        offer: Offer,
        future: asyncio.Future[OfferState],
        run: _DispatchRun,
    ) -> OfferState:
        """Wait for accept, decline or the deadline, whichever comes first.

        ``OfferResolved`` is published by whoever resolves the offer; this
        method publishes it only when the deadline wins.
        """
        if future.done():
            return future.result()

        if not run.cancel_requested:
            timeout = max(0.0, (offer.expires_at - self._clock()).total_seconds())
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout)
            except asyncio.TimeoutError:
                pass

        try:
            await self.offer_state_machine.resolve(offer.id, OfferState.expired)
        except StaleOfferTransition as e:
            # Answered just before the deadline, possibly by another process
            self._logger.info(
                "offer_resolved_before_expiry",
                offer_id=str(offer.id),
                outcome=e.actual.value,
            )
            return e.actual
        await self._announce(offer, OfferState.expired)
        return OfferState.expired

    async def _retract(self, offer: Offer, offered: list[uuid.UUID]) -> DispatchResult:
        """Expire an offer recorded after a withdrawal, without announcing it."""
        try:
            await self.offer_state_machine.resolve(offer.id, OfferState.expired)
        except StaleOfferTransition as e:
            if e.actual == OfferState.accepted:
                return await self._assign(offer.task_id, offer.performer_id, offered)
        self._logger.info("offer_retracted", offer_id=str(offer.id))
        return await self._cancel(offer.task_id, offered)

    async def _announce(self, offer: Offer, outcome: OfferState) -> None:
        await self.event_bus.publish(
            OfferResolved(
                task_id=offer.task_id,
                offer_id=offer.id,
                performer_id=offer.performer_id,
                outcome=outcome,
            )
        )

    async def _assign(
        self,
        task_id: uuid.UUID,
        performer_id: uuid.UUID,
        offered: list[uuid.UUID],
    ) -> DispatchResult:
        if await self.task_state_machine.transition(
            task_id, TaskStatus.assigned, performer_id=performer_id
        ):
            await self.event_bus.publish(
                TaskAssigned(task_id=task_id, performer_id=performer_id)
            )
            return DispatchResult(
                task_id=task_id,
                outcome=DispatchOutcome.ASSIGNED,
                performer_id=performer_id,
                offered=offered,
            )
        return await self._settled_elsewhere(task_id, offered)

    async def _exhausted(
        self, task_id: uuid.UUID, offered: list[uuid.UUID]
    ) -> DispatchResult:
        if await self.task_state_machine.transition(task_id, TaskStatus.unfulfilled):
            self._logger.info("task_unfulfilled", offers=len(offered))
            await self.event_bus.publish(TaskUnfulfilled(task_id=task_id))
            return DispatchResult(
                task_id=task_id, outcome=DispatchOutcome.UNFULFILLED, offered=offered
            )
        return await self._settled_elsewhere(task_id, offered)

    async def _cancel(
        self, task_id: uuid.UUID, offered: list[uuid.UUID]
    ) -> DispatchResult:
        if await self.task_state_machine.transition(task_id, TaskStatus.cancelled):
            self._logger.info("task_cancelled", offers=len(offered))
            await self.event_bus.publish(TaskCancelled(task_id=task_id))
            return DispatchResult(
                task_id=task_id, outcome=DispatchOutcome.CANCELLED, offered=offered
            )
        return await self._settled_elsewhere(task_id, offered)

    async def _settled_elsewhere(
        self, task_id: uuid.UUID, offered: list[uuid.UUID]
    ) -> DispatchResult:
        """Report the outcome of a task another actor moved out of pending."""
        task = await self.store.get_task(task_id)
        outcome = DispatchOutcome.SUPERSEDED
        performer_id = None
        if task is not None:
            if task.status in (TaskStatus.assigned, TaskStatus.completed):
                outcome = DispatchOutcome.ASSIGNED
                performer_id = task.assigned_performer_id
            elif task.status == TaskStatus.unfulfilled:
                outcome = DispatchOutcome.UNFULFILLED
            elif task.status == TaskStatus.cancelled:
                outcome = DispatchOutcome.CANCELLED

        self._logger.info(
            "task_settled_elsewhere",
            task_id=str(task_id),
            status=task.status.value if task is not None else None,
        )
        return DispatchResult(
            task_id=task_id, outcome=outcome, performer_id=performer_id, offered=offered
        )

    # ------------------------------------------------------------------
    # Runner signals
    # ------------------------------------------------------------------

    async def accept(self, offer_id: uuid.UUID) -> bool:
        """Accept an offer on behalf of its runner.

        An answer arriving after the deadline, or for a task that is no
        longer pending, expires the offer instead. When a dispatch in this
        process owns the offer, the call waits for it to assign the task;
        otherwise the task is assigned here directly.

        Returns:
            True if the task is now assigned to the offer's runner, False
            if the offer was already resolved, past its deadline, or the
            task was settled some other way.

        Raises:
            ValueError: If the offer does not exist.
        """
        offer = await self._get_offer(offer_id)

        if offer.state == OfferState.pending and offer.expires_at <= self._clock():
            await self._signal(offer, OfferState.expired)
            self._logger.info("late_acceptance_expired", offer_id=str(offer_id))
            return False

        task = await self.store.get_task(offer.task_id)
        if task is None or task.status != TaskStatus.pending:
            if await self._signal(offer, OfferState.expired):
                self._logger.info(
                    "acceptance_for_settled_task",
                    offer_id=str(offer_id),
                    status=task.status.value if task is not None else None,
                )
            return False

        run = self._runs.get(offer.task_id)
        owned = run is not None and offer_id in self._waiters
        if not await self._signal(offer, OfferState.accepted):
            return False

        result: DispatchResult | None = None
        if owned and run is not None:
            result = await asyncio.shield(run.finished)
        if result is None:
            result = await self._assign(offer.task_id, offer.performer_id, [])

        applied = (
            result.outcome == DispatchOutcome.ASSIGNED
            and result.performer_id == offer.performer_id
        )
        if not applied:
            self._logger.warning(
                "acceptance_not_applied",
                offer_id=str(offer_id),
                outcome=result.outcome.value,
            )
        return applied

    async def decline(self, offer_id: uuid.UUID) -> bool:
        """Decline an offer on behalf of its runner.

        Returns:
            True if the decline took effect, False if the offer was
            already resolved.

        Raises:
            ValueError: If the offer does not exist.
        """
        offer = await self._get_offer(offer_id)
        return await self._signal(offer, OfferState.declined)

    async def _get_offer(self, offer_id: uuid.UUID) -> Offer:
        offer = await self.store.get_offer(offer_id)
        if offer is None:
            raise ValueError(f"Offer {offer_id} not found")
        return offer

    async def _signal(self, offer: Offer, outcome: OfferState) -> bool:
        try:
            await self.offer_state_machine.resolve(offer.id, outcome)
        except StaleOfferTransition as e:
            self._logger.info(
                "stale_offer_signal_ignored",
                offer_id=str(offer.id),
                signal=outcome.value,
                actual=e.actual.value,
            )
            return False

        await self._announce(offer, outcome)
        future = self._waiters.get(offer.id)
        if future is not None and not future.done():
            future.set_result(outcome)
        return True

    async def withdraw(self, task_id: uuid.UUID) -> bool:
        """Withdraw a task.

        An outstanding offer is expired and the task is cancelled without
        offering it to anyone else. If a runner has already accepted, the
        withdrawal fails and the task stays assigned.

        Returns:
            True if the task is now cancelled by this call.
        """
        run = self._runs.get(task_id)
        if run is None:
            return await self._withdraw_idle(task_id)

        run.cancel_requested = True
        offer = run.active_offer
        if offer is not None:
            try:
                await self.offer_state_machine.resolve(offer.id, OfferState.expired)
            except StaleOfferTransition as e:
                if e.actual == OfferState.accepted:
                    self._logger.info(
                        "withdraw_lost_to_acceptance", task_id=str(task_id)
                    )
                    return False
            else:
                await self._announce(offer, OfferState.expired)
                future = self._waiters.get(offer.id)
                if future is not None and not future.done():
                    future.set_result(OfferState.expired)

        result = await asyncio.shield(run.finished)
        if result is None:
            return await self._withdraw_idle(task_id)
        return result.outcome == DispatchOutcome.CANCELLED

    async def _withdraw_idle(self, task_id: uuid.UUID) -> bool:
        pending = await self.store.get_pending_offer(task_id)
        if pending is not None:
            try:
                await self.offer_state_machine.resolve(pending.id, OfferState.expired)
            except StaleOfferTransition as e:
                if e.actual == OfferState.accepted:
                    return False
            else:
                await self._announce(pending, OfferState.expired)

        if not await self.task_state_machine.transition(task_id, TaskStatus.cancelled):
            return False
        await self.event_bus.publish(TaskCancelled(task_id=task_id))
        return True


def create_ranker(config: RunnermatchConfig, store: DispatchStore) -> CompositeRanker:
    """Wire a ranker from configuration."""
    locator = CandidateLocator(
        store,
        radius_m=config.dispatch.search_radius_meters,
        freshness_seconds=config.dispatch.location_freshness_seconds,
    )
    return CompositeRanker(locator, HistoryProfileBuilder(store), config.ranking)


def create_dispatcher(
    config: RunnermatchConfig,
    store: DispatchStore,
    event_bus: EventBus,
) -> Dispatcher:
    """Wire a dispatcher, its ranker and its sweeper from configuration.

    Args:
        config: Root configuration.
        store: Storage backend.
        event_bus: Bus receiving dispatch events.

    Returns:
        Dispatcher ready to ``start``.
    """
    sweeper = OfferSweeper(
        store,
        event_bus=event_bus,
        grace_seconds=config.dispatch.sweep_grace_seconds,
    )
    return Dispatcher(
        store=store,
        ranker=create_ranker(config, store),
        event_bus=event_bus,
        config=config.dispatch,
        sweeper=sweeper,
    )
