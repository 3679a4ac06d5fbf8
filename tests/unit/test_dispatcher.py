"""Unit tests for the dispatcher.

Tests cover:
- Offer sequencing across expiry, decline and accept
- Live candidate pool between reassignments
- Duplicate and late answers
- Withdrawal before, during and racing an outstanding offer
- Tasks settled by another process while being dispatched
- Unfulfilled and superseded outcomes
- Task validation
- Poll loop lifecycle and sweeping
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Union

import pytest
import pytest_asyncio

from runnermatch.config import DispatchConfig, RankingConfig
from runnermatch.database.models.base import utcnow
from runnermatch.database.models.offer import OfferState
from runnermatch.database.models.task import TaskStatus
from runnermatch.matching.history import HistoryProfileBuilder
from runnermatch.matching.locator import CandidateLocator
from runnermatch.matching.ranker import CompositeRanker
from runnermatch.orchestrator.dispatcher import (
    AlreadyDispatching,
    DispatchOutcome,
    Dispatcher,
    InvalidTask,
)
from runnermatch.orchestrator.events import (
    DispatchEvent,
    EventBus,
    OfferCreated,
    OfferResolved,
    TaskAssigned,
    TaskCancelled,
    TaskUnfulfilled,
)
from runnermatch.orchestrator.sweeper import OfferSweeper

Action = Union[str, Callable[[OfferCreated], Awaitable[Any]]]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def dispatch_config() -> DispatchConfig:
    """Short offer timeout so expiry paths run quickly."""
    return DispatchConfig(
        offer_timeout_seconds=0.2,
        search_radius_meters=500,
        poll_interval_seconds=0.05,
        max_concurrent_dispatches=10,
        sweep_grace_seconds=0,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def dispatcher(store, bus, dispatch_config) -> Dispatcher:
    ranker = CompositeRanker(
        CandidateLocator(store, radius_m=dispatch_config.search_radius_meters),
        HistoryProfileBuilder(store),
        RankingConfig(),
    )
    return Dispatcher(
        store=store,
        ranker=ranker,
        event_bus=bus,
        config=dispatch_config,
        sweeper=OfferSweeper(store, event_bus=bus, grace_seconds=0),
    )


class Responder:
    """Plays the runners: answers each offer according to ``answers``.

    Also records every event seen on the bus.
    """

    def __init__(self, dispatcher: Dispatcher, bus: EventBus) -> None:
        self.dispatcher = dispatcher
        self.answers: dict[uuid.UUID, Action] = {}
        self.events: list[DispatchEvent] = []
        self._subscription = bus.subscribe()
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        async for event in self._subscription:
            self.events.append(event)
            if not isinstance(event, OfferCreated):
                continue
            action = self.answers.get(event.performer_id)
            if action == "accept":
                await self.dispatcher.accept(event.offer_id)
            elif action == "decline":
                await self.dispatcher.decline(event.offer_id)
            elif callable(action):
                await action(event)

    async def close(self) -> None:
        self._subscription.close()
        await asyncio.wait_for(self._task, 1.0)

    def of_type(self, event_type: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest_asyncio.fixture
async def responder(dispatcher, bus):
    r = Responder(dispatcher, bus)
    yield r
    await r.close()


async def _settle() -> None:
    """Let the responder drain events already published."""
    await asyncio.sleep(0.05)


async def _wait_for_status(task, status: TaskStatus, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while task.status != status:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"task stayed {task.status.value}, expected {status.value}")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Offer sequencing
# ---------------------------------------------------------------------------


class TestOfferSequence:
    @pytest.mark.asyncio
    async def test_expire_decline_accept(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        """A times out, B declines, C accepts."""
        task = make_task()
        a = make_performer(meters=50, name="A")
        b = make_performer(meters=100, name="B")
        c = make_performer(meters=150, name="C")
        responder.answers = {b.id: "decline", c.id: "accept"}

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.performer_id == c.id
        assert result.offered == [a.id, b.id, c.id]
        assert task.status == TaskStatus.assigned
        assert task.assigned_performer_id == c.id

        states = {o.performer_id: o.state for o in await store.list_offers(task.id)}
        assert states == {
            a.id: OfferState.expired,
            b.id: OfferState.declined,
            c.id: OfferState.accepted,
        }
        outcomes = [(e.performer_id, e.outcome) for e in responder.of_type(OfferResolved)]
        assert outcomes == [
            (a.id, OfferState.expired),
            (b.id, OfferState.declined),
            (c.id, OfferState.accepted),
        ]
        [assigned] = responder.of_type(TaskAssigned)
        assert assigned.performer_id == c.id

    @pytest.mark.asyncio
    async def test_at_most_one_pending_offer(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        task = make_task()
        first = make_performer(meters=50)
        second = make_performer(meters=60)
        pending_counts: list[int] = []

        async def observe_then_decline(event: OfferCreated) -> None:
            offers = await store.list_offers(task.id)
            pending_counts.append(sum(o.state == OfferState.pending for o in offers))
            await dispatcher.decline(event.offer_id)

        responder.answers = {first.id: observe_then_decline, second.id: observe_then_decline}

        result = await dispatcher.dispatch_task(task)

        assert result.outcome == DispatchOutcome.UNFULFILLED
        assert pending_counts == [1, 1]

    @pytest.mark.asyncio
    async def test_runner_coming_online_is_considered(
        self, dispatcher, responder, make_task, make_performer
    ) -> None:
        """The pool is re-read on every reassignment."""
        task = make_task()
        a = make_performer(meters=100)
        b = make_performer(meters=200)
        newcomer: dict[str, uuid.UUID] = {}

        async def bring_d_online_and_decline(event: OfferCreated) -> None:
            d = make_performer(meters=20, name="D")
            newcomer["id"] = d.id
            responder.answers[d.id] = "accept"
            await dispatcher.decline(event.offer_id)

        responder.answers = {a.id: bring_d_online_and_decline}

        result = await dispatcher.dispatch_task(task)

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.performer_id == newcomer["id"]
        assert result.offered == [a.id, newcomer["id"]]
        assert b.id not in result.offered

    @pytest.mark.asyncio
    async def test_runner_going_offline_is_skipped(
        self, dispatcher, responder, make_task, make_performer
    ) -> None:
        task = make_task()
        a = make_performer(meters=50)
        b = make_performer(meters=100)
        c = make_performer(meters=150)

        async def b_leaves_then_decline(event: OfferCreated) -> None:
            b.is_available = False
            await dispatcher.decline(event.offer_id)

        responder.answers = {a.id: b_leaves_then_decline, c.id: "accept"}

        result = await dispatcher.dispatch_task(task)

        assert result.offered == [a.id, c.id]
        assert result.performer_id == c.id


# ---------------------------------------------------------------------------
# Runner answers
# ---------------------------------------------------------------------------


class TestAnswers:
    @pytest.mark.asyncio
    async def test_duplicate_accept_is_noop(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        task = make_task()
        runner = make_performer()
        responder.answers = {runner.id: "accept"}

        result = await dispatcher.dispatch_task(task)
        [offer] = await store.list_offers(task.id)

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert await dispatcher.accept(offer.id) is False
        assert await dispatcher.decline(offer.id) is False
        assert offer.state == OfferState.accepted
        assert task.assigned_performer_id == runner.id

    @pytest.mark.asyncio
    async def test_late_accept_expires_offer(
        self, dispatcher, store, make_task, make_performer
    ) -> None:
        """An answer after the deadline does not assign the task."""
        task = make_task()
        runner = make_performer()
        now = utcnow()
        offer = await store.record_offer(
            task.id, runner.id, now - timedelta(seconds=90), now - timedelta(seconds=30)
        )

        assert await dispatcher.accept(offer.id) is False
        assert offer.state == OfferState.expired
        assert task.status == TaskStatus.pending

    @pytest.mark.asyncio
    async def test_accept_without_local_dispatch_assigns(
        self, dispatcher, bus, store, make_task, make_performer
    ) -> None:
        """An offer owned by another process is settled here directly."""
        sub = bus.subscribe()
        task = make_task()
        runner = make_performer()
        now = utcnow()
        offer = await store.record_offer(task.id, runner.id, now, now + timedelta(seconds=60))

        assert await dispatcher.accept(offer.id) is True

        assert task.status == TaskStatus.assigned
        assert task.assigned_performer_id == runner.id
        first = await sub.get()
        second = await sub.get()
        assert isinstance(first, OfferResolved)
        assert first.outcome == OfferState.accepted
        assert isinstance(second, TaskAssigned)

    @pytest.mark.asyncio
    async def test_accept_after_task_cancelled_elsewhere(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        """Another process withdraws the task while the offer is out."""
        task = make_task()
        runner = make_performer()
        applied: list[bool] = []

        async def cancel_elsewhere_then_accept(event: OfferCreated) -> None:
            await store.mark_cancelled(task.id)
            applied.append(await dispatcher.accept(event.offer_id))

        responder.answers = {runner.id: cancel_elsewhere_then_accept}

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert applied == [False]
        assert result.outcome == DispatchOutcome.CANCELLED
        assert task.status == TaskStatus.cancelled
        [offer] = await store.list_offers(task.id)
        assert offer.state == OfferState.expired
        assert responder.of_type(TaskAssigned) == []

    @pytest.mark.asyncio
    async def test_accept_losing_task_race_is_not_applied(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        """The task is cancelled between the status check and the offer write."""
        task = make_task()
        runner = make_performer()
        applied: list[bool] = []
        record_outcome = store.record_offer_outcome

        async def cancel_before_accepting(offer_id, outcome):
            if outcome == OfferState.accepted:
                await store.mark_cancelled(task.id)
            return await record_outcome(offer_id, outcome)

        store.record_offer_outcome = cancel_before_accepting

        async def accept(event: OfferCreated) -> None:
            applied.append(await dispatcher.accept(event.offer_id))

        responder.answers = {runner.id: accept}

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert applied == [False]
        assert result.outcome == DispatchOutcome.CANCELLED
        assert task.status == TaskStatus.cancelled
        assert task.assigned_performer_id is None

    @pytest.mark.asyncio
    async def test_accept_from_other_process_resolves_once(
        self, dispatcher, responder, store, bus, dispatch_config, make_task, make_performer
    ) -> None:
        """The owner's expiry loses to a foreign accept and stays quiet."""
        other = Dispatcher(store, dispatcher.ranker, bus, dispatch_config)
        task = make_task()
        runner = make_performer()
        applied: list[bool] = []

        async def accept_elsewhere(event: OfferCreated) -> None:
            applied.append(await other.accept(event.offer_id))

        responder.answers = {runner.id: accept_elsewhere}

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert applied == [True]
        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.performer_id == runner.id
        resolved = responder.of_type(OfferResolved)
        assert [e.outcome for e in resolved] == [OfferState.accepted]
        assert len(responder.of_type(TaskAssigned)) == 1

    @pytest.mark.asyncio
    async def test_unknown_offer(self, dispatcher) -> None:
        with pytest.raises(ValueError):
            await dispatcher.accept(uuid.uuid4())
        with pytest.raises(ValueError):
            await dispatcher.decline(uuid.uuid4())


# ---------------------------------------------------------------------------
# Withdrawal
# ---------------------------------------------------------------------------


class TestWithdraw:
    @pytest.mark.asyncio
    async def test_withdraw_during_offer(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        task = make_task()
        a = make_performer(meters=50)
        b = make_performer(meters=100)
        withdrawn: list[bool] = []

        async def withdraw(event: OfferCreated) -> None:
            withdrawn.append(await dispatcher.withdraw(task.id))

        responder.answers = {a.id: withdraw, b.id: "accept"}

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert withdrawn == [True]
        assert result.outcome == DispatchOutcome.CANCELLED
        assert result.offered == [a.id]
        assert task.status == TaskStatus.cancelled
        [offer] = await store.list_offers(task.id)
        assert offer.state == OfferState.expired
        assert len(responder.of_type(TaskCancelled)) == 1

    @pytest.mark.asyncio
    async def test_withdraw_while_ranking_makes_no_offer(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        task = make_task()
        make_performer()
        entered = asyncio.Event()
        release = asyncio.Event()
        read_history = store.get_completed_task_categories

        async def slow_history(performer_id, kind=None):
            entered.set()
            await release.wait()
            return await read_history(performer_id, kind)

        store.get_completed_task_categories = slow_history

        handle = dispatcher.launch(task)
        await asyncio.wait_for(entered.wait(), 1.0)
        withdrawal = asyncio.create_task(dispatcher.withdraw(task.id))
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.wait_for(withdrawal, 1.0) is True
        result = await handle
        await _settle()

        assert result.outcome == DispatchOutcome.CANCELLED
        assert result.offered == []
        assert await store.list_offers(task.id) == []
        assert responder.of_type(OfferCreated) == []
        assert responder.of_type(OfferResolved) == []
        assert len(responder.of_type(TaskCancelled)) == 1

    @pytest.mark.asyncio
    async def test_withdraw_loses_to_acceptance(
        self, dispatcher, responder, make_task, make_performer
    ) -> None:
        task = make_task()
        runner = make_performer()
        withdrawn: list[bool] = []

        async def accept_then_withdraw(event: OfferCreated) -> None:
            await dispatcher.accept(event.offer_id)
            withdrawn.append(await dispatcher.withdraw(task.id))

        responder.answers = {runner.id: accept_then_withdraw}

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert withdrawn == [False]
        assert result.outcome == DispatchOutcome.ASSIGNED
        assert task.status == TaskStatus.assigned

    @pytest.mark.asyncio
    async def test_withdraw_idle_task(self, dispatcher, bus, make_task) -> None:
        sub = bus.subscribe()
        task = make_task()

        assert await dispatcher.withdraw(task.id) is True

        assert task.status == TaskStatus.cancelled
        assert isinstance(await sub.get(), TaskCancelled)

    @pytest.mark.asyncio
    async def test_withdraw_idle_expires_orphaned_offer(
        self, dispatcher, store, make_task, make_performer
    ) -> None:
        task = make_task()
        runner = make_performer()
        now = utcnow()
        offer = await store.record_offer(task.id, runner.id, now, now + timedelta(seconds=60))

        assert await dispatcher.withdraw(task.id) is True
        assert offer.state == OfferState.expired
        assert task.status == TaskStatus.cancelled

    @pytest.mark.asyncio
    async def test_withdraw_settled_task(self, dispatcher, make_task) -> None:
        task = make_task(status=TaskStatus.unfulfilled)
        assert await dispatcher.withdraw(task.id) is False
        assert task.status == TaskStatus.unfulfilled


# ---------------------------------------------------------------------------
# Terminal outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_no_candidates(self, dispatcher, responder, make_task) -> None:
        task = make_task()

        result = await dispatcher.dispatch_task(task)
        await _settle()

        assert result.outcome == DispatchOutcome.UNFULFILLED
        assert result.offered == []
        assert task.status == TaskStatus.unfulfilled
        assert len(responder.of_type(TaskUnfulfilled)) == 1

    @pytest.mark.asyncio
    async def test_everyone_declines(
        self, dispatcher, responder, make_task, make_performer
    ) -> None:
        task = make_task()
        runners = [make_performer(meters=m) for m in (50, 100, 150)]
        responder.answers = {r.id: "decline" for r in runners}

        result = await dispatcher.dispatch_task(task)

        assert result.outcome == DispatchOutcome.UNFULFILLED
        assert result.offered == [r.id for r in runners]

    @pytest.mark.asyncio
    async def test_out_of_radius_never_offered(
        self, dispatcher, make_task, make_performer
    ) -> None:
        task = make_task()
        make_performer(meters=900)

        result = await dispatcher.dispatch_task(task)

        assert result.outcome == DispatchOutcome.UNFULFILLED
        assert result.offered == []

    @pytest.mark.asyncio
    async def test_existing_pending_offer_supersedes(
        self, dispatcher, store, make_task, make_performer
    ) -> None:
        """Another dispatcher already holds an offer for this task."""
        task = make_task()
        runner = make_performer()
        make_performer(meters=20)
        now = utcnow()
        await store.record_offer(task.id, runner.id, now, now + timedelta(seconds=60))

        result = await dispatcher.dispatch_task(task)

        assert result.outcome == DispatchOutcome.SUPERSEDED
        assert len(await store.list_offers(task.id)) == 1
        assert task.status == TaskStatus.pending

    @pytest.mark.asyncio
    async def test_previously_offered_runner_excluded(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        task = make_task()
        declined_before = make_performer(meters=20)
        other = make_performer(meters=80)
        now = utcnow()
        old = await store.record_offer(
            task.id, declined_before.id, now - timedelta(seconds=5), now + timedelta(seconds=55)
        )
        await store.record_offer_outcome(old.id, OfferState.declined)
        responder.answers = {other.id: "accept", declined_before.id: "accept"}

        result = await dispatcher.dispatch_task(task)

        assert result.offered == [other.id]
        assert result.performer_id == other.id

    @pytest.mark.asyncio
    async def test_task_settled_elsewhere_stops_loop(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        task = make_task()
        a = make_performer(meters=50)
        make_performer(meters=100)

        async def cancel_elsewhere_then_decline(event: OfferCreated) -> None:
            await store.mark_cancelled(task.id)
            await dispatcher.decline(event.offer_id)

        responder.answers = {a.id: cancel_elsewhere_then_decline}

        result = await dispatcher.dispatch_task(task)

        assert result.outcome == DispatchOutcome.CANCELLED
        assert result.offered == [a.id]

    @pytest.mark.asyncio
    async def test_task_cancelled_before_first_offer(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        """A task withdrawn by another process after it was read gets no offer."""
        task = make_task()
        make_performer()

        handle = dispatcher.launch(task)
        await store.mark_cancelled(task.id)
        result = await handle
        await _settle()

        assert result.outcome == DispatchOutcome.CANCELLED
        assert result.offered == []
        assert await store.list_offers(task.id) == []
        assert responder.of_type(OfferCreated) == []


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.asyncio
    async def test_no_categories(self, dispatcher, make_task) -> None:
        with pytest.raises(InvalidTask, match="category"):
            await dispatcher.dispatch_task(make_task(categories=[" ", ""]))

    @pytest.mark.asyncio
    async def test_no_origin(self, dispatcher, make_task) -> None:
        with pytest.raises(InvalidTask, match="origin"):
            await dispatcher.dispatch_task(make_task(origin=None))

    @pytest.mark.asyncio
    async def test_not_pending(self, dispatcher, make_task) -> None:
        with pytest.raises(InvalidTask, match="assigned"):
            await dispatcher.dispatch_task(make_task(status=TaskStatus.assigned))

    @pytest.mark.asyncio
    async def test_already_dispatching(self, dispatcher, make_task, make_performer) -> None:
        task = make_task()
        make_performer()

        dispatcher.launch(task)
        try:
            assert dispatcher.is_dispatching(task.id)
            with pytest.raises(AlreadyDispatching):
                await dispatcher.dispatch_task(task)
        finally:
            await dispatcher.stop()

        assert dispatcher.active_dispatches == 0


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------


class TestPollLoop:
    @pytest.mark.asyncio
    async def test_start_dispatches_pending_tasks(
        self, dispatcher, responder, make_task, make_performer
    ) -> None:
        first = make_task()
        second = make_task()
        runner = make_performer()
        responder.answers = {runner.id: "accept"}

        await dispatcher.start()
        try:
            assert dispatcher.is_running
            await _wait_for_status(first, TaskStatus.assigned)
            await _wait_for_status(second, TaskStatus.assigned)
        finally:
            await dispatcher.stop()

        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, dispatcher) -> None:
        await dispatcher.start()
        try:
            with pytest.raises(RuntimeError):
                await dispatcher.start()
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_poll_once_respects_capacity(
        self, store, bus, make_task, make_performer
    ) -> None:
        config = DispatchConfig(offer_timeout_seconds=5, max_concurrent_dispatches=1)
        ranker = CompositeRanker(
            CandidateLocator(store, radius_m=500), HistoryProfileBuilder(store), RankingConfig()
        )
        dispatcher = Dispatcher(store, ranker, bus, config)
        make_task()
        make_task()
        make_performer()

        launched = await dispatcher.poll_once()
        try:
            assert len(launched) == 1
            assert dispatcher.active_dispatches == 1
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_poll_once_sweeps_orphaned_offer(
        self, dispatcher, responder, store, make_task, make_performer
    ) -> None:
        """An offer left by a crashed process is expired and the task re-offered."""
        task = make_task()
        crashed_runner = make_performer(meters=20)
        other = make_performer(meters=80)
        now = utcnow()
        orphan = await store.record_offer(
            task.id, crashed_runner.id, now - timedelta(seconds=120), now - timedelta(seconds=60)
        )
        responder.answers = {other.id: "accept"}

        launched = await dispatcher.poll_once()
        await _wait_for_status(task, TaskStatus.assigned)
        await dispatcher.stop()

        assert launched == [task.id]
        assert orphan.state == OfferState.expired
        assert task.assigned_performer_id == other.id

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight(self, store, bus, make_task, make_performer) -> None:
        config = DispatchConfig(offer_timeout_seconds=30)
        ranker = CompositeRanker(
            CandidateLocator(store, radius_m=500), HistoryProfileBuilder(store), RankingConfig()
        )
        dispatcher = Dispatcher(store, ranker, bus, config)
        sub = bus.subscribe()
        task = make_task()
        make_performer()

        handle = dispatcher.launch(task)
        assert isinstance(await asyncio.wait_for(sub.get(), 1.0), OfferCreated)
        await dispatcher.stop()

        assert handle.cancelled()
        assert dispatcher.active_dispatches == 0
        assert dispatcher.active_offer_ids == frozenset()
        assert task.status == TaskStatus.pending
