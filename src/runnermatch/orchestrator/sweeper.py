"""Expiry of orphaned offers.

A dispatch run holds its offer's deadline timer in memory. If the process
dies, the offer stays pending in storage and blocks its task (a task may
hold only one pending offer). The sweeper expires such offers once they are
past their deadline by more than a grace period, skipping offers a live
dispatch in this process is still tracking.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import AbstractSet, Callable

import structlog
from pydantic import BaseModel, Field

from runnermatch.database.models.base import utcnow
from runnermatch.database.models.offer import OfferState
from runnermatch.orchestrator.events import EventBus, OfferResolved
from runnermatch.orchestrator.state_machine import OfferStateMachine, StaleOfferTransition
from runnermatch.store import DispatchStore

logger = structlog.get_logger(__name__)


class SweepReport(BaseModel):
    """Summary of one sweep.

    Attributes:
        checked: Overdue pending offers found.
        expired: Offers this sweep expired.
        skipped_active: Overdue offers left alone because a live dispatch owns them.
    """

    checked: int = 0
    expired: list[uuid.UUID] = Field(default_factory=list)
    skipped_active: int = 0


class OfferSweeper:
    """Expires pending offers abandoned past their deadline."""

    def __init__(
        self,
        store: DispatchStore,
        event_bus: EventBus | None = None,
        grace_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.grace_seconds = grace_seconds
        self.offer_state_machine = OfferStateMachine(store)
        self._clock = clock
        self._logger = logger.bind(component="OfferSweeper")

    async def sweep(
        self, active_offer_ids: AbstractSet[uuid.UUID] = frozenset()
    ) -> SweepReport:
        """Expire overdue offers not owned by a live dispatch.

        Args:
            active_offer_ids: Offers tracked by dispatches in this process.

        Returns:
            SweepReport describing what was done.
        """
        cutoff = self._clock() - timedelta(seconds=self.grace_seconds)
        overdue = await self.store.list_overdue_offers(cutoff)
        report = SweepReport(checked=len(overdue))

        for offer in overdue:
            if offer.id in active_offer_ids:
                report.skipped_active += 1
                continue

            try:
                await self.offer_state_machine.resolve(offer.id, OfferState.expired)
            except StaleOfferTransition:
                continue

            report.expired.append(offer.id)
            self._logger.info(
                "orphaned_offer_expired",
                offer_id=str(offer.id),
                task_id=str(offer.task_id),
                performer_id=str(offer.performer_id),
                expires_at=offer.expires_at.isoformat(),
            )
            if self.event_bus is not None:
                await self.event_bus.publish(
                    OfferResolved(
                        task_id=offer.task_id,
                        offer_id=offer.id,
                        performer_id=offer.performer_id,
                        outcome=OfferState.expired,
                    )
                )

        if report.checked:
            self._logger.info(
                "offer_sweep_complete",
                checked=report.checked,
                expired=len(report.expired),
                skipped_active=report.skipped_active,
            )
        return report
