"""SchedulerEngine — APScheduler lifecycle for the two periodic sweeps."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.scheduler.reminder import ReminderSweep
    from src.scheduler.runner import ScheduledTaskRunner

logger = logging.getLogger(__name__)

TEMPLATE_JOB = "scheduled_task_tick"
REMINDER_JOB = "reminder_sweep"


class SchedulerEngine:
    """Drives the template tick and the reminder sweep on interval timers.

    Both jobs also run once immediately on ``start()`` to absorb fires missed
    while the process was down. A sweep never overlaps itself: a tick that
    arrives while the previous one is still running is skipped.

    Args:
        runner: Template tick.
        sweep: Reminder sweep.
        template_interval_minutes: Default from settings.
        reminder_interval_minutes: Default from settings.
    """

    def __init__(
        self,
        runner: ScheduledTaskRunner,
        sweep: ReminderSweep,
        template_interval_minutes: int | None = None,
        reminder_interval_minutes: int | None = None,
    ) -> None:
        self._runner = runner
        self._sweep = sweep
        self._template_minutes = (
            template_interval_minutes or settings.scheduled_check_interval_minutes
        )
        self._reminder_minutes = (
            reminder_interval_minutes or settings.reminder_check_interval_minutes
        )
        self._scheduler: AsyncIOScheduler | None = None
        self._busy: set[str] = set()
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def is_busy(self, kind: str) -> bool:
        return kind in self._busy

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Create the interval jobs and start the scheduler."""
        if self._running:
            return
        now = datetime.now(UTC)
        self._scheduler = AsyncIOScheduler(timezone=UTC)
        self._scheduler.add_job(
            self.run_templates_now,
            trigger=IntervalTrigger(minutes=self._template_minutes, timezone=UTC),
            id=TEMPLATE_JOB,
            name="Scheduled task tick",
            next_run_time=now,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        self._scheduler.add_job(
            self.run_reminders_now,
            trigger=IntervalTrigger(minutes=self._reminder_minutes, timezone=UTC),
            id=REMINDER_JOB,
            name="Reminder sweep",
            next_run_time=now,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (templates every %d min, reminders every %d min)",
            self._template_minutes,
            self._reminder_minutes,
        )

    async def stop(self) -> None:
        """Clear the timers, then wait for any in-flight sweep to finish."""
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._running = False
        if self._in_flight:
            logger.info("Waiting for %d in-flight sweep(s)", len(self._in_flight))
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Scheduler stopped")

    # -- Sweeps ----------------------------------------------------------------

    async def run_templates_now(self) -> int | None:
        """Run the template tick. Returns tasks created, or None if skipped."""
        return await self._guarded(TEMPLATE_JOB, self._runner.tick)

    async def run_reminders_now(self) -> int | None:
        """Run the reminder sweep. Returns notifications sent, or None if skipped."""
        return await self._guarded(REMINDER_JOB, self._sweep.sweep)

    async def _guarded(self, kind: str, fn: Callable[[], Awaitable[int]]) -> int | None:
        if kind in self._busy:
            logger.warning("%s still running, skipping this tick", kind)
            return None
        self._busy.add(kind)
        current = asyncio.current_task()
        if current is not None:
            self._in_flight.add(current)
        try:
            return await fn()
        except Exception:
            logger.exception("%s failed", kind)
            return None
        finally:
            self._busy.discard(kind)
            if current is not None:
                self._in_flight.discard(current)
