"""ReminderSweep — overdue alerts and repeat reminders for pending tasks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.config import settings
from src.tasks import messages
from src.tasks.lifecycle import notify
from src.tasks.models import utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from src.notifications.router import NotificationRouter
    from src.tasks.models import Task
    from src.tasks.store import TaskStore

logger = logging.getLogger(__name__)


class ReminderSweep:
    """Applies the reminder rules to every pending task, first match wins.

    1. Deadline passed and no overdue alert yet: alert the assignee (and
       the reporter) once, ever.
    2. Otherwise, if the reminder interval has elapsed since the last
       reminder (or none was sent): remind the assignee.

    Each rule claims its bookkeeping column with a compare-and-set before
    anything is sent, so overlapping sweeps or a concurrent completion
    cannot produce a duplicate or post-completion message. The overdue alert
    does not stop interval reminders on later sweeps.

    Args:
        store: Task persistence.
        router: Outbound notifications.
        timezone: Zone used to render deadlines in messages.
    """

    def __init__(
        self,
        store: TaskStore,
        router: NotificationRouter,
        timezone: str | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._timezone = timezone or settings.default_timezone

    async def sweep(self, now: datetime | None = None) -> int:
        """Run one pass. Returns the number of notifications delivered.

        Raises:
            StorageUnavailable: pending tasks could not be listed.
        """
        now = now or utcnow()
        pending = await self._store.list_pending()
        sent = 0
        for task in pending:
            try:
                sent += await self._process(task, now)
            except Exception:
                logger.exception("Reminder processing failed for task %s", task.id)
        if sent:
            logger.info("Reminder sweep sent %d notification(s) over %d pending task(s)", sent, len(pending))
        return sent

    async def _process(self, task: Task, now: datetime) -> int:
        if task.is_overdue(now) and task.deadline_notified_at is None:
            if not await self._store.mark_deadline_notified(task.id, now):
                return 0
            logger.info("Task %s overdue, alerting %s", task.id, task.delivery_id)
            sent = int(await notify(self._router, task.delivery_id, messages.task_overdue(task, self._timezone)))
            if task.reporter_open_id and task.reporter_open_id != task.delivery_id:
                sent += int(
                    await notify(
                        self._router,
                        task.reporter_open_id,
                        messages.task_overdue_reporter(task, self._timezone),
                    )
                )
            return sent

        if task.reminder_due(now):
            if not await self._store.mark_reminded(task.id, task.last_reminded_at, now):
                return 0
            logger.debug("Reminding %s about task %s", task.delivery_id, task.id)
            return int(await notify(self._router, task.delivery_id, messages.task_reminder(task, self._timezone)))
        return 0
