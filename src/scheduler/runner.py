"""ScheduledTaskRunner — materialises tasks from due templates."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from src.config import settings
from src.errors import EmptyTag, InvalidAssignee
from src.scheduler import cron
from src.tasks.models import TaskRequest, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from src.scheduler.models import TaskTemplate
    from src.scheduler.store import TemplateStore
    from src.tasks.lifecycle import TaskLifecycle

logger = logging.getLogger(__name__)

SCHEDULED_CREATOR = "scheduled"


class ScheduledTaskRunner:
    """Runs one pass over the enabled templates per tick.

    A template fires when its cron has a matching minute after its
    ``last_run_at`` (or within the last check window if it never ran).
    ``last_run_at`` is advanced to that matched minute only after the task
    was created, so a failed fire is retried on the next tick.

    Args:
        templates: Template persistence.
        lifecycle: Engine used to create the tasks.
        check_interval: Look-back window for templates that never ran
            (default: ``scheduled_check_interval_minutes``).
    """

    def __init__(
        self,
        templates: TemplateStore,
        lifecycle: TaskLifecycle,
        check_interval: timedelta | None = None,
    ) -> None:
        self._templates = templates
        self._lifecycle = lifecycle
        self._window = check_interval or timedelta(
            minutes=settings.scheduled_check_interval_minutes
        )

    async def tick(self, now: datetime | None = None) -> int:
        """Evaluate every enabled template. Returns the number of tasks created.

        Raises:
            StorageUnavailable: the template list could not be loaded.
        """
        now = now or utcnow()
        templates = await self._templates.list_enabled()
        created = 0
        for template in templates:
            try:
                if await self._fire(template, now):
                    created += 1
            except (EmptyTag, InvalidAssignee) as exc:
                logger.warning("Template '%s' (%s) not materialised: %s", template.name, template.id, exc)
            except Exception:
                logger.exception("Template '%s' (%s) failed", template.name, template.id)
        if created:
            logger.info("Scheduled tick created %d task(s)", created)
        return created

    async def _fire(self, template: TaskTemplate, now: datetime) -> bool:
        try:
            matched = cron.due_minute(
                template.schedule, template.timezone, now, template.last_run_at, self._window
            )
        except ValueError as exc:
            logger.warning("Skipping template %s: %s", template.id, exc)
            return False
        if matched is None:
            return False

        logger.info(
            "Template '%s' (%s) due for %s", template.name, template.id, matched.isoformat()
        )
        await self._lifecycle.create_task(self._request_for(template))
        await self._templates.update_last_run(template.id, matched)
        return True

    @staticmethod
    def _request_for(template: TaskTemplate) -> TaskRequest:
        return TaskRequest(
            title=template.title,
            assignee_open_id=template.target_open_id,
            target_tag=template.target_tag,
            creator_id=SCHEDULED_CREATOR,
            reporter_open_id=template.reporter_open_id,
            deadline_days=template.deadline_days,
            note=template.note,
            priority=template.priority,
            reminder_interval_hours=template.reminder_interval_hours,
            estimated_effort=template.estimated_effort,
        )
