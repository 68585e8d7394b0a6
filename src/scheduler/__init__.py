"""Scheduled task system: templates, cron evaluation, reminders and the engine."""

from src.scheduler.engine import SchedulerEngine
from src.scheduler.models import TaskTemplate
from src.scheduler.reminder import ReminderSweep
from src.scheduler.runner import ScheduledTaskRunner
from src.scheduler.store import TemplateStore

__all__ = [
    "ReminderSweep",
    "ScheduledTaskRunner",
    "SchedulerEngine",
    "TaskTemplate",
    "TemplateStore",
]
