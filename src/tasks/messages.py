"""Notification texts for task events."""

from __future__ import annotations

from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from src.tasks.models import Task


def format_deadline(deadline: datetime | None, timezone: str) -> str:
    if deadline is None:
        return "no deadline"
    return deadline.astimezone(ZoneInfo(timezone)).strftime("%Y-%m-%d %H:%M")


def task_created(task: Task, timezone: str) -> str:
    lines = [
        "📋 New task assigned to you",
        f"Title: {task.title}",
        f"Deadline: {format_deadline(task.deadline, timezone)}",
        f"Priority: {task.priority}",
    ]
    if task.note:
        lines.append(f"Note: {task.note}")
    lines.append('Reply "complete" when it is done.')
    return "\n".join(lines)


def task_completed(task: Task, completer_name: str | None) -> str:
    who = completer_name or task.assignee_name or task.assignee_id or "assignee"
    lines = [f"✅ Task completed: {task.title}", f"Completed by: {who}"]
    if task.proof:
        lines.append(f"Proof: {task.proof}")
    return "\n".join(lines)


def task_reminder(task: Task, timezone: str) -> str:
    return (
        f"⏰ Reminder: {task.title}\n"
        f"Deadline: {format_deadline(task.deadline, timezone)}\n"
        'Reply "complete" when it is done.'
    )


def task_overdue(task: Task, timezone: str) -> str:
    return (
        f"🔴 Overdue: {task.title}\n"
        f"The deadline ({format_deadline(task.deadline, timezone)}) has passed."
    )


def task_overdue_reporter(task: Task, timezone: str) -> str:
    who = task.assignee_name or task.assignee_open_id or task.assignee_id
    return (
        f"🔴 Task overdue: {task.title}\n"
        f"Assignee: {who}\n"
        f"Deadline: {format_deadline(task.deadline, timezone)}"
    )


def pending_list(tasks: Sequence[Task], timezone: str) -> str:
    """Numbered list used by the chat commands for selection."""
    if not tasks:
        return "You have no pending tasks. 🎉"
    lines = [f"You have {len(tasks)} pending task(s):"]
    for i, task in enumerate(tasks, 1):
        lines.append(f"{i}. {task.title} (due {format_deadline(task.deadline, timezone)})")
    return "\n".join(lines)
