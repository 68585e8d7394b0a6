"""TaskTemplate data model — recurring generators of tasks."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from src.tasks.models import Priority, from_iso, to_iso, utcnow

TEMPLATE_COLUMNS = (
    "id",
    "name",
    "title",
    "target_open_id",
    "target_tag",
    "reporter_open_id",
    "schedule",
    "timezone",
    "deadline_days",
    "priority",
    "note",
    "reminder_interval_hours",
    "estimated_effort",
    "enabled",
    "created_by",
    "created_at",
    "last_run_at",
)


@dataclass
class TaskTemplate:
    """A recurring rule that materialises a task on a cron schedule.

    Attributes:
        id: Unique identifier (UUID hex).
        name: Human-readable name of the rule.
        title: Title given to each generated task.
        target_open_id: Fixed assignee (delivery id). Exclusive with *target_tag*.
        target_tag: Tag pool for workload-based assignment.
        reporter_open_id: Notified when a generated task completes.
        schedule: 5-field cron expression, e.g. ``"0 8 * * 1-5"``.
        timezone: IANA timezone the schedule is evaluated in.
        deadline_days: Deadline offset from the creation instant.
        priority: Priority stamped on generated tasks.
        note: Note stamped on generated tasks.
        reminder_interval_hours: Repeat-reminder interval for generated tasks.
        estimated_effort: Effort weight for generated tasks (None → 1).
        enabled: Disabled templates never materialise.
        created_by: Who created the template.
        created_at: Creation instant.
        last_run_at: The scheduled minute most recently materialised.
    """

    name: str
    title: str
    schedule: str
    timezone: str
    target_open_id: str | None = None
    target_tag: str | None = None
    reporter_open_id: str | None = None
    deadline_days: float = 1
    priority: Priority = Priority.P1
    note: str | None = None
    reminder_interval_hours: float = 24
    estimated_effort: float | None = None
    enabled: bool = True
    created_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_run_at: datetime | None = None
    id: str = ""

    def __post_init__(self) -> None:
        self.target_open_id = self.target_open_id or None
        self.target_tag = self.target_tag or None
        if bool(self.target_open_id) == bool(self.target_tag):
            msg = "Exactly one of target_open_id or target_tag must be set"
            raise ValueError(msg)
        if not self.id:
            self.id = make_template_id()

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching ``TEMPLATE_COLUMNS``."""
        return (
            self.id,
            self.name,
            self.title,
            self.target_open_id,
            self.target_tag,
            self.reporter_open_id,
            self.schedule,
            self.timezone,
            float(self.deadline_days),
            str(self.priority),
            self.note,
            float(self.reminder_interval_hours),
            self.estimated_effort,
            int(self.enabled),
            self.created_by,
            to_iso(self.created_at),
            to_iso(self.last_run_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskTemplate:
        return cls(
            id=row[0],
            name=row[1],
            title=row[2],
            target_open_id=row[3],
            target_tag=row[4],
            reporter_open_id=row[5],
            schedule=row[6],
            timezone=row[7],
            deadline_days=float(row[8]),
            priority=Priority(row[9]),
            note=row[10],
            reminder_interval_hours=float(row[11]),
            estimated_effort=float(row[12]) if row[12] is not None else None,
            enabled=bool(row[13]),
            created_by=row[14],
            created_at=from_iso(row[15]),
            last_run_at=from_iso(row[16]),
        )

    def to_dict(self) -> dict:
        data = dict(zip(TEMPLATE_COLUMNS, self.to_row(), strict=True))
        data["enabled"] = self.enabled
        return data


def make_template_id() -> str:
    """Generate a new template ID."""
    return uuid.uuid4().hex
