"""Task data model."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum


class TaskStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


class Priority(StrEnum):
    P0 = "p0"
    P1 = "p1"
    P2 = "p2"


# Column order shared by to_row(), from_row() and the tasks DDL.
TASK_COLUMNS = (
    "id",
    "title",
    "assignee_id",
    "assignee_open_id",
    "assignee_name",
    "creator_id",
    "reporter_open_id",
    "deadline",
    "status",
    "reminder_interval_hours",
    "last_reminded_at",
    "deadline_notified_at",
    "proof",
    "note",
    "priority",
    "estimated_effort",
    "target_tag",
    "created_at",
    "completed_at",
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize an aware datetime as a UTC ISO 8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class Task:
    """A unit of work assigned to exactly one person.

    Attributes:
        id: Opaque identifier (UUID hex), assigned by the store on insert.
        title: Short description of the work.
        assignee_id: Stable internal id of the assignee (Feishu ``user_id``).
        assignee_open_id: Delivery id used to message the assignee
            (Feishu ``open_id``).
        assignee_name: Display name captured at creation time.
        creator_id: Who created the task (``"scheduled"`` for templates).
        reporter_open_id: Delivery id notified when the task completes.
        deadline: When the task is due.
        status: ``pending`` until completed; ``completed`` is terminal.
        reminder_interval_hours: Hours between repeat reminders; 0 disables.
        last_reminded_at: When the last repeat reminder went out.
        deadline_notified_at: When the one-time overdue alert went out.
        proof: Free text supplied on completion.
        note: Free text shown to the assignee.
        priority: Informational ``p0``/``p1``/``p2``.
        estimated_effort: Effort weight for workload balancing (None → 1).
        target_tag: Tag used for auto-assignment, kept for audit.
        created_at: Creation instant.
        completed_at: Completion instant; set iff status is completed.
    """

    title: str
    assignee_id: str | None = None
    assignee_open_id: str | None = None
    assignee_name: str | None = None
    creator_id: str | None = None
    reporter_open_id: str | None = None
    deadline: datetime | None = None
    status: TaskStatus = TaskStatus.PENDING
    reminder_interval_hours: float = 0
    last_reminded_at: datetime | None = None
    deadline_notified_at: datetime | None = None
    proof: str | None = None
    note: str | None = None
    priority: Priority = Priority.P1
    estimated_effort: float | None = None
    target_tag: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    id: str = ""

    # -- Convenience properties ------------------------------------------------

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING

    @property
    def reminder_interval(self) -> timedelta:
        return timedelta(hours=self.reminder_interval_hours or 0)

    @property
    def weight(self) -> float:
        """Workload weight; tasks without an estimate count as 1."""
        return self.estimated_effort if self.estimated_effort is not None else 1.0

    @property
    def delivery_id(self) -> str | None:
        """The id the notifier needs to reach the assignee."""
        return self.assignee_open_id or self.assignee_id

    def is_overdue(self, now: datetime) -> bool:
        return self.deadline is not None and self.deadline <= now

    def reminder_due(self, now: datetime) -> bool:
        """True when a repeat reminder should go out at *now*."""
        if self.reminder_interval_hours <= 0:
            return False
        if self.last_reminded_at is None:
            return True
        return now - self.last_reminded_at >= self.reminder_interval

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching ``TASK_COLUMNS``."""
        return (
            self.id,
            self.title,
            self.assignee_id,
            self.assignee_open_id,
            self.assignee_name,
            self.creator_id,
            self.reporter_open_id,
            to_iso(self.deadline),
            str(self.status),
            float(self.reminder_interval_hours),
            to_iso(self.last_reminded_at),
            to_iso(self.deadline_notified_at),
            self.proof,
            self.note,
            str(self.priority),
            self.estimated_effort,
            self.target_tag,
            to_iso(self.created_at),
            to_iso(self.completed_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> Task:
        """Deserialize from a row selected in ``TASK_COLUMNS`` order."""
        return cls(
            id=row[0],
            title=row[1],
            assignee_id=row[2],
            assignee_open_id=row[3],
            assignee_name=row[4],
            creator_id=row[5],
            reporter_open_id=row[6],
            deadline=from_iso(row[7]),
            status=TaskStatus(row[8]),
            reminder_interval_hours=float(row[9] or 0),
            last_reminded_at=from_iso(row[10]),
            deadline_notified_at=from_iso(row[11]),
            proof=row[12],
            note=row[13],
            priority=Priority(row[14]),
            estimated_effort=float(row[15]) if row[15] is not None else None,
            target_tag=row[16],
            created_at=from_iso(row[17]),
            completed_at=from_iso(row[18]),
        )

    def to_dict(self) -> dict:
        """JSON-friendly representation for API responses."""
        return dict(zip(TASK_COLUMNS, self.to_row(), strict=True))


@dataclass
class TaskRequest:
    """Input to ``TaskLifecycle.create_task``.

    Exactly one of ``assignee_open_id``/``assignee_id`` (direct) or
    ``target_tag`` (auto-assign) should be set; a tag wins if both are.
    """

    title: str
    assignee_open_id: str | None = None
    assignee_id: str | None = None
    target_tag: str | None = None
    creator_id: str | None = None
    reporter_open_id: str | None = None
    deadline: datetime | None = None
    deadline_days: float | None = None
    note: str | None = None
    priority: Priority = Priority.P1
    reminder_interval_hours: float | None = None
    estimated_effort: float | None = None


def make_task_id() -> str:
    """Generate a new task ID."""
    return uuid.uuid4().hex
