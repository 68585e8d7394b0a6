"""TaskStore — libsql persistence for tasks.

Every state-changing method is a single ``UPDATE ... WHERE`` statement that
carries its own precondition, so a completion racing a reminder sweep can
never leave a task half-updated.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.db import get_connection
from src.tasks.models import TASK_COLUMNS, Task, make_task_id, to_iso, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS tasks (
    id                      TEXT PRIMARY KEY,
    title                   TEXT NOT NULL,
    assignee_id             TEXT,
    assignee_open_id        TEXT,
    assignee_name           TEXT,
    creator_id              TEXT,
    reporter_open_id        TEXT,
    deadline                TEXT,
    status                  TEXT NOT NULL DEFAULT 'pending',
    reminder_interval_hours REAL NOT NULL DEFAULT 0,
    last_reminded_at        TEXT,
    deadline_notified_at    TEXT,
    proof                   TEXT,
    note                    TEXT,
    priority                TEXT NOT NULL DEFAULT 'p1',
    estimated_effort        REAL,
    target_tag              TEXT,
    created_at              TEXT NOT NULL,
    completed_at            TEXT
)
"""

_CREATE_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_tasks_status_deadline ON tasks (status, deadline)"
)

_SELECT = f"SELECT {', '.join(TASK_COLUMNS)} FROM tasks"  # noqa: S608

class TaskStore:
    """Persists tasks in SQLite / Turso.

    Singleton accessed via ``TaskStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: TaskStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> TaskStore:
        """Return the shared TaskStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.execute(_CREATE_INDEX)
            await db.commit()
            self._initialised = True
        return db

    async def _fetch_all(self, sql: str, params: tuple = ()) -> list[Task]:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [Task.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Queries ---------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        """Fetch a task by ID, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(f"{_SELECT} WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
            return Task.from_row(row) if row else None
        finally:
            await db.close()

    async def _pending_for(self, identities: Iterable[str | None], order_by: str) -> list[Task]:
        ids = sorted({i for i in identities if i})
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        sql = (
            f"{_SELECT} WHERE status = 'pending'"
            f" AND (assignee_id IN ({marks}) OR assignee_open_id IN ({marks}))"
            f" ORDER BY {order_by}"
        )
        return await self._fetch_all(sql, (*ids, *ids))

    async def list_pending_for(self, identities: Iterable[str | None]) -> list[Task]:
        """Pending tasks whose assignee matches any of *identities*.

        Either identity column may hold a given id, depending on how the
        assignee was provisioned, so both are checked.
        """
        return await self._pending_for(identities, "deadline ASC NULLS LAST, created_at ASC")

    async def list_pending_in_insert_order(self, identities: Iterable[str | None]) -> list[Task]:
        """Same selection as :meth:`list_pending_for`, oldest insert first."""
        return await self._pending_for(identities, "rowid ASC")

    async def find_pending_by_assignee(
        self, internal_id: str | None, delivery_id: str | None
    ) -> list[Task]:
        """Pending tasks addressable by either identity form."""
        return await self.list_pending_for((internal_id, delivery_id))

    async def list_pending(self) -> list[Task]:
        """Return every pending task, soonest deadline first."""
        return await self._fetch_all(
            f"{_SELECT} WHERE status = 'pending'"
            " ORDER BY deadline ASC NULLS LAST, created_at ASC"
        )

    async def list_tasks(self, limit: int = 100) -> list[Task]:
        """Return the most recently created tasks (admin view)."""
        return await self._fetch_all(
            f"{_SELECT} ORDER BY created_at DESC LIMIT ?", (limit,)
        )

    # -- Mutations -------------------------------------------------------------

    async def insert(self, task: Task) -> Task:
        """Insert a new task, assigning its id. Returns the same object."""
        if not task.id:
            task.id = make_task_id()
        marks = ", ".join("?" for _ in TASK_COLUMNS)
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) VALUES ({marks})",  # noqa: S608
                task.to_row(),
            )
            await db.commit()
            logger.info("Inserted task: %s (%s)", task.title, task.id)
            return task
        finally:
            await db.close()

    async def complete(
        self, task_id: str, proof: str | None, now: datetime | None = None
    ) -> Task | None:
        """Transition pending → completed.

        Returns the completed task, or None when the task is missing or was
        not pending (a concurrent completion loses here).
        """
        completed_at = to_iso(now or utcnow())
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE tasks
                SET status = 'completed', proof = ?, completed_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (proof, completed_at, task_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None
        finally:
            await db.close()
        return await self.get_task(task_id)

    async def mark_deadline_notified(self, task_id: str, now: datetime) -> bool:
        """Claim the one-time overdue alert. True only for the first caller."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE tasks SET deadline_notified_at = ?
                WHERE id = ? AND status = 'pending' AND deadline_notified_at IS NULL
                """,
                (to_iso(now), task_id),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def mark_reminded(
        self, task_id: str, previous: datetime | None, now: datetime
    ) -> bool:
        """Advance last_reminded_at from *previous* to *now*.

        Compare-and-set: fails when the task is no longer pending or another
        sweep already moved the timestamp.
        """
        if previous is not None and now < previous:
            return False
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE tasks SET last_reminded_at = ?
                WHERE id = ? AND status = 'pending' AND last_reminded_at IS ?
                """,
                (to_iso(now), task_id, to_iso(previous)),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def delete(self, task_id: str) -> Task | None:
        """Delete a task. Returns the removed task, or None if missing."""
        task = await self.get_task(task_id)
        if task is None:
            return None
        db = await self._connect()
        try:
            await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            await db.commit()
            logger.info("Deleted task: %s", task_id)
            return task
        finally:
            await db.close()
