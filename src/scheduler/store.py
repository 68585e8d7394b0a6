"""TemplateStore — libsql CRUD for scheduled-task templates."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from src.db import get_connection
from src.scheduler.models import TEMPLATE_COLUMNS, TaskTemplate
from src.tasks.models import Priority, to_iso

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id                      TEXT PRIMARY KEY,
    name                    TEXT NOT NULL,
    title                   TEXT NOT NULL,
    target_open_id          TEXT,
    target_tag              TEXT,
    reporter_open_id        TEXT,
    schedule                TEXT NOT NULL,
    timezone                TEXT NOT NULL,
    deadline_days           REAL NOT NULL DEFAULT 1,
    priority                TEXT NOT NULL DEFAULT 'p1',
    note                    TEXT,
    reminder_interval_hours REAL NOT NULL DEFAULT 24,
    estimated_effort        REAL,
    enabled                 INTEGER NOT NULL DEFAULT 1,
    created_by              TEXT,
    created_at              TEXT NOT NULL,
    last_run_at             TEXT
)
"""

_SELECT = f"SELECT {', '.join(TEMPLATE_COLUMNS)} FROM scheduled_tasks"  # noqa: S608

_UPDATABLE = frozenset(TEMPLATE_COLUMNS) - {"id", "created_at", "created_by", "last_run_at"}


class TemplateStore:
    """Persists scheduled-task templates in SQLite / Turso.

    Singleton accessed via ``TemplateStore.get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: TemplateStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> TemplateStore:
        """Return the shared TemplateStore instance."""
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
            await db.commit()
            self._initialised = True
        return db

    # -- CRUD ------------------------------------------------------------------

    async def add(self, template: TaskTemplate) -> TaskTemplate:
        """Insert a new template. Returns the same object."""
        marks = ", ".join("?" for _ in TEMPLATE_COLUMNS)
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO scheduled_tasks ({', '.join(TEMPLATE_COLUMNS)}) VALUES ({marks})",  # noqa: S608
                template.to_row(),
            )
            await db.commit()
            logger.info("Added template: %s (%s)", template.name, template.id)
            return template
        finally:
            await db.close()

    async def get_template(self, template_id: str) -> TaskTemplate | None:
        """Fetch a template by ID, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(f"{_SELECT} WHERE id = ?", (template_id,))
            row = await cursor.fetchone()
            return TaskTemplate.from_row(row) if row else None
        finally:
            await db.close()

    async def list_templates(self) -> list[TaskTemplate]:
        """Return all templates, newest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(f"{_SELECT} ORDER BY created_at DESC")
            rows = await cursor.fetchall()
            return [TaskTemplate.from_row(row) for row in rows]
        finally:
            await db.close()

    async def list_enabled(self) -> list[TaskTemplate]:
        """Return enabled templates in creation order."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"{_SELECT} WHERE enabled = 1 ORDER BY created_at"
            )
            rows = await cursor.fetchall()
            return [TaskTemplate.from_row(row) for row in rows]
        finally:
            await db.close()

    async def update(self, template_id: str, **fields) -> TaskTemplate | None:
        """Apply a partial update. Returns the updated template, or None if missing.

        Raises:
            ValueError: unknown fields, or the update would leave both or
                neither target set.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            msg = f"Cannot update template fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        current = await self.get_template(template_id)
        if current is None:
            return None
        if "priority" in fields:
            fields["priority"] = Priority(fields["priority"])
        # replace() re-runs the exactly-one-target check.
        merged = replace(current, **fields)

        row = dict(zip(TEMPLATE_COLUMNS, current.to_row(), strict=True))
        new_row = dict(zip(TEMPLATE_COLUMNS, merged.to_row(), strict=True))
        changed = [c for c in fields if new_row[c] != row[c]]
        if not changed:
            return merged

        assignments = ", ".join(f"{c} = ?" for c in changed)
        db = await self._connect()
        try:
            await db.execute(
                f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?",  # noqa: S608
                (*(new_row[c] for c in changed), template_id),
            )
            await db.commit()
            logger.info("Updated template %s: %s", template_id, ", ".join(changed))
            return merged
        finally:
            await db.close()

    async def delete(self, template_id: str) -> bool:
        """Delete a template. Returns True if a row was removed."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "DELETE FROM scheduled_tasks WHERE id = ?", (template_id,)
            )
            await db.commit()
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("Deleted template: %s", template_id)
            return deleted
        finally:
            await db.close()

    async def update_last_run(self, template_id: str, fired_at: datetime) -> None:
        """Record the scheduled minute most recently materialised."""
        db = await self._connect()
        try:
            await db.execute(
                "UPDATE scheduled_tasks SET last_run_at = ? WHERE id = ?",
                (to_iso(fired_at), template_id),
            )
            await db.commit()
        finally:
            await db.close()
