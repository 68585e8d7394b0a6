"""AuditLog — append-only record of administrative task actions."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from src.db import get_connection
from src.tasks.models import to_iso, utcnow

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS audit_logs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    action      TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id   TEXT NOT NULL,
    details     TEXT NOT NULL DEFAULT '{}',
    created_at  TEXT NOT NULL
)
"""


class AuditLog:
    """Persists audit entries in SQLite / Turso.

    Writes are best-effort: ``log()`` never raises, so a failed audit write
    cannot undo the action being audited.
    """

    _instance: AuditLog | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> AuditLog:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        cls._instance = None

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True
        return db

    async def log(
        self,
        user_id: str,
        action: str,
        target_type: str,
        target_id: str,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Append an entry. Returns False (and logs) if the write failed."""
        try:
            db = await self._connect()
            try:
                await db.execute(
                    """
                    INSERT INTO audit_logs
                        (user_id, action, target_type, target_id, details, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        action,
                        target_type,
                        target_id,
                        json.dumps(details or {}, ensure_ascii=False, default=str),
                        to_iso(utcnow()),
                    ),
                )
                await db.commit()
            finally:
                await db.close()
        except Exception:
            logger.warning("Audit write failed: %s %s/%s", action, target_type, target_id, exc_info=True)
            return False
        return True

    async def list_entries(
        self, *, limit: int = 50, user_id: str | None = None, action: str | None = None
    ) -> list[dict]:
        """Most recent entries first, optionally filtered."""
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if action:
            clauses.append("action = ?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT user_id, action, target_type, target_id, details, created_at
                FROM audit_logs {where}
                ORDER BY id DESC LIMIT ?
                """,  # noqa: S608
                (*params, limit),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [
            {
                "user_id": r[0],
                "action": r[1],
                "target_type": r[2],
                "target_id": r[3],
                "details": json.loads(r[4]),
                "created_at": r[5],
            }
            for r in rows
        ]
