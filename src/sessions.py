"""SessionStore — short-lived conversation state for multi-step chat flows.

Sessions are rows keyed by the sender's id with an opaque JSON payload and an
expiry. ``scoped()`` is the normal way in: it loads the session, hands out a
mutable handle, and on exit either refreshes the expiry or deletes the row.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from src.config import settings
from src.db import get_connection
from src.tasks.models import to_iso, utcnow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS user_sessions (
    session_key TEXT PRIMARY KEY,
    data        TEXT NOT NULL DEFAULT '{}',
    expires_at  TEXT NOT NULL
)
"""


@dataclass
class Session:
    """Mutable handle yielded by ``SessionStore.scoped``."""

    key: str
    data: dict[str, Any] = field(default_factory=dict)
    cleared: bool = False

    def clear(self) -> None:
        self.data = {}
        self.cleared = True


class SessionStore:
    """Persists sessions in SQLite / Turso with a sliding TTL."""

    _instance: SessionStore | None = None

    def __init__(self, db_path: Path | None = None, ttl_seconds: int | None = None) -> None:
        self._db_path = db_path
        self._ttl = timedelta(seconds=ttl_seconds or settings.session_ttl_seconds)
        self._initialised = False

    @classmethod
    def get(cls) -> SessionStore:
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

    async def get_session(self, key: str) -> dict[str, Any] | None:
        """Return the payload, or None if missing or expired."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT data FROM user_sessions WHERE session_key = ? AND expires_at > ?",
                (key, to_iso(utcnow())),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        return json.loads(row[0]) if row else None

    async def set_session(self, key: str, data: dict[str, Any]) -> None:
        """Write the payload and push the expiry one TTL into the future."""
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO user_sessions (session_key, data, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT (session_key) DO UPDATE
                    SET data = excluded.data, expires_at = excluded.expires_at
                """,
                (key, json.dumps(data, ensure_ascii=False), to_iso(utcnow() + self._ttl)),
            )
            await db.commit()
        finally:
            await db.close()

    async def delete_session(self, key: str) -> None:
        db = await self._connect()
        try:
            await db.execute("DELETE FROM user_sessions WHERE session_key = ?", (key,))
            await db.commit()
        finally:
            await db.close()

    async def cleanup(self) -> int:
        """Remove expired sessions. Returns the number deleted."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "DELETE FROM user_sessions WHERE expires_at <= ?", (to_iso(utcnow()),)
            )
            await db.commit()
            deleted = cursor.rowcount
        finally:
            await db.close()
        if deleted:
            logger.debug("Session cleanup removed %d row(s)", deleted)
        return deleted

    @asynccontextmanager
    async def scoped(self, key: str) -> AsyncIterator[Session]:
        """Load, mutate and write back a session.

        On a clean exit the payload is saved with a fresh expiry, or deleted
        if it was cleared or left empty. If the body raises, the session is
        deleted before the exception propagates.
        """
        session = Session(key=key, data=await self.get_session(key) or {})
        try:
            yield session
        except BaseException:
            await self.delete_session(key)
            raise
        if session.cleared or not session.data:
            await self.delete_session(key)
        else:
            await self.set_session(key, session.data)
