"""UserStore — identity directory (internal id, Feishu ids, tags, role)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.permissions import effective
from src.db import get_connection
from src.tasks.models import to_iso, utcnow

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

VALID_ROLES = ("superadmin", "admin", "user")

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    user_id        TEXT PRIMARY KEY,
    open_id        TEXT UNIQUE,
    feishu_user_id TEXT,
    name           TEXT,
    email          TEXT,
    role           TEXT NOT NULL DEFAULT 'user',
    tags           TEXT NOT NULL DEFAULT '[]',
    overrides      TEXT NOT NULL DEFAULT '{}',
    created_at     TEXT NOT NULL
)
"""

_COLUMNS = "user_id, open_id, feishu_user_id, name, email, role, tags, overrides, created_at"


@dataclass
class User:
    """A person known to the bot.

    ``open_id`` is the delivery id for messages; ``feishu_user_id`` is the
    internal id carried on inbound events.
    """

    user_id: str
    open_id: str | None = None
    feishu_user_id: str | None = None
    name: str | None = None
    email: str | None = None
    role: str = "user"
    tags: list[str] = field(default_factory=list)
    overrides: dict[str, bool] = field(default_factory=dict)
    created_at: str = ""

    @property
    def identity(self) -> str:
        """Stable sort/display key for workload ordering."""
        return self.open_id or self.feishu_user_id or self.user_id

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.identity

    @classmethod
    def from_row(cls, row: tuple) -> User:
        return cls(
            user_id=row[0],
            open_id=row[1],
            feishu_user_id=row[2],
            name=row[3],
            email=row[4],
            role=row[5],
            tags=json.loads(row[6] or "[]"),
            overrides=json.loads(row[7] or "{}"),
            created_at=row[8],
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "open_id": self.open_id,
            "feishu_user_id": self.feishu_user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "tags": list(self.tags),
            "overrides": dict(self.overrides),
            "features": sorted(effective(self.role, self.overrides)),
        }


def _normalise_tags(tags: list[str]) -> list[str]:
    return sorted({t.strip() for t in tags if t and t.strip()})


class UserStore:
    """Persists users in SQLite / Turso.

    Singleton accessed via ``UserStore.get()``.  Pass an explicit *db_path*
    for test isolation.
    """

    _instance: UserStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> UserStore:
        """Return the shared UserStore instance."""
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

    async def _fetch_one(self, where: str, params: tuple) -> User | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM users WHERE {where} LIMIT 1", params  # noqa: S608
            )
            row = await cursor.fetchone()
            return User.from_row(row) if row else None
        finally:
            await db.close()

    # -- CRUD ------------------------------------------------------------------

    async def upsert(
        self,
        user_id: str,
        *,
        open_id: str | None = None,
        feishu_user_id: str | None = None,
        name: str | None = None,
        email: str | None = None,
        role: str | None = None,
        tags: list[str] | None = None,
    ) -> User:
        """Insert or update a user. Only provided fields overwrite stored ones."""
        if role is not None and role not in VALID_ROLES:
            msg = f"Invalid role: {role}. Must be one of: {', '.join(VALID_ROLES)}"
            raise ValueError(msg)

        existing = await self.get_user(user_id)
        if existing is None:
            user = User(
                user_id=user_id,
                open_id=open_id,
                feishu_user_id=feishu_user_id,
                name=name,
                email=email,
                role=role or "user",
                tags=_normalise_tags(tags or []),
                created_at=to_iso(utcnow()),
            )
        else:
            user = existing
            user.open_id = open_id or user.open_id
            user.feishu_user_id = feishu_user_id or user.feishu_user_id
            user.name = name or user.name
            user.email = email or user.email
            user.role = role or user.role
            if tags is not None:
                user.tags = _normalise_tags(tags)

        db = await self._connect()
        try:
            await db.execute(
                f"INSERT OR REPLACE INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",  # noqa: S608
                (
                    user.user_id,
                    user.open_id,
                    user.feishu_user_id,
                    user.name,
                    user.email,
                    user.role,
                    json.dumps(user.tags),
                    json.dumps(user.overrides),
                    user.created_at,
                ),
            )
            await db.commit()
        finally:
            await db.close()
        return user

    async def get_user(self, user_id: str) -> User | None:
        return await self._fetch_one("user_id = ?", (user_id,))

    async def get_by_open_id(self, open_id: str | None) -> User | None:
        """Find by Feishu open_id (ou_xxx)."""
        if not open_id:
            return None
        return await self._fetch_one("open_id = ?", (open_id,))

    async def get_by_feishu_user_id(self, feishu_user_id: str | None) -> User | None:
        """Find by Feishu user_id (on_xxx)."""
        if not feishu_user_id:
            return None
        return await self._fetch_one("feishu_user_id = ?", (feishu_user_id,))

    async def get_by_email(self, email: str | None) -> User | None:
        if not email:
            return None
        return await self._fetch_one("lower(email) = lower(?)", (email,))

    async def find_by_tag(self, tag: str) -> list[User]:
        """All users carrying *tag*, ordered by identity."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_COLUMNS} FROM users
                WHERE EXISTS (
                    SELECT 1 FROM json_each(users.tags) WHERE json_each.value = ?
                )
                """,  # noqa: S608
                (tag,),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return sorted((User.from_row(r) for r in rows), key=lambda u: u.identity)

    async def set_overrides(self, user_id: str, overrides: dict[str, bool]) -> User | None:
        """Replace a user's per-feature permission overrides."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "UPDATE users SET overrides = ? WHERE user_id = ?",
                (json.dumps(overrides), user_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None
        finally:
            await db.close()
        return await self.get_user(user_id)

    async def list_users(self, role: str | None = None) -> list[User]:
        db = await self._connect()
        try:
            if role:
                cursor = await db.execute(
                    f"SELECT {_COLUMNS} FROM users WHERE role = ? ORDER BY created_at",  # noqa: S608
                    (role,),
                )
            else:
                cursor = await db.execute(
                    f"SELECT {_COLUMNS} FROM users ORDER BY created_at"  # noqa: S608
                )
            rows = await cursor.fetchall()
            return [User.from_row(r) for r in rows]
        finally:
            await db.close()
