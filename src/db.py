"""libsql access for the stores, made awaitable with ``asyncio.to_thread()``.

The target is chosen per call:

- an explicit *local_path_override* (tests) wins;
- otherwise ``TURSO_DATABASE_URL`` / ``TURSO_AUTH_TOKEN`` select a remote
  Turso database;
- otherwise the local SQLite file at ``database_path`` is used.

Writers to the same target are serialised in-process: a connection takes the
target's write lock at its first non-SELECT statement and holds it until
``commit()`` or ``close()``. A "database is locked" error from another
process is retried with backoff. Any other driver failure, at open time or
inside a statement, is reported as :class:`StorageUnavailable`.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from pathlib import Path
from typing import Any

import libsql

from src.config import settings
from src.errors import StorageUnavailable

logger = logging.getLogger(__name__)

# Local files only; Turso manages its own journal.
_LOCAL_PRAGMAS = ("PRAGMA journal_mode=WAL", "PRAGMA busy_timeout=5000")

_LOCKED_RETRIES = 5
_LOCKED_BACKOFF = 0.05

# event loop -> target -> write lock
_write_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


def _write_lock(target: str) -> asyncio.Lock:
    locks = _write_locks.setdefault(asyncio.get_running_loop(), {})
    if target not in locks:
        locks[target] = asyncio.Lock()
    return locks[target]


def _is_locked(exc: Exception) -> bool:
    text = str(exc).lower()
    return "database is locked" in text or "database is busy" in text


def _is_read(sql: str) -> bool:
    words = sql.split(None, 1)
    return not words or words[0].upper() == "SELECT"


async def _call(target: str, fn: Any, *args: Any) -> Any:
    """Run a blocking driver call, retrying lock contention."""
    attempt = 0
    while True:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as exc:
            attempt += 1
            if not _is_locked(exc) or attempt >= _LOCKED_RETRIES:
                logger.exception("Database call failed on %s", target)
                msg = "Database unavailable"
                raise StorageUnavailable(msg) from exc
        delay = _LOCKED_BACKOFF * 2 ** (attempt - 1)
        logger.debug("Database %s locked, retrying in %.2fs", target, delay)
        await asyncio.sleep(delay)


class AsyncCursor:
    """Result of :meth:`AsyncConnection.execute`."""

    def __init__(self, raw: Any, target: str) -> None:
        self._raw = raw
        self._target = target

    @property
    def rowcount(self) -> int:
        return self._raw.rowcount

    async def fetchone(self) -> tuple | None:
        return await _call(self._target, self._raw.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await _call(self._target, self._raw.fetchall)


class AsyncConnection:
    """One libsql connection; every blocking call runs in a worker thread."""

    def __init__(self, raw: Any, target: str) -> None:
        self._raw = raw
        self._target = target
        self._lock = _write_lock(target)
        self._writing = False

    async def execute(self, sql: str, params: tuple = ()) -> AsyncCursor:
        if not self._writing and not _is_read(sql):
            await self._lock.acquire()
            self._writing = True
        try:
            raw = await _call(self._target, self._raw.execute, sql, params)
        except BaseException:
            await self._rollback()
            raise
        return AsyncCursor(raw, self._target)

    async def commit(self) -> None:
        try:
            await _call(self._target, self._raw.commit)
        finally:
            self._release()

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self._raw.close)
        finally:
            self._release()

    async def _rollback(self) -> None:
        if not self._writing:
            return
        try:
            await asyncio.to_thread(self._raw.rollback)
        except Exception:
            logger.warning("Rollback failed on %s", self._target, exc_info=True)
        finally:
            self._release()

    def _release(self) -> None:
        if self._writing:
            self._writing = False
            self._lock.release()


def _connect_local(path: Path) -> Any:
    path.parent.mkdir(parents=True, exist_ok=True)
    raw = libsql.connect(str(path))
    for pragma in _LOCAL_PRAGMAS:
        raw.execute(pragma)
    return raw


def _target(local_path_override: Path | None) -> str:
    if local_path_override is not None:
        return str(local_path_override)
    return settings.turso_database_url or str(settings.database_path)


def _connect(local_path_override: Path | None) -> Any:
    if local_path_override is not None:
        return _connect_local(local_path_override)
    if settings.turso_database_url:
        return libsql.connect(
            database=settings.turso_database_url, auth_token=settings.turso_auth_token
        )
    return _connect_local(Path(settings.database_path))


async def get_connection(local_path_override: Path | None = None) -> AsyncConnection:
    """Open a connection to the configured database.

    Callers own the connection and must ``close()`` it.

    Raises:
        StorageUnavailable: the database could not be opened.
    """
    target = _target(local_path_override)
    raw = await _call(target, _connect, local_path_override)
    return AsyncConnection(raw, target)
