"""Tests for SessionStore — TTL, cleanup and scoped updates."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from src.sessions import SessionStore
from src.tasks.models import utcnow


async def test_get_missing(session_store: SessionStore) -> None:
    assert await session_store.get_session("nobody") is None


async def test_set_and_get(session_store: SessionStore) -> None:
    await session_store.set_session("ou_alice", {"step": "complete_select", "task_ids": ["a", "b"]})
    assert await session_store.get_session("ou_alice") == {"step": "complete_select", "task_ids": ["a", "b"]}


async def test_set_overwrites(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    await session_store.set_session("k", {"n": 2})
    assert await session_store.get_session("k") == {"n": 2}


async def test_expired_session_is_invisible_and_cleaned(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    later = utcnow() + timedelta(seconds=301)
    with patch("src.sessions.utcnow", return_value=later):
        assert await session_store.get_session("k") is None
        assert await session_store.cleanup() == 1
    assert await session_store.get_session("k") is None


async def test_cleanup_keeps_live_sessions(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    assert await session_store.cleanup() == 0
    assert await session_store.get_session("k") == {"n": 1}


async def test_delete(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    await session_store.delete_session("k")
    assert await session_store.get_session("k") is None


# -- scoped --------------------------------------------------------------------


async def test_scoped_saves_changes(session_store: SessionStore) -> None:
    async with session_store.scoped("k") as session:
        assert session.data == {}
        session.data["step"] = "complete_select"
    assert await session_store.get_session("k") == {"step": "complete_select"}


async def test_scoped_refreshes_expiry(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    with patch("src.sessions.utcnow", return_value=utcnow() + timedelta(seconds=200)):
        async with session_store.scoped("k") as session:
            assert session.data == {"n": 1}
    # 400s after the original write, but only 200s after the refresh.
    with patch("src.sessions.utcnow", return_value=utcnow() + timedelta(seconds=400)):
        assert await session_store.get_session("k") == {"n": 1}


async def test_scoped_clear_deletes(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    async with session_store.scoped("k") as session:
        session.clear()
    assert await session_store.get_session("k") is None


async def test_scoped_empty_payload_is_not_stored(session_store: SessionStore) -> None:
    async with session_store.scoped("k"):
        pass
    assert await session_store.get_session("k") is None


async def test_scoped_error_deletes_and_propagates(session_store: SessionStore) -> None:
    await session_store.set_session("k", {"n": 1})
    with pytest.raises(RuntimeError, match="boom"):
        async with session_store.scoped("k") as session:
            session.data["n"] = 2
            raise RuntimeError("boom")
    assert await session_store.get_session("k") is None


def test_singleton() -> None:
    SessionStore._reset()
    try:
        assert SessionStore.get() is SessionStore.get()
    finally:
        SessionStore._reset()
