"""Shared test fixtures."""

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.audit import AuditLog
from src.notifications.router import NotificationRouter
from src.scheduler.store import TemplateStore
from src.sessions import SessionStore
from src.tasks.lifecycle import TaskLifecycle
from src.tasks.store import TaskStore
from src.tasks.workload import WorkloadResolver
from src.users.store import UserStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("src.config.settings.turso_database_url", "")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def task_store(db_path: Path, _no_turso: None) -> TaskStore:
    return TaskStore(db_path=db_path)


@pytest.fixture
def user_store(db_path: Path, _no_turso: None) -> UserStore:
    return UserStore(db_path=db_path)


@pytest.fixture
def template_store(db_path: Path, _no_turso: None) -> TemplateStore:
    return TemplateStore(db_path=db_path)


@pytest.fixture
def session_store(db_path: Path, _no_turso: None) -> SessionStore:
    return SessionStore(db_path=db_path, ttl_seconds=300)


@pytest.fixture
def audit(db_path: Path, _no_turso: None) -> AuditLog:
    return AuditLog(db_path=db_path)


@pytest.fixture
def router() -> MagicMock:
    """A NotificationRouter stand-in whose deliveries always succeed."""
    mock = MagicMock(spec=NotificationRouter)
    mock.send = AsyncMock(return_value=True)
    mock.deliver = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def lifecycle(
    task_store: TaskStore, user_store: UserStore, router: MagicMock, audit: AuditLog
) -> TaskLifecycle:
    return TaskLifecycle(
        task_store,
        user_store,
        WorkloadResolver(user_store, task_store),
        router,
        audit,
        default_deadline_days=3,
        default_reminder_interval_hours=24,
        timezone="Asia/Shanghai",
        clock=lambda: NOW,
    )
