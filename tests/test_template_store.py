"""Tests for TemplateStore and the TaskTemplate model."""

from datetime import UTC, datetime

import pytest

from src.scheduler.models import TaskTemplate
from src.scheduler.store import TemplateStore
from src.tasks.models import Priority


def _template(name: str = "Daily standup", **kwargs) -> TaskTemplate:
    defaults = {
        "title": "Post standup notes",
        "schedule": "0 9 * * 1-5",
        "timezone": "Asia/Shanghai",
        "target_open_id": "ou_alice",
        "created_at": datetime(2026, 1, 1, tzinfo=UTC),
    }
    defaults.update(kwargs)
    return TaskTemplate(name=name, **defaults)


# -- Model ---------------------------------------------------------------------


def test_defaults() -> None:
    t = _template()
    assert t.id
    assert t.deadline_days == 1
    assert t.priority == Priority.P1
    assert t.reminder_interval_hours == 24
    assert t.enabled is True


def test_requires_exactly_one_target() -> None:
    with pytest.raises(ValueError, match="Exactly one"):
        _template(target_open_id=None)
    with pytest.raises(ValueError, match="Exactly one"):
        _template(target_tag="ops")
    assert _template(target_open_id=None, target_tag="ops").target_tag == "ops"


# -- CRUD ----------------------------------------------------------------------


async def test_add_and_get(template_store: TemplateStore) -> None:
    t = await template_store.add(_template(note="bring coffee", estimated_effort=0.5))
    fetched = await template_store.get_template(t.id)
    assert fetched.name == "Daily standup"
    assert fetched.note == "bring coffee"
    assert fetched.estimated_effort == 0.5
    assert fetched.last_run_at is None


async def test_get_missing(template_store: TemplateStore) -> None:
    assert await template_store.get_template("missing") is None


async def test_list_enabled(template_store: TemplateStore) -> None:
    on = await template_store.add(_template("on"))
    await template_store.add(_template("off", enabled=False))
    assert [t.id for t in await template_store.list_enabled()] == [on.id]
    assert len(await template_store.list_templates()) == 2


async def test_update_fields(template_store: TemplateStore) -> None:
    t = await template_store.add(_template())
    updated = await template_store.update(t.id, schedule="30 8 * * *", priority="p0", enabled=False)
    assert updated.schedule == "30 8 * * *"
    assert updated.priority == Priority.P0
    assert updated.enabled is False
    assert (await template_store.get_template(t.id)).schedule == "30 8 * * *"


async def test_update_switch_target(template_store: TemplateStore) -> None:
    t = await template_store.add(_template())
    updated = await template_store.update(t.id, target_open_id=None, target_tag="ops")
    assert updated.target_tag == "ops"
    assert updated.target_open_id is None


async def test_update_rejects_two_targets(template_store: TemplateStore) -> None:
    t = await template_store.add(_template())
    with pytest.raises(ValueError):
        await template_store.update(t.id, target_tag="ops")


async def test_update_rejects_unknown_field(template_store: TemplateStore) -> None:
    t = await template_store.add(_template())
    with pytest.raises(ValueError, match="last_run_at"):
        await template_store.update(t.id, last_run_at=None)


async def test_update_missing(template_store: TemplateStore) -> None:
    assert await template_store.update("missing", name="x") is None


async def test_update_last_run(template_store: TemplateStore) -> None:
    t = await template_store.add(_template())
    fired = datetime(2026, 3, 2, 1, 0, tzinfo=UTC)
    await template_store.update_last_run(t.id, fired)
    assert (await template_store.get_template(t.id)).last_run_at == fired


async def test_delete(template_store: TemplateStore) -> None:
    t = await template_store.add(_template())
    assert await template_store.delete(t.id) is True
    assert await template_store.delete(t.id) is False
