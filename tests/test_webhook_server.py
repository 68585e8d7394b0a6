"""Tests for the HTTP server — agent API, template admin API and events."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from src.audit import AuditLog
from src.bot.commands import TaskCommands
from src.errors import StorageUnavailable
from src.feishu.client import FeishuAPIError
from src.scheduler.store import TemplateStore
from src.sessions import SessionStore
from src.tasks.lifecycle import TaskLifecycle
from src.tasks.models import TaskRequest
from src.users.store import UserStore
from src.webhooks.server import BACKGROUND, Services, create_web_app

TEST_KEY = "test-key-123"
TEST_TOKEN = "verify-me"


# -- Helpers -------------------------------------------------------------------


class _FakeSettings:
    def __init__(self, api_key: str = TEST_KEY, feishu_verification_token: str = TEST_TOKEN) -> None:
        self.api_key = api_key
        self.feishu_verification_token = feishu_verification_token
        self.webhook_port = 8080


@pytest.fixture
async def services(
    lifecycle: TaskLifecycle,
    template_store: TemplateStore,
    user_store: UserStore,
    session_store: SessionStore,
    router: MagicMock,
    audit: AuditLog,
) -> Services:
    await user_store.upsert("alice", open_id="ou_alice", feishu_user_id="on_alice", name="Alice")
    await user_store.upsert("bob", open_id="ou_bob", feishu_user_id="on_bob", name="Bob", tags=["ops"])
    return Services(
        lifecycle=lifecycle,
        templates=template_store,
        users=user_store,
        commands=TaskCommands(lifecycle, user_store, session_store),
        router=router,
        audit=audit,
    )


@pytest.fixture
async def client(services: Services):
    app = create_web_app(services)
    with patch("src.webhooks.server.settings", _FakeSettings()):
        client = await _make_client(app)
        try:
            yield client
        finally:
            await client.close()


async def _make_client(app: web.Application) -> TestClient:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client


def _auth() -> dict[str, str]:
    return {"X-API-Key": TEST_KEY}


# -- Health and auth -----------------------------------------------------------


async def test_health_check(client: TestClient) -> None:
    resp = await client.get("/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


async def test_api_requires_key(client: TestClient) -> None:
    resp = await client.get("/api/agent/tasks", params={"open_id": "ou_alice"})
    assert resp.status == 401
    resp = await client.get(
        "/api/agent/tasks", params={"open_id": "ou_alice"}, headers={"X-API-Key": "wrong"}
    )
    assert resp.status == 401


async def test_api_open_when_key_unset(services: Services) -> None:
    with patch("src.webhooks.server.settings", _FakeSettings(api_key="")):
        client = await _make_client(create_web_app(services))
        try:
            resp = await client.get("/api/agent/tasks", params={"open_id": "ou_alice"})
            assert resp.status == 200
        finally:
            await client.close()


# -- Agent task API ------------------------------------------------------------


async def test_create_task_direct(client: TestClient, router: MagicMock) -> None:
    resp = await client.post(
        "/api/agent/tasks",
        json={
            "title": "Submit report",
            "target_open_id": "ou_alice",
            "deadline": "2026-03-05T18:00:00+08:00",
            "priority": "p0",
        },
        headers=_auth(),
    )
    assert resp.status == 201
    data = await resp.json()
    assert data["success"] is True
    assert data["task"]["assignee_open_id"] == "ou_alice"
    assert data["task"]["priority"] == "p0"
    assert data["task"]["creator_id"] == "agent"
    router.deliver.assert_awaited_once()


async def test_create_task_by_tag(client: TestClient) -> None:
    resp = await client.post(
        "/api/agent/tasks", json={"title": "Triage", "target_tag": "ops"}, headers=_auth()
    )
    assert resp.status == 201
    task = (await resp.json())["task"]
    assert task["assignee_open_id"] == "ou_bob"
    assert task["target_tag"] == "ops"


async def test_create_task_empty_tag(client: TestClient) -> None:
    resp = await client.post(
        "/api/agent/tasks", json={"title": "Triage", "target_tag": "nobody"}, headers=_auth()
    )
    assert resp.status == 422
    assert "nobody" in (await resp.json())["error"]


@pytest.mark.parametrize(
    "body",
    [
        {"target_open_id": "ou_alice"},
        {"title": "x"},
        {"title": "", "target_open_id": "ou_alice"},
        {"title": "x", "target_open_id": "ou_alice", "deadline": "2026-03-05T18:00:00"},
        {"title": "x", "target_open_id": "ou_alice", "priority": "urgent"},
    ],
)
async def test_create_task_validation(client: TestClient, body: dict) -> None:
    resp = await client.post("/api/agent/tasks", json=body, headers=_auth())
    assert resp.status == 400
    assert "error" in await resp.json()


async def test_create_task_invalid_json(client: TestClient) -> None:
    resp = await client.post("/api/agent/tasks", data="{not json", headers=_auth())
    assert resp.status == 400


async def test_list_tasks(client: TestClient, lifecycle: TaskLifecycle) -> None:
    await lifecycle.create_task(TaskRequest(title="a", assignee_open_id="ou_alice"))
    await lifecycle.create_task(TaskRequest(title="b", assignee_open_id="ou_bob"))

    resp = await client.get("/api/agent/tasks", params={"open_id": "ou_alice"}, headers=_auth())
    assert resp.status == 200
    assert [t["title"] for t in (await resp.json())["tasks"]] == ["a"]


async def test_list_tasks_requires_open_id(client: TestClient) -> None:
    resp = await client.get("/api/agent/tasks", headers=_auth())
    assert resp.status == 400


async def test_complete_task_by_assignee(
    client: TestClient, lifecycle: TaskLifecycle, router: MagicMock
) -> None:
    task = await lifecycle.create_task(
        TaskRequest(title="a", assignee_open_id="ou_alice", reporter_open_id="ou_boss")
    )
    resp = await client.post(
        f"/api/agent/tasks/{task.id}/complete",
        json={"proof": "https://proof", "user_open_id": "ou_alice"},
        headers=_auth(),
    )
    assert resp.status == 200
    data = (await resp.json())["task"]
    assert data["status"] == "completed"
    assert data["proof"] == "https://proof"
    assert router.deliver.await_args.args[0] == "ou_boss"


async def test_complete_task_by_other_user(client: TestClient, lifecycle: TaskLifecycle) -> None:
    task = await lifecycle.create_task(TaskRequest(title="a", assignee_open_id="ou_alice"))
    resp = await client.post(
        f"/api/agent/tasks/{task.id}/complete", json={"user_open_id": "ou_bob"}, headers=_auth()
    )
    assert resp.status == 403
    assert (await resp.json())["error"] == "You can only complete tasks assigned to you"
    assert (await lifecycle.get_task(task.id)).is_pending


async def test_complete_task_twice(client: TestClient, lifecycle: TaskLifecycle) -> None:
    task = await lifecycle.create_task(TaskRequest(title="a", assignee_open_id="ou_alice"))
    url = f"/api/agent/tasks/{task.id}/complete"
    assert (await client.post(url, headers=_auth())).status == 200
    resp = await client.post(url, json={"user_open_id": "ou_alice"}, headers=_auth())
    assert resp.status == 404
    assert (await client.post(url, headers=_auth())).status == 404


async def test_complete_missing_task(client: TestClient) -> None:
    resp = await client.post("/api/agent/tasks/missing/complete", headers=_auth())
    assert resp.status == 404


async def test_storage_failure_maps_to_503(client: TestClient, services: Services) -> None:
    services.lifecycle.get_user_pending_tasks = AsyncMock(side_effect=StorageUnavailable("down"))
    resp = await client.get("/api/agent/tasks", params={"open_id": "ou_alice"}, headers=_auth())
    assert resp.status == 503


# -- Scheduled-task admin API --------------------------------------------------


def _template_body(**overrides) -> dict:
    body = {
        "name": "Daily standup",
        "title": "Post standup notes",
        "schedule": "0 9 * * 1-5",
        "timezone": "Asia/Shanghai",
        "target_tag": "ops",
    }
    body.update(overrides)
    return body


async def test_template_crud(client: TestClient, template_store: TemplateStore) -> None:
    resp = await client.post("/api/scheduled-tasks", json=_template_body(), headers=_auth())
    assert resp.status == 201
    created = (await resp.json())["data"]
    assert created["deadline_days"] == 1
    assert created["enabled"] is True

    resp = await client.get("/api/scheduled-tasks", headers=_auth())
    assert [t["id"] for t in (await resp.json())["data"]] == [created["id"]]

    resp = await client.patch(
        f"/api/scheduled-tasks/{created['id']}",
        json={"enabled": False, "schedule": "30 8 * * *"},
        headers=_auth(),
    )
    assert resp.status == 200
    updated = (await resp.json())["data"]
    assert updated["enabled"] is False
    assert updated["schedule"] == "30 8 * * *"

    resp = await client.delete(f"/api/scheduled-tasks/{created['id']}", headers=_auth())
    assert resp.status == 200
    assert await template_store.get_template(created["id"]) is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"schedule": "every day"},
        {"timezone": "Mars/Olympus"},
        {"target_open_id": "ou_alice"},
        {"target_tag": None},
        {"bogus": 1},
    ],
)
async def test_create_template_validation(client: TestClient, overrides: dict) -> None:
    resp = await client.post("/api/scheduled-tasks", json=_template_body(**overrides), headers=_auth())
    assert resp.status == 400


async def test_update_template_switches_target(client: TestClient) -> None:
    resp = await client.post("/api/scheduled-tasks", json=_template_body(), headers=_auth())
    template_id = (await resp.json())["data"]["id"]

    resp = await client.patch(
        f"/api/scheduled-tasks/{template_id}",
        json={"target_tag": None, "target_open_id": "ou_alice"},
        headers=_auth(),
    )
    assert resp.status == 200
    data = (await resp.json())["data"]
    assert data["target_open_id"] == "ou_alice"
    assert data["target_tag"] is None


@pytest.mark.parametrize(
    "body",
    [
        {"schedule": "61 * * * *"},
        {"target_open_id": "ou_alice"},
        {"last_run_at": "2026-01-01T00:00:00Z"},
    ],
)
async def test_update_template_validation(client: TestClient, body: dict) -> None:
    resp = await client.post("/api/scheduled-tasks", json=_template_body(), headers=_auth())
    template_id = (await resp.json())["data"]["id"]
    resp = await client.patch(f"/api/scheduled-tasks/{template_id}", json=body, headers=_auth())
    assert resp.status == 400


async def test_update_null_required_field_is_ignored(client: TestClient) -> None:
    resp = await client.post("/api/scheduled-tasks", json=_template_body(), headers=_auth())
    template_id = (await resp.json())["data"]["id"]
    resp = await client.patch(
        f"/api/scheduled-tasks/{template_id}", json={"name": None}, headers=_auth()
    )
    assert resp.status == 200
    assert (await resp.json())["data"]["name"] == "Daily standup"


async def test_missing_template(client: TestClient) -> None:
    resp = await client.patch("/api/scheduled-tasks/missing", json={"enabled": False}, headers=_auth())
    assert resp.status == 404
    resp = await client.delete("/api/scheduled-tasks/missing", headers=_auth())
    assert resp.status == 404


# -- Admin API -----------------------------------------------------------------


async def test_list_users(client: TestClient) -> None:
    resp = await client.get("/api/users", headers=_auth())
    assert resp.status == 200
    data = (await resp.json())["data"]
    assert [u["user_id"] for u in data] == ["alice", "bob"]
    assert "task_view" in data[0]["features"]
    assert "template_manage" not in data[0]["features"]


async def test_tagging_a_user_makes_them_assignable(client: TestClient) -> None:
    resp = await client.post(
        "/api/agent/tasks", json={"title": "Close books", "target_tag": "finance"}, headers=_auth()
    )
    assert resp.status == 422

    resp = await client.patch(
        "/api/users/alice", json={"tags": ["finance", "ops"], "role": "admin"}, headers=_auth()
    )
    assert resp.status == 200
    user = (await resp.json())["data"]
    assert user["tags"] == ["finance", "ops"]
    assert user["role"] == "admin"
    assert user["name"] == "Alice"

    resp = await client.post(
        "/api/agent/tasks", json={"title": "Close books", "target_tag": "finance"}, headers=_auth()
    )
    assert resp.status == 201
    assert (await resp.json())["task"]["assignee_open_id"] == "ou_alice"


async def test_update_user_errors(client: TestClient) -> None:
    resp = await client.patch("/api/users/nobody", json={"tags": ["ops"]}, headers=_auth())
    assert resp.status == 404
    resp = await client.patch("/api/users/alice", json={"role": "owner"}, headers=_auth())
    assert resp.status == 400
    resp = await client.patch("/api/users/alice", json={"colour": "red"}, headers=_auth())
    assert resp.status == 400


async def test_feature_override_set_and_cleared(client: TestClient, user_store: UserStore) -> None:
    resp = await client.patch(
        "/api/users/alice/features/task_create", json={"enabled": True}, headers=_auth()
    )
    assert resp.status == 200
    data = (await resp.json())["data"]
    assert data["overrides"] == {"task_create": True}
    assert "task_create" in data["features"]

    resp = await client.patch(
        "/api/users/alice/features/task_view", json={"enabled": False}, headers=_auth()
    )
    assert "task_view" not in (await resp.json())["data"]["features"]

    resp = await client.patch(
        "/api/users/alice/features/task_create", json={"enabled": None}, headers=_auth()
    )
    assert resp.status == 200
    assert (await user_store.get_user("alice")).overrides == {"task_view": False}


async def test_feature_override_errors(client: TestClient) -> None:
    resp = await client.patch(
        "/api/users/alice/features/teleport", json={"enabled": True}, headers=_auth()
    )
    assert resp.status == 404
    resp = await client.patch(
        "/api/users/nobody/features/task_create", json={"enabled": True}, headers=_auth()
    )
    assert resp.status == 404
    resp = await client.patch(
        "/api/users/alice/features/user_manage", json={"enabled": True}, headers=_auth()
    )
    assert resp.status == 400
    resp = await client.patch("/api/users/alice/features/task_create", json={}, headers=_auth())
    assert resp.status == 400


async def test_list_and_delete_tasks(client: TestClient, lifecycle: TaskLifecycle) -> None:
    task = await lifecycle.create_task(TaskRequest(title="Old report", assignee_open_id="ou_alice"))
    await lifecycle.create_task(TaskRequest(title="New report", assignee_open_id="ou_bob"))

    resp = await client.get("/api/tasks", params={"limit": "5"}, headers=_auth())
    assert resp.status == 200
    assert {t["title"] for t in (await resp.json())["data"]} == {"Old report", "New report"}

    resp = await client.delete(f"/api/tasks/{task.id}", params={"actor": "admin"}, headers=_auth())
    assert resp.status == 200
    assert await lifecycle.get_task(task.id) is None

    resp = await client.delete(f"/api/tasks/{task.id}", headers=_auth())
    assert resp.status == 404


@pytest.mark.parametrize("limit", ["abc", "0", "10000"])
async def test_list_tasks_bad_limit(client: TestClient, limit: str) -> None:
    resp = await client.get("/api/tasks", params={"limit": limit}, headers=_auth())
    assert resp.status == 400


async def test_audit_entries(client: TestClient, lifecycle: TaskLifecycle) -> None:
    task = await lifecycle.create_task(TaskRequest(title="Audit me", assignee_open_id="ou_alice"))
    await client.delete(f"/api/tasks/{task.id}", params={"actor": "admin"}, headers=_auth())

    resp = await client.get("/api/audit", headers=_auth())
    assert resp.status == 200
    assert [e["action"] for e in (await resp.json())["data"]] == ["delete_task", "create_task"]

    resp = await client.get(
        "/api/audit", params={"action": "delete_task", "user_id": "admin"}, headers=_auth()
    )
    [entry] = (await resp.json())["data"]
    assert entry["target_id"] == task.id


async def test_audit_disabled(services: Services) -> None:
    services.audit = None
    with patch("src.webhooks.server.settings", _FakeSettings()):
        client = await _make_client(create_web_app(services))
        try:
            resp = await client.get("/api/audit", headers=_auth())
            assert resp.status == 404
        finally:
            await client.close()



# -- Feishu events -------------------------------------------------------------


def _message_event(text: str, open_id: str = "ou_alice", token: str = TEST_TOKEN) -> dict:
    return {
        "schema": "2.0",
        "header": {"event_type": "im.message.receive_v1", "token": token},
        "event": {
            "sender": {"sender_id": {"open_id": open_id, "user_id": "on_" + open_id[3:]}},
            "message": {
                "chat_id": "oc_1",
                "message_type": "text",
                "content": json.dumps({"text": text}),
            },
        },
    }


async def _drain(client: TestClient) -> None:
    for job in list(client.server.app[BACKGROUND]):
        await job
    await asyncio.sleep(0)


async def test_url_verification(client: TestClient) -> None:
    resp = await client.post(
        "/webhook/event",
        json={"type": "url_verification", "challenge": "abc", "token": TEST_TOKEN},
    )
    assert resp.status == 200
    assert await resp.json() == {"challenge": "abc"}


async def test_event_bad_token(client: TestClient) -> None:
    resp = await client.post("/webhook/event", json=_message_event("tasks", token="wrong"))
    assert resp.status == 401


async def test_message_event_replies(
    client: TestClient, lifecycle: TaskLifecycle, router: MagicMock
) -> None:
    await lifecycle.create_task(TaskRequest(title="Write report", assignee_open_id="ou_alice"))
    resp = await client.post("/webhook/event", json=_message_event("tasks"))
    assert resp.status == 200
    await _drain(client)

    recipient, reply = router.send.await_args.args
    assert recipient == "ou_alice"
    assert "Write report" in reply


async def test_message_from_new_user_registers(
    client: TestClient, user_store: UserStore, router: MagicMock
) -> None:
    await client.post("/webhook/event", json=_message_event("hello", open_id="ou_carol"))
    await _drain(client)

    user = await user_store.get_by_open_id("ou_carol")
    assert user is not None
    assert user.feishu_user_id == "on_carol"
    router.send.assert_not_awaited()


async def test_non_text_message_is_acknowledged(client: TestClient, router: MagicMock) -> None:
    event = _message_event("tasks")
    event["event"]["message"]["message_type"] = "image"
    resp = await client.post("/webhook/event", json=event)
    assert resp.status == 200
    await _drain(client)
    router.send.assert_not_awaited()


async def test_new_user_profile_from_feishu(services: Services, user_store: UserStore) -> None:
    services.feishu = MagicMock()
    services.feishu.get_user_info = AsyncMock(
        return_value={"name": "Carol", "email": "carol@example.com"}
    )
    with patch("src.webhooks.server.settings", _FakeSettings()):
        client = await _make_client(create_web_app(services))
        try:
            await client.post("/webhook/event", json=_message_event("hello", open_id="ou_carol"))
            await _drain(client)
        finally:
            await client.close()

    services.feishu.get_user_info.assert_awaited_once_with("ou_carol")
    user = await user_store.get_by_open_id("ou_carol")
    assert user.name == "Carol"
    assert user.email == "carol@example.com"


async def test_profile_lookup_failure_still_registers(
    services: Services, user_store: UserStore
) -> None:
    services.feishu = MagicMock()
    services.feishu.get_user_info = AsyncMock(side_effect=FeishuAPIError(99991672, "no scope"))
    with patch("src.webhooks.server.settings", _FakeSettings()):
        client = await _make_client(create_web_app(services))
        try:
            await client.post("/webhook/event", json=_message_event("hello", open_id="ou_carol"))
            await _drain(client)
        finally:
            await client.close()

    user = await user_store.get_by_open_id("ou_carol")
    assert user is not None
    assert user.name is None
