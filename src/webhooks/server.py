"""HTTP surface: agent task API, admin API (templates, users, tasks, audit) and Feishu events.

Runs in the same asyncio event loop as the scheduler, using aiohttp's
AppRunner/TCPSite for non-blocking start/stop. ``/api/*`` routes require the
``X-API-Key`` header when ``API_KEY`` is set.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from aiohttp import web
from pydantic import BaseModel, ValidationError

from src.bot.commands import IncomingMessage, TaskCommands
from src.config import settings
from src.errors import EmptyTag, InvalidAssignee, NotFoundOrCompleted, StorageUnavailable
from src.feishu.client import FeishuAPIError, FeishuClient
from src.permissions import ADMIN_ROLES, FEATURES, validate_overrides
from src.scheduler import cron
from src.tasks.models import TaskRequest
from src.webhooks.schemas import (
    CompleteTaskBody,
    CreateTaskBody,
    FeatureOverrideBody,
    TemplateBody,
    TemplateUpdateBody,
    UserUpdateBody,
)

if TYPE_CHECKING:
    from src.audit import AuditLog
    from src.notifications.router import NotificationRouter
    from src.scheduler.store import TemplateStore
    from src.tasks.lifecycle import TaskLifecycle
    from src.users.store import UserStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Template columns that may be cleared with an explicit null.
_NULLABLE_TEMPLATE_FIELDS = frozenset({
    "target_open_id",
    "target_tag",
    "reporter_open_id",
    "note",
    "estimated_effort",
})


@dataclass
class Services:
    """Collaborators the handlers need."""

    lifecycle: TaskLifecycle
    templates: TemplateStore
    users: UserStore
    commands: TaskCommands
    router: NotificationRouter
    audit: AuditLog | None = None
    feishu: FeishuClient | None = None


SERVICES = web.AppKey("services", Services)
BACKGROUND = web.AppKey("background", set)


class BadRequest(Exception):  # noqa: N818
    """Body was not JSON or did not validate."""


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    if not request.body_exists:
        return {}
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


async def _parse(request: web.Request, model: type[M]) -> M:
    payload = await _read_json(request)
    if payload is None:
        msg = "invalid JSON"
        raise BadRequest(msg)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or 'body'}: {e['msg']}" for e in exc.errors()
        )
        raise BadRequest(errors) from exc


@web.middleware
async def _api_guard(request: web.Request, handler):
    """Check the API key on /api/* and map request and storage errors."""
    if request.path.startswith("/api/") and settings.api_key:
        if request.headers.get("X-API-Key", "") != settings.api_key:
            logger.warning("API request rejected: bad key (%s %s)", request.method, request.path)
            return _error("unauthorized", 401)
    try:
        return await handler(request)
    except BadRequest as exc:
        return _error(str(exc), 400)
    except StorageUnavailable:
        logger.exception("Storage unavailable handling %s %s", request.method, request.path)
        return _error("storage unavailable", 503)


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    return web.json_response({"status": "ok"})


# -- Agent task API ------------------------------------------------------------


async def _list_tasks(request: web.Request) -> web.Response:
    """GET /api/agent/tasks?open_id=... — a user's pending tasks."""
    services = request.app[SERVICES]
    open_id = request.query.get("open_id", "")
    if not open_id:
        return _error("open_id is required", 400)
    user = await services.users.get_by_open_id(open_id)
    tasks = await services.lifecycle.get_user_pending_tasks(
        user.feishu_user_id if user else None, open_id
    )
    return web.json_response({"success": True, "tasks": [t.to_dict() for t in tasks]})


async def _create_task(request: web.Request) -> web.Response:
    """POST /api/agent/tasks — create for ``target_open_id`` or ``target_tag``."""
    body = await _parse(request, CreateTaskBody)
    task_request = TaskRequest(
        title=body.title,
        assignee_open_id=body.target_open_id,
        target_tag=body.target_tag,
        creator_id=body.creator_id or "agent",
        reporter_open_id=body.reporter_open_id,
        deadline=body.deadline,
        deadline_days=body.deadline_days,
        note=body.note,
        priority=body.priority,
        reminder_interval_hours=body.reminder_interval_hours,
        estimated_effort=body.estimated_effort,
    )
    try:
        task = await request.app[SERVICES].lifecycle.create_task(task_request)
    except EmptyTag as exc:
        return _error(str(exc), 422)
    except InvalidAssignee as exc:
        return _error(str(exc), 404)
    return web.json_response({"success": True, "task": task.to_dict()}, status=201)


async def _complete_task(request: web.Request) -> web.Response:
    """POST /api/agent/tasks/{id}/complete — only the assignee may complete.

    Missing and already-completed tasks get the same 404.
    """
    services = request.app[SERVICES]
    task_id = request.match_info["id"]
    body = await _parse(request, CompleteTaskBody)

    completer_id, completer_name = "agent", None
    if body.user_open_id:
        user = await services.users.get_by_open_id(body.user_open_id)
        completer_name = user.display_name if user else None
        completer_id = (user.feishu_user_id if user else None) or body.user_open_id

        task = await services.lifecycle.get_task(task_id)
        if task is None or not task.is_pending:
            return _error(str(NotFoundOrCompleted(task_id)), 404)
        owners = {task.assignee_open_id, task.assignee_id} - {None}
        if body.user_open_id not in owners and completer_id not in owners:
            logger.warning("Rejected completion of task %s by %s", task_id, body.user_open_id)
            return _error("You can only complete tasks assigned to you", 403)

    try:
        task = await services.lifecycle.complete_task(
            task_id, body.proof, completer_id, completer_name
        )
    except NotFoundOrCompleted as exc:
        return _error(str(exc), 404)
    return web.json_response({"success": True, "task": task.to_dict()})


# -- Scheduled-task admin API --------------------------------------------------


async def _list_templates(request: web.Request) -> web.Response:
    templates = await request.app[SERVICES].templates.list_templates()
    return web.json_response({"success": True, "data": [t.to_dict() for t in templates]})


async def _create_template(request: web.Request) -> web.Response:
    """POST /api/scheduled-tasks"""
    body = await _parse(request, TemplateBody)
    template = await request.app[SERVICES].templates.add(body.to_template())
    logger.info("Template created: %s (%s)", template.name, template.id)
    return web.json_response({"success": True, "data": template.to_dict()}, status=201)


async def _update_template(request: web.Request) -> web.Response:
    """PATCH /api/scheduled-tasks/{id}"""
    templates = request.app[SERVICES].templates
    template_id = request.match_info["id"]
    body = await _parse(request, TemplateUpdateBody)
    fields = {
        k: v
        for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in _NULLABLE_TEMPLATE_FIELDS
    }

    current = await templates.get_template(template_id)
    if current is None:
        return _error("not found", 404)
    try:
        cron.build_trigger(
            fields.get("schedule") or current.schedule,
            fields.get("timezone") or current.timezone,
        )
        template = await templates.update(template_id, **fields)
    except ValueError as exc:
        return _error(str(exc), 400)
    if template is None:
        return _error("not found", 404)
    return web.json_response({"success": True, "data": template.to_dict()})


async def _delete_template(request: web.Request) -> web.Response:
    """DELETE /api/scheduled-tasks/{id}"""
    if not await request.app[SERVICES].templates.delete(request.match_info["id"]):
        return _error("not found", 404)
    return web.json_response({"success": True})


# -- Admin API -----------------------------------------------------------------

_MAX_LIMIT = 500


def _limit(request: web.Request, default: int) -> int:
    raw = request.query.get("limit", "")
    if not raw:
        return default
    try:
        limit = int(raw)
    except ValueError:
        limit = 0
    if not 1 <= limit <= _MAX_LIMIT:
        msg = f"limit must be an integer between 1 and {_MAX_LIMIT}"
        raise BadRequest(msg)
    return limit


async def _list_users(request: web.Request) -> web.Response:
    """GET /api/users?role=..."""
    users = await request.app[SERVICES].users.list_users(request.query.get("role") or None)
    return web.json_response({"success": True, "data": [u.to_dict() for u in users]})


async def _update_user(request: web.Request) -> web.Response:
    """PATCH /api/users/{id} — name, email, role and tags."""
    users = request.app[SERVICES].users
    user_id = request.match_info["id"]
    body = await _parse(request, UserUpdateBody)
    if await users.get_user(user_id) is None:
        return _error("not found", 404)
    fields = body.model_dump(exclude_none=True)
    user = await users.upsert(user_id, **fields)
    logger.info("User %s updated: %s", user_id, ", ".join(sorted(fields)) or "no changes")
    return web.json_response({"success": True, "data": user.to_dict()})


async def _set_feature(request: web.Request) -> web.Response:
    """PATCH /api/users/{id}/features/{feature} — set or clear one override."""
    users = request.app[SERVICES].users
    user_id = request.match_info["id"]
    feature = FEATURES.get(request.match_info["feature"])
    if feature is None:
        return _error(f"unknown feature: {request.match_info['feature']}", 404)
    body = await _parse(request, FeatureOverrideBody)

    user = await users.get_user(user_id)
    if user is None:
        return _error("not found", 404)
    if body.enabled and feature.admin_only and user.role not in ADMIN_ROLES:
        return _error(f"{feature.id} is only available to admins", 400)

    overrides = dict(user.overrides)
    if body.enabled is None:
        overrides.pop(feature.id, None)
    else:
        overrides[feature.id] = body.enabled
    user = await users.set_overrides(user_id, validate_overrides(overrides))
    if user is None:
        return _error("not found", 404)
    logger.info("User %s feature %s set to %s", user_id, feature.id, body.enabled)
    return web.json_response({"success": True, "data": user.to_dict()})


async def _list_all_tasks(request: web.Request) -> web.Response:
    """GET /api/tasks?limit=N — most recent tasks in any status."""
    tasks = await request.app[SERVICES].lifecycle.list_tasks(_limit(request, 100))
    return web.json_response({"success": True, "data": [t.to_dict() for t in tasks]})


async def _delete_task(request: web.Request) -> web.Response:
    """DELETE /api/tasks/{id}?actor=..."""
    try:
        await request.app[SERVICES].lifecycle.delete_task(
            request.match_info["id"], request.query.get("actor") or None
        )
    except NotFoundOrCompleted:
        return _error("not found", 404)
    return web.json_response({"success": True})


async def _list_audit(request: web.Request) -> web.Response:
    """GET /api/audit?limit=&user_id=&action="""
    audit = request.app[SERVICES].audit
    if audit is None:
        return _error("audit log disabled", 404)
    entries = await audit.list_entries(
        limit=_limit(request, 50),
        user_id=request.query.get("user_id") or None,
        action=request.query.get("action") or None,
    )
    return web.json_response({"success": True, "data": entries})


# -- Feishu event webhook ------------------------------------------------------


async def _handle_event(request: web.Request) -> web.Response:
    """POST /webhook/event — URL verification and inbound chat messages."""
    payload = await _read_json(request)
    if payload is None:
        return _error("invalid JSON", 400)

    token = payload.get("token") or payload.get("header", {}).get("token", "")
    if settings.feishu_verification_token and token != settings.feishu_verification_token:
        logger.warning("Event rejected: bad verification token")
        return _error("unauthorized", 401)

    if payload.get("type") == "url_verification":
        return web.json_response({"challenge": payload.get("challenge", "")})

    event_type = payload.get("header", {}).get("event_type", "")
    if event_type != "im.message.receive_v1":
        return web.json_response({"ok": True})

    msg = _parse_message(payload.get("event", {}))
    if msg is None:
        return web.json_response({"ok": True})

    # Feishu expects an acknowledgement within a few seconds.
    background = request.app[BACKGROUND]
    job = asyncio.create_task(_run_message(request.app[SERVICES], msg))
    background.add(job)
    job.add_done_callback(background.discard)
    return web.json_response({"ok": True})


def _parse_message(event: dict[str, Any]) -> IncomingMessage | None:
    message = event.get("message", {})
    if message.get("message_type") != "text":
        return None
    try:
        text = json.loads(message.get("content") or "{}").get("text", "")
    except json.JSONDecodeError:
        return None
    sender = event.get("sender", {}).get("sender_id", {})
    if not text or not (sender.get("open_id") or sender.get("user_id")):
        return None
    return IncomingMessage(
        text=text,
        open_id=sender.get("open_id"),
        user_id=sender.get("user_id"),
        chat_id=message.get("chat_id"),
    )


async def _lookup_profile(services: Services, open_id: str) -> dict[str, Any]:
    """Name and email from the Feishu contact API, or {} when unavailable."""
    if services.feishu is None:
        return {}
    try:
        return await services.feishu.get_user_info(open_id) or {}
    except (FeishuAPIError, httpx.HTTPError) as exc:
        logger.warning("Could not fetch Feishu profile for %s: %s", open_id, exc)
        return {}


async def _run_message(services: Services, msg: IncomingMessage) -> None:
    """Register the sender if new, run the command and DM the reply."""
    try:
        if msg.open_id and await services.users.get_by_open_id(msg.open_id) is None:
            profile = await _lookup_profile(services, msg.open_id)
            await services.users.upsert(
                msg.user_id or msg.open_id,
                open_id=msg.open_id,
                feishu_user_id=msg.user_id,
                name=profile.get("name"),
                email=profile.get("email") or profile.get("enterprise_email"),
            )
            logger.info("Registered new user from message: %s", msg.open_id)
        reply = await services.commands.handle(msg)
        if reply:
            await services.router.send(msg.open_id or msg.user_id, reply)
    except Exception:
        logger.exception("Message handling failed for %s", msg.session_key)


def create_web_app(services: Services) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[_api_guard])
    app[SERVICES] = services
    app[BACKGROUND] = set()
    app.router.add_get("/health", _health)
    app.router.add_get("/api/agent/tasks", _list_tasks)
    app.router.add_post("/api/agent/tasks", _create_task)
    app.router.add_post("/api/agent/tasks/{id}/complete", _complete_task)
    app.router.add_get("/api/scheduled-tasks", _list_templates)
    app.router.add_post("/api/scheduled-tasks", _create_template)
    app.router.add_patch("/api/scheduled-tasks/{id}", _update_template)
    app.router.add_delete("/api/scheduled-tasks/{id}", _delete_template)
    app.router.add_get("/api/users", _list_users)
    app.router.add_patch("/api/users/{id}", _update_user)
    app.router.add_patch("/api/users/{id}/features/{feature}", _set_feature)
    app.router.add_get("/api/tasks", _list_all_tasks)
    app.router.add_delete("/api/tasks/{id}", _delete_task)
    app.router.add_get("/api/audit", _list_audit)
    app.router.add_post("/webhook/event", _handle_event)
    return app


class WebhookServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(self, services: Services, port: int | None = None) -> None:
        self.port = port or settings.webhook_port
        self._services = services
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening for API calls and Feishu events."""
        if not settings.api_key:
            logger.warning("API_KEY empty — /api routes are unauthenticated")
        app = create_web_app(self._services)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)  # noqa: S104
        await site.start()
        logger.info("HTTP server listening on port %d", self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP server stopped")
