"""Chat commands for viewing, completing and creating tasks.

``TaskCommands.handle`` takes one inbound text message and returns the reply
text, or None when the message is not a task command. Sending the reply is
left to the caller (the event webhook).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src import permissions
from src.errors import InvalidAssignee, NotFoundOrCompleted
from src.tasks import messages
from src.tasks.models import TaskRequest

if TYPE_CHECKING:
    from src.sessions import SessionStore
    from src.tasks.lifecycle import TaskLifecycle
    from src.tasks.models import Task
    from src.users.store import User, UserStore

logger = logging.getLogger(__name__)

COMPLETE_SELECT = "complete_select"

_VIEW_COMMANDS = frozenset({"tasks", "/tasks", "my tasks", "任务", "我的任务", "查看任务", "待办"})
_COMPLETE_FORWARD = re.compile(r"^(?:完成|done|/done|complete|/complete)(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)
_COMPLETE_REVERSE = re.compile(
    r"^(.+?)\s+(?:任务完成|完成了|已完成|is done)(\s+https?://\S+)?$", re.IGNORECASE | re.DOTALL
)
_ADD_COMMAND = re.compile(r"^/add\s+(.+)$", re.IGNORECASE | re.DOTALL)
_URL = re.compile(r"https?://\S+")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

ADD_USAGE = (
    "📝 Usage: /add <title> <assignee email or id> [YYYY-MM-DD]\n"
    "Example: /add Submit weekly report alice@example.com 2026-03-01"
)


@dataclass
class IncomingMessage:
    """A text message from a chat user, as carried on the event webhook."""

    text: str
    open_id: str | None = None
    user_id: str | None = None
    chat_id: str | None = None

    @property
    def session_key(self) -> str | None:
        return self.open_id or self.user_id


class TaskCommands:
    """Parses chat text into task operations.

    Args:
        lifecycle: Task operations.
        users: Directory used to identify the sender and resolve assignees.
        sessions: Session store for the numeric selection follow-up.
    """

    def __init__(self, lifecycle: TaskLifecycle, users: UserStore, sessions: SessionStore) -> None:
        self._lifecycle = lifecycle
        self._users = users
        self._sessions = sessions

    async def handle(self, msg: IncomingMessage) -> str | None:
        text = msg.text.strip()
        if not text or not msg.session_key:
            return None

        user = await self._users.get_by_open_id(msg.open_id)
        if user is None:
            user = await self._users.get_by_feishu_user_id(msg.user_id)
        granted = permissions.effective(user.role if user else "user", user.overrides if user else None)

        if text.isdigit():
            reply = await self._handle_selection(msg, user, int(text))
            if reply is not None:
                return reply

        if text.lower() in _VIEW_COMMANDS:
            if "task_view" not in granted:
                return "🚫 You don't have permission to view tasks."
            return await self._view(msg, user)

        arg = _complete_argument(text)
        if arg is not None:
            if "task_complete" not in granted:
                return "🚫 You don't have permission to complete tasks."
            return await self._complete(msg, user, arg)

        match = _ADD_COMMAND.match(text)
        if match:
            if "task_create" not in granted:
                return "🚫 You don't have permission to create tasks."
            return await self._add(msg, match.group(1))

        return None

    # -- View ------------------------------------------------------------------

    async def _pending(self, msg: IncomingMessage, user: User | None) -> list[Task]:
        internal_id = (user.feishu_user_id if user else None) or msg.user_id
        return await self._lifecycle.get_user_pending_tasks(internal_id, msg.open_id)

    async def _view(self, msg: IncomingMessage, user: User | None) -> str:
        tasks = await self._pending(msg, user)
        reply = messages.pending_list(tasks, self._lifecycle.timezone)
        if tasks:
            reply += '\n\nSend "done N" to complete task N.'
        return reply

    # -- Complete --------------------------------------------------------------

    async def _complete(self, msg: IncomingMessage, user: User | None, arg: str) -> str:
        proof_match = _URL.search(arg)
        proof = proof_match.group(0) if proof_match else ""
        query = _URL.sub("", arg).strip()

        tasks = await self._pending(msg, user)
        if not tasks:
            return "✅ You have no pending tasks."

        target = _select_task(tasks, query)
        if target is not None:
            return await self._finish(msg, user, target.id, target.title, proof)

        async with self._sessions.scoped(msg.session_key) as session:
            session.data = {
                "step": COMPLETE_SELECT,
                "tasks": [{"id": t.id, "title": t.title} for t in tasks],
                "proof": proof,
            }
        lines = [f"You have {len(tasks)} pending tasks, reply with a number:"]
        lines += [f"{i}. {t.title}" for i, t in enumerate(tasks, 1)]
        return "\n".join(lines)

    async def _handle_selection(self, msg: IncomingMessage, user: User | None, number: int) -> str | None:
        async with self._sessions.scoped(msg.session_key) as session:
            if session.data.get("step") != COMPLETE_SELECT:
                return None
            choices = session.data.get("tasks", [])
            if not 1 <= number <= len(choices):
                return f"❌ Please reply with a number between 1 and {len(choices)}."
            choice = choices[number - 1]
            proof = session.data.get("proof", "")
            session.clear()
        return await self._finish(msg, user, choice["id"], choice["title"], proof)

    async def _finish(
        self, msg: IncomingMessage, user: User | None, task_id: str, title: str, proof: str
    ) -> str:
        try:
            await self._lifecycle.complete_task(
                task_id,
                proof,
                completer_id=(user.feishu_user_id if user else None) or msg.user_id or msg.open_id,
                completer_name=user.display_name if user else None,
            )
        except NotFoundOrCompleted:
            return f"⚠️ Task \"{title}\" was not found or is already completed."
        reply = f"✅ Completed \"{title}\"!"
        if proof:
            reply += f"\n📎 Proof: {proof}"
        return reply

    # -- Create ----------------------------------------------------------------

    async def _add(self, msg: IncomingMessage, args: str) -> str:
        parts = args.split()
        deadline = None
        if len(parts) >= 3 and _DATE.match(parts[-1]):
            try:
                deadline = _end_of_day(parts.pop(), self._lifecycle.timezone)
            except ValueError:
                return ADD_USAGE
        if len(parts) < 2:
            return ADD_USAGE
        target, title = parts[-1], " ".join(parts[:-1])

        assignee = (
            await self._users.get_by_email(target)
            or await self._users.get_by_feishu_user_id(target)
            or await self._users.get_by_open_id(target)
            or await self._users.get_user(target)
        )
        if assignee is None or not assignee.open_id:
            return f"❌ Unknown user \"{target}\". They need to message the bot once to register."

        try:
            task = await self._lifecycle.create_task(
                TaskRequest(
                    title=title,
                    assignee_open_id=assignee.open_id,
                    creator_id=msg.user_id or msg.open_id,
                    reporter_open_id=msg.open_id,
                    deadline=deadline,
                )
            )
        except InvalidAssignee as exc:
            return f"❌ {exc}"
        return (
            f"✅ Task created!\n📋 {task.title}\n👤 → {assignee.display_name}\n"
            f"📅 Deadline: {messages.format_deadline(task.deadline, self._lifecycle.timezone)}"
        )


def _complete_argument(text: str) -> str | None:
    """The argument of a complete command, or None if *text* is not one."""
    match = _COMPLETE_FORWARD.match(text)
    if match:
        return (match.group(1) or "").strip()
    match = _COMPLETE_REVERSE.match(text)
    if match:
        return (match.group(1) + (match.group(2) or "")).strip()
    return None


def _select_task(tasks: list[Task], query: str) -> Task | None:
    """Pick by 1-based number, then exact, prefix and substring title match.

    With no usable query, a single pending task is selected implicitly.
    """
    if query.isdigit():
        index = int(query) - 1
        if 0 <= index < len(tasks):
            return tasks[index]
    if query:
        lower = query.lower()
        for matches in (
            lambda t: t.title.lower() == lower,
            lambda t: t.title.lower().startswith(lower),
            lambda t: lower in t.title.lower(),
        ):
            found = next((t for t in tasks if matches(t)), None)
            if found is not None:
                return found
    if len(tasks) == 1:
        return tasks[0]
    return None


def _end_of_day(value: str, timezone: str) -> datetime:
    day = datetime.strptime(value, "%Y-%m-%d").date()
    return datetime.combine(day, time(23, 59), tzinfo=ZoneInfo(timezone))
