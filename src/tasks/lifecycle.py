"""TaskLifecycle — creates, completes and lists tasks.

Creation persists first and notifies second: a failed notification is logged
and never rolls back the task. Completion is a single compare-and-set in the
store, so of two concurrent completions exactly one succeeds.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from src.config import settings
from src.errors import InvalidAssignee, NotFoundOrCompleted, NotificationFailure
from src.tasks import messages
from src.tasks.models import Task, TaskRequest, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.audit import AuditLog
    from src.notifications.router import NotificationRouter
    from src.tasks.store import TaskStore
    from src.tasks.workload import WorkloadResolver
    from src.users.store import User, UserStore

logger = logging.getLogger(__name__)


async def notify(router: NotificationRouter, recipient: str | None, message: str) -> bool:
    """Best-effort delivery. Failures are logged, never raised."""
    try:
        await router.deliver(recipient, message)
    except NotificationFailure as exc:
        logger.warning("Notification not delivered: %s", exc)
        return False
    return True


class TaskLifecycle:
    """Core task operations backing the API, chat commands and the runner.

    Args:
        store: Task persistence.
        users: User directory for assignee resolution.
        workload: Resolver used for tag-based auto-assignment.
        router: Outbound notifications.
        audit: Optional audit log; writes are best-effort.
        default_deadline_days: Deadline offset when a request gives none
            (0 leaves the task without a deadline).
        default_reminder_interval_hours: Repeat-reminder interval when a
            request gives none.
        timezone: Zone used to render deadlines in messages.
        clock: Returns the current aware UTC instant.
    """

    def __init__(
        self,
        store: TaskStore,
        users: UserStore,
        workload: WorkloadResolver,
        router: NotificationRouter,
        audit: AuditLog | None = None,
        *,
        default_deadline_days: float | None = None,
        default_reminder_interval_hours: float | None = None,
        timezone: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._users = users
        self._workload = workload
        self._router = router
        self._audit = audit
        self._deadline_days = (
            settings.default_deadline_days if default_deadline_days is None else default_deadline_days
        )
        self._interval_hours = (
            settings.default_reminder_interval_hours
            if default_reminder_interval_hours is None
            else default_reminder_interval_hours
        )
        self._timezone = timezone or settings.default_timezone
        self._clock = clock

    @property
    def timezone(self) -> str:
        return self._timezone

    # -- Creation --------------------------------------------------------------

    async def create_task(self, request: TaskRequest) -> Task:
        """Persist a task for a direct assignee or the least-loaded tag member.

        Raises:
            EmptyTag: a tag was given but nobody carries it.
            InvalidAssignee: no tag and no assignee with a delivery id.
        """
        now = self._clock()
        if request.target_tag:
            async with self._workload.lock_for(request.target_tag):
                entry = await self._workload.pick_assignee(request.target_tag)
                task = self._build(request, entry.user, now)
                task.target_tag = request.target_tag
                await self._store.insert(task)
        else:
            user = await self._resolve_direct(request)
            task = self._build(request, user, now)
            if not task.delivery_id:
                msg = "Assignee has no delivery id"
                raise InvalidAssignee(msg)
            await self._store.insert(task)

        logger.info(
            "Task created: %s → %s (tag=%s, creator=%s)",
            task.id,
            task.delivery_id,
            task.target_tag,
            task.creator_id,
        )
        if self._audit is not None:
            await self._audit.log(
                task.creator_id or "system",
                "create_task",
                "task",
                task.id,
                {"title": task.title, "assignee": task.delivery_id, "tag": task.target_tag},
            )
        await notify(self._router, task.delivery_id, messages.task_created(task, self._timezone))
        return task

    async def _resolve_direct(self, request: TaskRequest) -> User | None:
        """Look the assignee up in the directory.

        An unknown open_id is still a usable delivery id; an unknown internal
        id with no open_id is not.
        """
        if request.assignee_open_id:
            return await self._users.get_by_open_id(request.assignee_open_id)
        if request.assignee_id:
            user = await self._users.get_by_feishu_user_id(request.assignee_id)
            if user is None:
                user = await self._users.get_user(request.assignee_id)
            if user is None or not user.open_id:
                msg = f"Unknown assignee: {request.assignee_id}"
                raise InvalidAssignee(msg)
            return user
        msg = "Task needs either an assignee or a target tag"
        raise InvalidAssignee(msg)

    def _build(self, request: TaskRequest, user: User | None, now: datetime) -> Task:
        if request.deadline is not None:
            deadline = request.deadline
        elif request.deadline_days is not None:
            deadline = now + timedelta(days=request.deadline_days)
        elif self._deadline_days:
            deadline = now + timedelta(days=self._deadline_days)
        else:
            deadline = None

        interval = request.reminder_interval_hours
        if interval is None:
            interval = self._interval_hours

        return Task(
            title=request.title,
            assignee_id=(user.feishu_user_id or user.user_id) if user else request.assignee_id,
            assignee_open_id=(user.open_id if user and user.open_id else request.assignee_open_id),
            assignee_name=user.display_name if user else None,
            creator_id=request.creator_id,
            reporter_open_id=request.reporter_open_id,
            deadline=deadline,
            reminder_interval_hours=interval,
            note=request.note,
            priority=request.priority,
            estimated_effort=request.estimated_effort,
            created_at=now,
        )

    # -- Completion ------------------------------------------------------------

    async def complete_task(
        self,
        task_id: str,
        proof: str | None = None,
        completer_id: str | None = None,
        completer_name: str | None = None,
    ) -> Task:
        """Transition a pending task to completed and tell the reporter.

        Raises:
            NotFoundOrCompleted: the task is missing or no longer pending.
        """
        task = await self._store.complete(task_id, proof or None, self._clock())
        if task is None:
            raise NotFoundOrCompleted(task_id)

        logger.info("Task completed: %s by %s", task_id, completer_id or completer_name)
        if self._audit is not None:
            await self._audit.log(
                completer_id or "unknown",
                "complete_task",
                "task",
                task_id,
                {"proof": task.proof, "completer_name": completer_name},
            )
        if task.reporter_open_id:
            await notify(
                self._router,
                task.reporter_open_id,
                messages.task_completed(task, completer_name),
            )
        return task

    # -- Queries ---------------------------------------------------------------

    async def get_user_pending_tasks(
        self, internal_id: str | None, delivery_id: str | None
    ) -> list[Task]:
        """Pending tasks for a user under either identity form."""
        return await self._store.find_pending_by_assignee(internal_id, delivery_id)

    async def get_task(self, task_id: str) -> Task | None:
        return await self._store.get_task(task_id)

    async def list_pending(self) -> list[Task]:
        return await self._store.list_pending()

    async def list_tasks(self, limit: int = 100) -> list[Task]:
        return await self._store.list_tasks(limit)

    # -- Administration --------------------------------------------------------

    async def delete_task(self, task_id: str, actor_id: str | None = None) -> Task:
        """Remove a task outright.

        Raises:
            NotFoundOrCompleted: no such task.
        """
        task = await self._store.delete(task_id)
        if task is None:
            raise NotFoundOrCompleted(task_id)
        if self._audit is not None:
            await self._audit.log(
                actor_id or "system", "delete_task", "task", task_id, {"title": task.title}
            )
        return task
