"""WorkloadResolver — picks the least-loaded member of a tag pool."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.errors import EmptyTag

if TYPE_CHECKING:
    from src.tasks.store import TaskStore
    from src.users.store import User, UserStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkloadEntry:
    """One member of a tag pool and the effort-weighted sum of their pending tasks.

    ``last_assigned`` is the insert position of the member's newest pending
    task within the pool (-1 when they have none); lower means assigned
    longer ago.
    """

    user: User
    weight: float
    pending_count: int
    last_assigned: int = -1

    @property
    def identity(self) -> str:
        return self.user.identity


class WorkloadResolver:
    """Builds workload snapshots for tag-based auto-assignment.

    Only members with an ``open_id`` are eligible, since that is the only id
    a task notification can be delivered to. Members are ordered by weight,
    then by who was assigned least recently, then by identity.

    Snapshots are read-only and unlocked. ``lock_for(tag)`` hands out a
    per-tag lock so that callers who pick *and* insert under it never place
    two concurrent tasks on the same member within this process.

    Args:
        users: Directory used to resolve tag membership.
        tasks: Task store queried for pending work.
    """

    def __init__(self, users: UserStore, tasks: TaskStore) -> None:
        self._users = users
        self._tasks = tasks
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, tag: str) -> asyncio.Lock:
        if tag not in self._locks:
            self._locks[tag] = asyncio.Lock()
        return self._locks[tag]

    async def resolve_workload(self, tag: str) -> list[WorkloadEntry]:
        """Eligible members tagged *tag*, least loaded first."""
        members = await self._users.find_by_tag(tag)
        skipped = [m.user_id for m in members if not m.open_id]
        if skipped:
            logger.warning("Tag '%s': skipping members without open_id: %s", tag, skipped)
        members = [m for m in members if m.open_id]
        if not members:
            return []

        ids = {i for m in members for i in (m.open_id, m.feishu_user_id, m.user_id) if i}
        pending = await self._tasks.list_pending_in_insert_order(ids)

        entries = []
        for member in members:
            member_ids = {i for i in (member.open_id, member.feishu_user_id, member.user_id) if i}
            mine = [
                (position, t)
                for position, t in enumerate(pending)
                if t.assignee_id in member_ids or t.assignee_open_id in member_ids
            ]
            entries.append(
                WorkloadEntry(
                    user=member,
                    weight=sum(t.weight for _, t in mine),
                    pending_count=len(mine),
                    last_assigned=mine[-1][0] if mine else -1,
                )
            )
        entries.sort(key=lambda e: (e.weight, e.last_assigned, e.identity))
        return entries

    async def pick_assignee(self, tag: str) -> WorkloadEntry:
        """Return the lowest-weight member of *tag*.

        Raises:
            EmptyTag: no eligible member carries the tag.
        """
        entries = await self.resolve_workload(tag)
        if not entries:
            raise EmptyTag(tag)
        chosen = entries[0]
        logger.info(
            "Tag '%s' workload: %s → picked %s",
            tag,
            ", ".join(f"{e.identity}={e.weight:g}" for e in entries),
            chosen.identity,
        )
        return chosen
