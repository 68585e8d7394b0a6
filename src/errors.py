"""Exception hierarchy for task operations."""


class TaskError(Exception):
    """Base class for expected task-operation failures."""


class InvalidAssignee(TaskError):  # noqa: N818
    """Neither a resolvable tag nor a known assignee was given."""


class EmptyTag(TaskError):  # noqa: N818
    """A tag-based assignment found no member carrying the tag."""

    def __init__(self, tag: str) -> None:
        super().__init__(f"No users carry tag '{tag}'")
        self.tag = tag


class NotFoundOrCompleted(TaskError):  # noqa: N818
    """The task does not exist or is no longer pending.

    Callers cannot tell the two cases apart.
    """

    def __init__(self, task_id: str) -> None:
        super().__init__("Task not found or already completed")
        self.task_id = task_id


class NotificationFailure(TaskError):  # noqa: N818
    """A best-effort message could not be delivered."""


class StorageUnavailable(TaskError):  # noqa: N818
    """The database could not be reached."""
