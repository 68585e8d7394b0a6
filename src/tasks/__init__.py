"""Tasks: model, persistence, workload balancing and lifecycle."""

from src.tasks.lifecycle import TaskLifecycle
from src.tasks.models import Priority, Task, TaskRequest, TaskStatus
from src.tasks.store import TaskStore
from src.tasks.workload import WorkloadResolver

__all__ = [
    "Priority",
    "Task",
    "TaskLifecycle",
    "TaskRequest",
    "TaskStatus",
    "TaskStore",
    "WorkloadResolver",
]
