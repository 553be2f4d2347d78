"""Task scheduler module for AI calls with live status publishing."""

from dispatch.scheduler.status import StatusPublisher
from dispatch.scheduler.task_queue import (
    DuplicateTaskError,
    QueueSnapshot,
    TaskPriority,
    TaskQueue,
    TaskState,
)

__all__ = [
    'DuplicateTaskError',
    'QueueSnapshot',
    'StatusPublisher',
    'TaskPriority',
    'TaskQueue',
    'TaskState',
]
