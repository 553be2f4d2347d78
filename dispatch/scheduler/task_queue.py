"""Priority task queue for AI calls with bounded concurrency."""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from loguru import logger

from dispatch.scheduler.status import StatusPublisher


class TaskPriority(str, Enum):
    """Priority lanes, highest first."""
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @classmethod
    def parse(cls, value: Union["TaskPriority", str]) -> "TaskPriority":
        if isinstance(value, cls):
            return value
        name = str(value).strip().upper()
        if name == "MEDIUM":
            return cls.NORMAL
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown task priority: {value!r}") from None


_LANE_ORDER = (TaskPriority.HIGH, TaskPriority.NORMAL, TaskPriority.LOW)


class TaskState(str, Enum):
    """Where a task id currently sits."""
    QUEUED = "queued"
    RUNNING = "running"
    NONE = "none"


class DuplicateTaskError(Exception):
    """A task with the same id is already pending or running."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id!r} is already queued or running")
        self.task_id = task_id


UnitOfWork = Callable[[], Union[Awaitable[Any], Any]]


@dataclass
class QueuedTask:
    task_id: str
    priority: TaskPriority
    unit_of_work: UnitOfWork
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None


@dataclass(frozen=True)
class QueueSnapshot:
    """Point-in-time view of the queue handed to subscribers."""
    pending_count: int
    running_count: int
    pending_ids: Tuple[str, ...]
    running_ids: Tuple[str, ...]
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pendingCount": self.pending_count,
            "runningCount": self.running_count,
            "pendingIds": list(self.pending_ids),
            "runningIds": list(self.running_ids),
            "paused": self.paused,
        }


class TaskQueue:
    """
    AI task queue

    Tasks wait in three FIFO lanes (HIGH, NORMAL, LOW) and are promoted to
    the running set while it has room. The oldest task of the highest
    non-empty lane always goes first, so a steady stream of HIGH work can
    starve LOW indefinitely.

    Every state transition happens under ``self._lock`` on the event loop
    thread; units of work run in their own asyncio tasks without holding
    it. Failures are passed to the caller untouched and never retried here.
    """

    def __init__(self, concurrency_limit: int = 10, name: str = "ai-queue") -> None:
        """
        Initialise the queue

        Args:
            concurrency_limit: maximum number of tasks running at once
            name: label used in logs
        """
        if isinstance(concurrency_limit, bool) or not isinstance(concurrency_limit, int) or concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be a positive integer, got {concurrency_limit!r}")

        self.concurrency_limit = concurrency_limit
        self.name = name
        self._lock = threading.RLock()
        self._lanes: Dict[TaskPriority, Deque[QueuedTask]] = {p: deque() for p in _LANE_ORDER}
        self._pending: Dict[str, QueuedTask] = {}
        self._running: Dict[str, QueuedTask] = {}
        self._runners: Set[asyncio.Task] = set()
        self._paused = False
        self._publisher: StatusPublisher[QueueSnapshot] = StatusPublisher(name)

        logger.info(f"Task queue '{name}' initialized (max_concurrent={concurrency_limit})")

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def enqueue(self, priority: Union[TaskPriority, str], unit_of_work: UnitOfWork, task_id: str) -> Any:
        """
        Queue a unit of work and wait for its outcome

        Args:
            priority: lane for the task
            unit_of_work: zero-argument callable returning a value or awaitable
            task_id: caller-chosen id, unique among pending and running tasks

        Returns:
            Whatever the unit of work returns

        Raises:
            DuplicateTaskError: the id is already pending or running
            Exception: whatever the unit of work raised
        """
        return await self.submit(priority, unit_of_work, task_id)

    def submit(self, priority: Union[TaskPriority, str], unit_of_work: UnitOfWork, task_id: str) -> asyncio.Future:
        """Admit a task without waiting for it; must run on the loop thread."""
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("task_id must be a non-empty string")
        priority = TaskPriority.parse(priority)
        loop = asyncio.get_running_loop()

        with self._lock:
            if task_id in self._pending or task_id in self._running:
                logger.warning(f"Rejected duplicate task {task_id}")
                raise DuplicateTaskError(task_id)

            task = QueuedTask(
                task_id=task_id,
                priority=priority,
                unit_of_work=unit_of_work,
                future=loop.create_future(),
            )
            self._lanes[priority].append(task)
            self._pending[task_id] = task
            started = self._promote()
            snapshot = self._snapshot_locked()

        logger.debug(
            "Queued task {} (priority={}, pending={}, running={})",
            task_id, priority.value, snapshot.pending_count, snapshot.running_count,
        )
        self._start(started)
        self._publisher.publish(snapshot)
        return task.future

    def subscribe(self, callback: Callable[[QueueSnapshot], None]) -> Callable[[], None]:
        """Receive the current snapshot now and a new one on every transition."""
        # registration and the initial snapshot must not straddle a transition
        with self._lock:
            return self._publisher.subscribe(callback, self._snapshot_locked())

    def snapshot(self) -> QueueSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def get_task_status(self, task_id: str) -> TaskState:
        with self._lock:
            if task_id in self._running:
                return TaskState.RUNNING
            if task_id in self._pending:
                return TaskState.QUEUED
            return TaskState.NONE

    def pause(self) -> None:
        """Stop promoting pending tasks; running ones carry on."""
        with self._lock:
            self._paused = True
            snapshot = self._snapshot_locked()
        logger.info(f"Task queue '{self.name}' paused")
        self._publisher.publish(snapshot)

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            started = self._promote()
            snapshot = self._snapshot_locked()
        logger.info(f"Task queue '{self.name}' resumed")
        self._start(started)
        self._publisher.publish(snapshot)

    async def shutdown(self) -> None:
        """Cancel running work and drop pending tasks; used at process exit."""
        with self._lock:
            self._paused = True
            dropped = list(self._pending.values())
            interrupted = list(self._running.values())
            for lane in self._lanes.values():
                lane.clear()
            self._pending.clear()
            runners = list(self._runners)
        for task in dropped + interrupted:
            task.future.cancel()
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)
        logger.info(f"Task queue '{self.name}' shut down ({len(dropped)} pending dropped)")

    def _pop_next(self) -> Optional[QueuedTask]:
        for priority in _LANE_ORDER:
            lane = self._lanes[priority]
            if lane:
                task = lane.popleft()
                del self._pending[task.task_id]
                return task
        return None

    def _promote(self) -> List[QueuedTask]:
        started: List[QueuedTask] = []
        while not self._paused and len(self._running) < self.concurrency_limit:
            task = self._pop_next()
            if task is None:
                break
            task.started_at = time.time()
            self._running[task.task_id] = task
            started.append(task)
        return started

    def _start(self, tasks: List[QueuedTask]) -> None:
        if not tasks:
            return
        loop = asyncio.get_running_loop()
        for task in tasks:
            runner = loop.create_task(self._run(task))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)

    async def _run(self, task: QueuedTask) -> None:
        failure: Optional[BaseException] = None
        result: Any = None
        cancelled = False
        try:
            result = task.unit_of_work()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            cancelled = True
            task.future.cancel()
            raise
        except Exception as exc:
            failure = exc
        except BaseException as exc:
            failure = exc
            if not task.future.done():
                task.future.set_exception(exc)
            raise
        finally:
            self._settle(task, failed=failure is not None or cancelled, promote=not cancelled)

        if task.future.done():
            # the caller stopped waiting
            return
        if failure is not None:
            task.future.set_exception(failure)
        else:
            task.future.set_result(result)

    def _settle(self, task: QueuedTask, failed: bool, promote: bool = True) -> None:
        with self._lock:
            self._running.pop(task.task_id, None)
            started = self._promote() if promote else []
            snapshot = self._snapshot_locked()

        elapsed = time.time() - (task.started_at or task.enqueued_at)
        logger.debug(
            "Task {} {} in {:.2f}s (pending={}, running={})",
            task.task_id, "failed" if failed else "completed", elapsed,
            snapshot.pending_count, snapshot.running_count,
        )
        self._start(started)
        self._publisher.publish(snapshot)

    def _snapshot_locked(self) -> QueueSnapshot:
        pending_ids = tuple(task.task_id for priority in _LANE_ORDER for task in self._lanes[priority])
        running_ids = tuple(self._running)
        return QueueSnapshot(
            pending_count=len(pending_ids),
            running_count=len(running_ids),
            pending_ids=pending_ids,
            running_ids=running_ids,
            paused=self._paused,
        )
