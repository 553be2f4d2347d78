"""Synchronous fan-out of queue snapshots to subscribers."""

from __future__ import annotations

import itertools
import threading
from collections import deque
from typing import Callable, Deque, Dict, Generic, TypeVar

from loguru import logger

S = TypeVar("S")

Subscriber = Callable[[S], None]


class StatusPublisher(Generic[S]):
    """
    Ordered publish/subscribe for state snapshots

    Snapshots published while a delivery round is running (for example by
    a subscriber that enqueues more work) are held back and delivered
    afterwards, so every subscriber sees them in publication order. A
    callback that raises is logged and skipped.
    """

    def __init__(self, name: str = "status") -> None:
        self.name = name
        self._lock = threading.RLock()
        self._subscribers: Dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._backlog: Deque[S] = deque()
        self._publishing = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: Subscriber, initial: S) -> Callable[[], None]:
        """
        Register ``callback`` and deliver ``initial`` to it right away

        Returns:
            An idempotent unsubscribe function
        """
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = callback
        self._deliver(token, callback, initial)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, snapshot: S) -> None:
        with self._lock:
            self._backlog.append(snapshot)
            if self._publishing:
                return
            self._publishing = True
        try:
            while True:
                with self._lock:
                    if not self._backlog:
                        break
                    current = self._backlog.popleft()
                    targets = list(self._subscribers.items())
                for token, callback in targets:
                    if token in self._subscribers:
                        self._deliver(token, callback, current)
        finally:
            with self._lock:
                self._publishing = False
                self._backlog.clear()

    def _deliver(self, token: int, callback: Subscriber, snapshot: S) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception(f"{self.name} subscriber #{token} raised; continuing")
