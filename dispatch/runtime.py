"""Process-wide service container: one event loop, queue, key pool and AI service."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from loguru import logger

from dispatch.keys.api_key_pool import KeyPool
from dispatch.llm.gemini_bridge import GeminiBridge
from dispatch.monitoring.metrics import update_api_key_pool_metrics, update_queue_metrics
from dispatch.scheduler.task_queue import TaskQueue
from dispatch.services.ai_service import AIService

T = TypeVar("T")


def build_key_pool(settings) -> KeyPool:
    """Primary key and pool block from the environment, then the YAML key file."""
    pool = KeyPool.from_raw(
        settings.api_key_pool,
        primary=settings.gemini_api_key,
        cooldown_seconds=settings.key_cooldown_seconds,
    )
    keys_file: Optional[Path] = settings.api_keys_file
    if keys_file and Path(keys_file).exists():
        file_pool = KeyPool.from_yaml(keys_file)
        added = sum(1 for credential in file_pool.credentials() if pool.add_key(credential.secret))
        logger.info(f"Loaded {added} key(s) from {keys_file}")
    return pool


class ServiceRuntime:
    """
    Service runtime

    Built once at process start and handed to whoever needs the queue or
    the AI service. The asyncio loop runs in a daemon thread; Flask
    handlers reach it through ``run`` / ``submit`` / ``call_soon``.
    """

    def __init__(
        self,
        settings,
        queue: Optional[TaskQueue] = None,
        key_pool: Optional[KeyPool] = None,
        bridge: Optional[GeminiBridge] = None,
    ) -> None:
        self.settings = settings
        self.queue = queue or TaskQueue(concurrency_limit=settings.max_total_parallel)
        self.key_pool = key_pool if key_pool is not None else build_key_pool(settings)
        self.bridge = bridge or GeminiBridge(base_url=settings.gemini_base_url, timeout=settings.request_timeout)
        self.ai_service = AIService(
            self.queue,
            self.key_pool,
            bridge=self.bridge,
            model=settings.ai_model,
            health_timeout=settings.health_timeout,
        )

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._unsubscribe_metrics = self.queue.subscribe(update_queue_metrics)
        update_api_key_pool_metrics(self.key_pool.stats())

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "ServiceRuntime":
        """Start the event loop thread."""
        if self.running:
            logger.warning("Service runtime is already running")
            return self

        def run_event_loop():
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)
            self._ready.set()
            self.loop.run_forever()
            self.loop.close()

        self._thread = threading.Thread(target=run_event_loop, name="dispatch-loop", daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.success("Service runtime started")
        return self

    def stop(self, timeout: float = 10.0) -> None:
        """Cancel outstanding work and stop the loop thread."""
        if not self.running or self.loop is None:
            return
        logger.info("Stopping service runtime...")
        try:
            self.submit(self.queue.shutdown()).result(timeout)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout)
            self._unsubscribe_metrics()
        logger.info("Service runtime stopped")

    def submit(self, coro: Awaitable[T]) -> "Future[T]":
        """Schedule ``coro`` on the runtime loop from any thread."""
        if self.loop is None:
            raise RuntimeError("Service runtime is not started")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run ``coro`` on the runtime loop and block for the result."""
        return self.submit(coro).result(timeout)

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run a plain callable on the loop thread (e.g. queue.resume)."""
        if self.loop is None:
            raise RuntimeError("Service runtime is not started")
        self.loop.call_soon_threadsafe(fn, *args)
