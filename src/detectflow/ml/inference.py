"""Bounded worker pool for blocking inference runs.

Background detection tasks hand their blocking work (remote HTTP calls and
the sleeps between rate-limited retries) to this pool:

    BackgroundTasks -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> pipeline

At most ``max_concurrent`` runs execute at once; the rest wait for a slot.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from detectflow.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Semaphore-gated thread pool with live counters for the health endpoint."""

    def __init__(self, settings: Settings, queue_timeout: float | None = None) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="detectflow-inference",
        )
        self._queue_timeout = queue_timeout
        self._lock = threading.Lock()
        self._waiting = 0
        self._running = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If a queue timeout is set and no slot frees up in time.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        self._adjust(waiting=1)
        queued_at = time.perf_counter()
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
        finally:
            self._adjust(waiting=-1)

        waited = time.perf_counter() - queued_at
        if waited > 1.0:
            logger.info("Inference run waited %.1fs for a free slot", waited)

        self._adjust(running=1)
        try:
            yield
        finally:
            self._slots.release()
            self._adjust(running=-1)

    def _adjust(self, *, waiting: int = 0, running: int = 0) -> None:
        with self._lock:
            self._waiting += waiting
            self._running += running

    @property
    def active_count(self) -> int:
        """Runs currently executing on a worker thread."""
        with self._lock:
            return self._running

    @property
    def queue_depth(self) -> int:
        """Runs waiting for a slot."""
        with self._lock:
            return self._waiting

    def shutdown(self) -> None:
        """Wait for running work and stop the worker threads."""
        self._executor.shutdown(wait=True)
