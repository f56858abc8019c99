from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("replay")


class ReplayQueue:
    """
    FIFO of replay job ids drained by a fixed pool of worker tasks.

    Each worker runs one job at a time through ``job_runner``; the pool size
    bounds how many replays drive a browser concurrently.
    """

    def __init__(
        self,
        workers_count: int,
        job_runner: Callable[[Any], Awaitable[None]],
        job_lookup: Callable[[str], Any],
    ):
        self.workers_count = workers_count
        self._job_runner = job_runner
        self._job_lookup = job_lookup
        self._pending: deque[str] = deque()
        self._cond = asyncio.Condition()
        self._workers: list[asyncio.Task] = []
        self._running: dict[str, asyncio.Task] = {}
        self._closing = False

    @property
    def depth(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        self._closing = False
        for i in range(self.workers_count):
            self._workers.append(asyncio.create_task(self._worker(i)))

    async def stop(self) -> None:
        self._closing = True
        async with self._cond:
            self._cond.notify_all()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers.clear()

    async def submit(self, job_id: str) -> int:
        """Queue a job; returns its 1-based position."""
        async with self._cond:
            self._pending.append(job_id)
            self._cond.notify()
            return len(self._pending)

    async def withdraw(self, job_id: str) -> bool:
        """Drop a job that has not started yet."""
        async with self._cond:
            try:
                self._pending.remove(job_id)
            except ValueError:
                return False
            return True

    async def position(self, job_id: str) -> Optional[int]:
        async with self._cond:
            for idx, queued in enumerate(self._pending, start=1):
                if queued == job_id:
                    return idx
            return None

    def running_task(self, job_id: str) -> Optional[asyncio.Task]:
        return self._running.get(job_id)

    async def _next(self) -> Optional[str]:
        async with self._cond:
            while not self._pending and not self._closing:
                await self._cond.wait()
            if self._closing:
                return None
            return self._pending.popleft()

    async def _worker(self, worker_id: int) -> None:
        while True:
            job_id = await self._next()
            if job_id is None:
                return
            job = self._job_lookup(job_id)
            if job is None:
                continue
            task = asyncio.create_task(self._job_runner(job))
            self._running[job_id] = task
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                logger.info("[queue] worker %s: job %s cancelled", worker_id, job_id)
            except Exception as exc:
                logger.error("[queue] worker %s crashed running %s: %r", worker_id, job_id, exc)
            finally:
                self._running.pop(job_id, None)
