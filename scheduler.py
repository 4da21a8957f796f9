# scheduler.py
"""
Delayed and periodic tasks (reset-after-delay, balance refresh).
Tasks live for the lifetime of the process; shutdown() is the only cancellation.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Set

import structlog

log = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[object]]


class TaskScheduler:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _track(self, coro: Awaitable[object], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def spawn(self, job: Job, name: str) -> asyncio.Task:
        """Run `job` now as a tracked background task."""
        return self.call_later(0, job, name)

    def call_later(self, delay: float, job: Job, name: str) -> asyncio.Task:
        async def _run() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("scheduled_job_failed", job=name)

        return self._track(_run(), name)

    def every(self, interval: float, job: Job, name: str) -> asyncio.Task:
        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception("periodic_job_failed", job=name)

        return self._track(_loop(), name)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
