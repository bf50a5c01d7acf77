"""
Delayed task scheduling for per-job polling.

Each job has at most one pending check, keyed by job id. Checks are plain
asyncio tasks that sleep on an injectable clock before running, so tests can
drive time without waiting on the wall clock.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


class Clock:
    """Wall clock. Replace with a fake in tests."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class JobScheduler:
    """
    Keyed, cancellable delayed tasks.

    Scheduling a key that already has a pending task replaces it. A task may
    reschedule its own key from inside its callback. Exceptions raised by
    callbacks are logged when the task finishes.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or Clock()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def keys(self) -> list[str]:
        return list(self._tasks)

    def is_scheduled(self, key: str) -> bool:
        return key in self._tasks

    def schedule(
        self, key: str, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> asyncio.Task:
        """
        Run callback after delay seconds.

        Args:
            key: Identifier of the scheduled work (a job id)
            delay: Seconds to wait before running
            callback: Coroutine function to run

        Returns:
            The created task
        """
        self.cancel(key)
        task = asyncio.create_task(self._run(delay, callback), name=f"check-{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._on_done(key, t))
        return task

    def cancel(self, key: str) -> bool:
        """Cancel the pending task for key; the calling task itself is never cancelled."""
        task = self._tasks.get(key)
        if task is None or task is asyncio.current_task():
            return False
        del self._tasks[key]
        task.cancel()
        return True

    async def _run(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        if delay > 0:
            await self.clock.sleep(delay)
        await callback()

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Scheduled task for {key} failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    async def drain(self) -> None:
        """Wait until no tasks are pending, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
            # Let done callbacks run before checking again
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Cancel every pending task and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
