"""Fire-and-forget task submission for provisioning runs and config syncs.

Nothing awaits these tasks: their outcome is observable only through the
job/step records they update and the log. The runner holds a reference to
every in-flight task (the event loop keeps only weak ones), logs failures
that escaped the coroutine, and can be drained at shutdown or in tests.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Tracks detached asyncio tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def submit(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Schedule a coroutine on the running loop and return its task."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Submitted background task %s", task.get_name())
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every submitted task (including ones submitted while
        draining) has finished. Task errors are not re-raised.
        """
        async def _wait_all() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_wait_all(), timeout)


background_tasks = BackgroundTasks()
