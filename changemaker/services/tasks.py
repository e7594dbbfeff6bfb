"""
changemaker.services.tasks — In-process background task runner
===============================================================

Work that must not hold up an HTTP response (the address-triggered reward
retry) is handed to :class:`BackgroundTaskRunner`.  Every task is tracked
until it finishes, its exceptions are logged instead of disappearing, and
the lifespan drains outstanding tasks on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Tracked fire-and-forget tasks on the running event loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, job: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Schedule *job* and return immediately."""
        task = asyncio.get_running_loop().create_task(job, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Spawned background task %s", name)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed", task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks (up to *timeout* seconds)."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d background task(s) still running after drain", len(pending))

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Drain, then cancel whatever is left."""
        await self.drain(timeout)
        leftovers = list(self._tasks)
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)
