"""
Background task supervisor.

Credential health updates, progress writes and whole sync jobs run as
fire-and-forget tasks. Spawning them through a supervisor keeps a strong
reference to each task (so the event loop cannot garbage-collect it) and
routes every failure into the log instead of an unretrieved exception.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundSupervisor:
    """Owns fire-and-forget tasks for the lifetime of the service container."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self.failure_count = 0
        self.last_error: Optional[BaseException] = None

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it. Must be called from a running loop."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failure_count += 1
            self.last_error = exc
            logger.error(
                f"[{self.name}] Background task {task.get_name()} failed: {exc}",
                exc_info=exc,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every task spawned so far (including ones they spawn)."""
        while self._tasks:
            tasks = list(self._tasks)
            done, not_done = await asyncio.wait(tasks, timeout=timeout)
            if not_done:
                logger.warning(f"[{self.name}] {len(not_done)} task(s) still running after drain timeout")
                return

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give running tasks ``timeout`` seconds, then cancel the rest."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.info(f"[{self.name}] Cancelled {len(not_done)} task(s) on shutdown")
