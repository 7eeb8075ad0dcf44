"""
Bounded-parallelism executor.

Used to cap concurrent transcript fetches and concurrent classifier calls
independently within a sync job.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Set, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """Run at most ``limit`` coroutine functions at once.

    Submissions start in FIFO order; completion order is whatever the work
    dictates. Each call's result (or exception) is delivered only to its own
    caller, so one failing task never blocks or fails its siblings.

    Usage:
        limiter = ConcurrencyLimiter(10)
        results = await asyncio.gather(
            *(limiter.execute(lambda c=c: fetch(c)) for c in conversation_ids),
            return_exceptions=True,
        )
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self.limit = limit
        self._queue: Deque[Tuple[Callable[[], Awaitable], asyncio.Future]] = deque()
        self._running = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue ``fn`` and wait for its result."""
        future = asyncio.get_running_loop().create_future()
        self._queue.append((fn, future))
        self._dispatch()
        return await future

    def _dispatch(self) -> None:
        while self._running < self.limit and self._queue:
            fn, future = self._queue.popleft()
            if future.done():
                # Caller gave up while queued
                continue
            self._running += 1
            task = asyncio.ensure_future(self._run(fn, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, fn: Callable[[], Awaitable], future: asyncio.Future) -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._running -= 1
            self._dispatch()
