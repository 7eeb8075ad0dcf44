"""
Priority work queue with parallel workers and per-task retries.

Unlike ConcurrencyLimiter (strict FIFO), tasks here are started in priority
order, higher first. The orchestrator uses it to re-run deferred
conversations, newest first.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class QueueTask(Generic[T]):
    id: str
    priority: int  # Higher = more important
    data: T
    retries: int = 0
    max_retries: int = 3


@dataclass
class TaskResult(Generic[R]):
    task_id: str
    success: bool
    result: Optional[R] = None
    error: Optional[str] = None
    retries: int = 0


class QueueShutdownError(RuntimeError):
    """Raised when enqueueing into a queue that is shutting down."""


class WorkQueue(Generic[T, R]):
    """Process tasks through ``processor`` with at most ``max_concurrent`` running.

    A failing task is retried after ``retry_delay * (retries + 1)`` seconds by
    re-enqueueing it, until its ``max_retries`` is exhausted. The final
    outcome of every task ID is kept in ``get_results()``.
    """

    def __init__(
        self,
        processor: Callable[[QueueTask[T]], Awaitable[R]],
        max_concurrent: int = 10,
        retry_delay: float = 1.0,
        on_task_complete: Optional[Callable[[TaskResult], None]] = None,
        on_task_error: Optional[Callable[[TaskResult], None]] = None,
    ):
        self.processor = processor
        self.max_concurrent = max(1, max_concurrent)
        self.retry_delay = retry_delay
        self.on_task_complete = on_task_complete
        self.on_task_error = on_task_error

        self._queue: List[QueueTask[T]] = []
        self._running: Dict[str, asyncio.Task] = {}
        self._completed: Dict[str, TaskResult[R]] = {}
        self._shutting_down = False
        self._idle = asyncio.Event()
        self._idle.set()

    def enqueue(self, task: QueueTask[T]) -> None:
        if self._shutting_down:
            raise QueueShutdownError("Queue is shutting down")
        self._insert(task)
        self._process()

    def enqueue_batch(self, tasks: List[QueueTask[T]]) -> None:
        for task in tasks:
            self.enqueue(task)

    def _insert(self, task: QueueTask[T]) -> None:
        # Stable: equal priorities keep arrival order
        index = next(
            (i for i, queued in enumerate(self._queue) if queued.priority < task.priority),
            len(self._queue),
        )
        self._queue.insert(index, task)
        self._idle.clear()

    def _process(self) -> None:
        while (
            not self._shutting_down
            and len(self._running) < self.max_concurrent
            and self._queue
        ):
            task = self._queue.pop(0)
            # A retry of the same ID can be queued while the failing attempt
            # is still finishing up, so key by attempt as well.
            worker = asyncio.ensure_future(self._execute(task))
            self._running[f"{task.id}:{task.retries}"] = worker
        self._update_idle()

    def _update_idle(self) -> None:
        running_nothing = not self._running
        nothing_startable = not self._queue or self._shutting_down
        if running_nothing and nothing_startable:
            self._idle.set()

    async def _execute(self, task: QueueTask[T]) -> None:
        key = f"{task.id}:{task.retries}"
        try:
            result = await self.processor(task)
        except Exception as e:
            if task.retries < task.max_retries and not self._shutting_down:
                await asyncio.sleep(self.retry_delay * (task.retries + 1))
                logger.debug(f"Retrying task {task.id} (attempt {task.retries + 2})")
                self._insert(replace(task, retries=task.retries + 1))
            else:
                outcome = TaskResult(task_id=task.id, success=False, error=str(e), retries=task.retries)
                self._completed[task.id] = outcome
                if self.on_task_error:
                    self.on_task_error(outcome)
        else:
            outcome = TaskResult(task_id=task.id, success=True, result=result, retries=task.retries)
            self._completed[task.id] = outcome
            if self.on_task_complete:
                self.on_task_complete(outcome)
        finally:
            self._running.pop(key, None)
            self._process()

    async def wait_for_completion(self) -> Dict[str, TaskResult[R]]:
        """Block until nothing is queued or running, then return all results."""
        await self._idle.wait()
        return dict(self._completed)

    async def shutdown(self) -> None:
        """Stop starting new tasks and wait for running ones to finish."""
        self._shutting_down = True
        self._update_idle()
        await self._idle.wait()

    def clear(self) -> None:
        """Drop queued tasks. Running tasks are unaffected."""
        self._queue = []
        self._update_idle()

    def get_status(self) -> Dict[str, int]:
        return {
            "queued": len(self._queue),
            "running": len(self._running),
            "completed": len(self._completed),
        }

    def get_results(self) -> Dict[str, TaskResult[R]]:
        return dict(self._completed)

    def get_result(self, task_id: str) -> Optional[TaskResult[R]]:
        return self._completed.get(task_id)
