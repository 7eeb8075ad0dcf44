"""
Failure bookkeeping with exponential backoff and a dead-letter list.

A unit of work that fails with a retryable error is recorded here instead of
being counted as failed straight away. Once it has failed ``max_retries``
times it is moved to the dead-letter list for operators to inspect.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class FailedTask:
    id: str
    task: Any
    error: BaseException
    attempts: int
    last_attempt: float
    next_retry: Optional[float] = None


class ErrorRecovery:
    """Track failed tasks, when they may be retried, and which are dead."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_multiplier: float = 2.0,
        enable_dead_letter_queue: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.enable_dead_letter_queue = enable_dead_letter_queue
        self._clock = clock
        self._failed: Dict[str, FailedTask] = {}
        self._dead_letters: List[FailedTask] = []

    def record_failure(self, task_id: str, task: Any, error: BaseException) -> FailedTask:
        now = self._clock()
        existing = self._failed.get(task_id)
        if existing:
            existing.attempts += 1
            existing.last_attempt = now
            existing.error = error
            existing.next_retry = now + self._backoff(existing.attempts)
            return existing

        failed = FailedTask(
            id=task_id,
            task=task,
            error=error,
            attempts=1,
            last_attempt=now,
            next_retry=now + self._backoff(1),
        )
        self._failed[task_id] = failed
        return failed

    def should_retry(self, task_id: str) -> bool:
        """True if the task may be retried now.

        A task that has used up its attempts is moved to the dead-letter list
        as a side effect.
        """
        failed = self._failed.get(task_id)
        if failed is None:
            return False

        if failed.attempts >= self.max_retries:
            if self.enable_dead_letter_queue:
                self._dead_letters.append(failed)
                del self._failed[task_id]
                logger.warning(
                    f"Task {task_id} moved to dead-letter list after {failed.attempts} attempts: {failed.error}"
                )
            return False

        return failed.next_retry is None or failed.next_retry <= self._clock()

    def get_retryable_tasks(self) -> List[FailedTask]:
        now = self._clock()
        return [
            f for f in self._failed.values()
            if f.next_retry is not None and f.next_retry <= now and f.attempts < self.max_retries
        ]

    def next_retry_in(self) -> Optional[float]:
        """Seconds until the earliest pending retry, or None if nothing is pending."""
        pending = [f.next_retry for f in self._failed.values() if f.next_retry is not None]
        if not pending:
            return None
        return max(0.0, min(pending) - self._clock())

    def pending_tasks(self) -> List[FailedTask]:
        return list(self._failed.values())

    def is_pending(self, task_id: str) -> bool:
        return task_id in self._failed

    def mark_recovered(self, task_id: str) -> None:
        self._failed.pop(task_id, None)

    def _backoff(self, attempts: int) -> float:
        delay = self.initial_delay * (self.backoff_multiplier ** (attempts - 1))
        return min(delay, self.max_delay)

    def get_dead_letter_queue(self) -> List[FailedTask]:
        return list(self._dead_letters)

    def clear_dead_letter_queue(self) -> None:
        self._dead_letters = []

    def get_stats(self) -> Dict[str, int]:
        return {
            "active_failures": len(self._failed),
            "dead_letter_count": len(self._dead_letters),
            "retryable_count": len(self.get_retryable_tasks()),
        }
