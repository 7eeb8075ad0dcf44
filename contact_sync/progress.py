"""
Best-effort job progress writer.

Polling clients read live counts from the job row. Those writes must never
abort a sync, so every failure here is logged and dropped.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .interfaces import SyncStore
from .models import JobError, SyncStatus

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Accumulate counts and errors for one job and write them in batches.

    ``update`` writes at most once per ``min_interval`` seconds (a change to
    the total always goes out immediately). ``finalize`` always writes.
    Errors beyond ``max_errors`` are counted but not stored.
    """

    def __init__(
        self,
        store: SyncStore,
        job_id: str,
        max_errors: int = 200,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.job_id = job_id
        self.max_errors = max_errors
        self.min_interval = min_interval
        self._clock = clock
        self._last_write: Optional[float] = None
        self._pending: Dict[str, Any] = {}

        self.synced = 0
        self.failed = 0
        self.total = 0
        self.errors: List[JobError] = []
        self.dropped_errors = 0

    def add_error(
        self,
        error: str,
        platform: Optional[str] = None,
        item_id: Optional[str] = None,
        code: Optional[int] = None,
    ) -> None:
        if len(self.errors) >= self.max_errors:
            self.dropped_errors += 1
            return
        self.errors.append(JobError(platform=platform, id=item_id, error=error, code=code))

    async def update(
        self,
        synced: Optional[int] = None,
        failed: Optional[int] = None,
        total: Optional[int] = None,
    ) -> None:
        if synced is not None:
            self.synced = synced
            self._pending["synced_contacts"] = synced
        if failed is not None:
            self.failed = failed
            self._pending["failed_contacts"] = failed
        if total is not None:
            self.total = total
            self._pending["total_contacts"] = total

        due = self._last_write is None or self._clock() - self._last_write >= self.min_interval
        if due or total is not None:
            await self.flush()

    async def force_update(self, **fields) -> None:
        self._pending.update(fields)
        await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        pending, self._pending = self._pending, {}
        try:
            await self.store.update_job(self.job_id, **pending)
            self._last_write = self._clock()
        except Exception as e:
            logger.error(f"[Sync {self.job_id}] Failed to write progress (non-fatal): {e}")

    async def finalize(self, status: SyncStatus, token_expired: bool = False) -> bool:
        """Write the terminal status with final counts and the bounded error list.

        The write only lands while the job is still running, so a cancellation
        that arrived first is kept. Returns True when the status was written.
        """
        if self.dropped_errors:
            logger.warning(f"[Sync {self.job_id}] {self.dropped_errors} error(s) not stored (limit {self.max_errors})")
        self._pending.update(
            status=status,
            synced_contacts=self.synced,
            failed_contacts=self.failed,
            total_contacts=self.synced + self.failed,
            errors=list(self.errors),
            token_expired=token_expired,
            completed_at=datetime.now(timezone.utc),
        )
        pending, self._pending = self._pending, {}
        try:
            written = await self.store.finish_job(self.job_id, **pending)
        except Exception as e:
            logger.error(f"[Sync {self.job_id}] Failed to write final status {status.value}: {e}")
            return False
        if not written:
            logger.info(f"[Sync {self.job_id}] Job already finished elsewhere, {status.value} not written")
        return written
