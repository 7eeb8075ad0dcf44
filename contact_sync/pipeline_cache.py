"""TTL cache of pipelines with their stages."""

import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

from .interfaces import SyncStore
from .models import Pipeline

logger = logging.getLogger(__name__)


class PipelineCache:
    """Read-through cache in front of ``store.get_pipeline``.

    Pipelines change rarely, so a stale read for up to ``ttl_seconds`` is
    acceptable. Call ``invalidate`` after editing a pipeline's stages.
    """

    DEFAULT_TTL_SECONDS = 300
    DEFAULT_MAX_ENTRIES = 100

    def __init__(
        self,
        store: SyncStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Pipeline, float]]" = OrderedDict()

    async def get(self, pipeline_id: str) -> Optional[Pipeline]:
        cached = self._entries.get(pipeline_id)
        if cached is not None:
            pipeline, cached_at = cached
            if self._clock() - cached_at < self.ttl_seconds:
                return pipeline
            del self._entries[pipeline_id]

        pipeline = await self.store.get_pipeline(pipeline_id)
        if pipeline is None:
            return None

        if len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[pipeline_id] = (pipeline, self._clock())
        return pipeline

    def invalidate(self, pipeline_id: str) -> None:
        self._entries.pop(pipeline_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "max_size": self.max_entries}
