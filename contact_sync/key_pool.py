"""
Round-robin pool of classifier API keys.

Callers ask for "a working key" and report back how it went; per-key health
(ACTIVE / RATE_LIMITED / DISABLED) is persisted by the store and never seen
by callers. The set of active key IDs is cached in-process and refreshed
at most once per debounce window, so a burst of concurrent callers after
expiry triggers a single store read.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from .background import BackgroundSupervisor
from .crypto import CredentialCipher
from .errors import CredentialDecryptionError
from .interfaces import SyncStore
from .models import ApiKeyStatus, KeyEvent, KeyLease

logger = logging.getLogger(__name__)


class RetryingKeyPool:
    """Supply classifier credentials in round-robin order."""

    CACHE_TTL_SECONDS = 300
    REFRESH_DEBOUNCE_SECONDS = 5
    # Keys failing this many times in a row are flagged in the log.
    # Only an explicit auth failure disables a key.
    FAILURE_ALERT_THRESHOLD = 10

    def __init__(
        self,
        store: SyncStore,
        supervisor: BackgroundSupervisor,
        cipher: Optional[CredentialCipher] = None,
        override_key: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        debounce: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.supervisor = supervisor
        self.cipher = cipher
        self.override_key = override_key
        self.cache_ttl = cache_ttl if cache_ttl is not None else self.CACHE_TTL_SECONDS
        self.debounce = debounce if debounce is not None else self.REFRESH_DEBOUNCE_SECONDS
        self._clock = clock

        self._active_ids: List[str] = []
        self._index = 0
        self._loaded_at: Optional[float] = None
        self._last_refresh_at: Optional[float] = None
        self._refresh_task: Optional[asyncio.Task] = None

        if override_key:
            logger.info("Using CLASSIFIER_API_KEY override; key pool will not touch the store")

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def get_next(self) -> Optional[KeyLease]:
        """Return the next ACTIVE key, or None if no key is available."""
        if self.override_key:
            return KeyLease(secret=self.override_key)

        await self._ensure_fresh()

        for attempt in range(2):
            if not self._active_ids:
                break
            key_id = self._active_ids[self._index % len(self._active_ids)]
            self._index = (self._index + 1) % len(self._active_ids)

            lease = await self._lease(key_id)
            if lease is not None:
                return lease

            if attempt == 0:
                # Pointer landed on a key that was evicted since the cache was built
                logger.info(f"Key {key_id} is no longer usable, refreshing key pool")
                await self._refresh()

        logger.error("No active classifier API key available")
        return None

    async def key_count(self) -> int:
        if self.override_key:
            return 1
        await self._ensure_fresh()
        return len(self._active_ids)

    async def resolve_key_id(self, secret: str) -> Optional[str]:
        """Find the stored key whose decrypted secret equals ``secret``."""
        if self.override_key:
            return None
        for key in await self.store.list_keys():
            try:
                if self._decrypt(key.encrypted_secret) == secret:
                    return key.id
            except CredentialDecryptionError:
                continue
        return None

    async def _lease(self, key_id: str) -> Optional[KeyLease]:
        key = await self.store.get_key(key_id)
        if key is None or key.status != ApiKeyStatus.ACTIVE:
            return None
        try:
            return KeyLease(key_id=key.id, secret=self._decrypt(key.encrypted_secret))
        except CredentialDecryptionError as e:
            logger.error(f"Could not decrypt key {key_id}: {e}")
            return None

    def _decrypt(self, encrypted: str) -> str:
        if self.cipher is None:
            return encrypted
        return self.cipher.decrypt(encrypted)

    # -------------------------------------------------------------------------
    # Active-set cache
    # -------------------------------------------------------------------------

    def invalidate(self) -> None:
        """Mark the active-set cache stale; the next call refreshes (subject to debounce)."""
        self._loaded_at = None

    async def _ensure_fresh(self) -> None:
        now = self._clock()
        if self._active_ids and self._loaded_at is not None and now - self._loaded_at < self.cache_ttl:
            return
        if self._refresh_task is not None:
            await asyncio.shield(self._refresh_task)
            return
        if self._last_refresh_at is not None and now - self._last_refresh_at < self.debounce:
            return
        await self._refresh()

    async def _refresh(self) -> None:
        """Reload active IDs, joining a refresh already in flight."""
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._load_active_ids())
        task = self._refresh_task
        try:
            await asyncio.shield(task)
        finally:
            if self._refresh_task is task and task.done():
                self._refresh_task = None

    async def _load_active_ids(self) -> None:
        self._last_refresh_at = self._clock()
        try:
            ids = await self.store.list_active_key_ids()
        except Exception as e:
            logger.error(f"Failed to load active API keys, keeping {len(self._active_ids)} cached: {e}")
            return
        self._active_ids = list(ids)
        self._loaded_at = self._clock()
        logger.debug(f"Loaded {len(self._active_ids)} active API key(s)")

    # -------------------------------------------------------------------------
    # Health reporting (fire-and-forget)
    # -------------------------------------------------------------------------

    def record_success(self, key_id: Optional[str]) -> None:
        self._report(key_id, KeyEvent.SUCCESS)

    def record_failure(self, key_id: Optional[str]) -> None:
        self._report(key_id, KeyEvent.FAILURE)

    def mark_rate_limited(self, key_id: Optional[str]) -> None:
        self._report(key_id, KeyEvent.RATE_LIMITED)

    def mark_invalid(self, key_id: Optional[str], reason: str) -> None:
        self._report(key_id, KeyEvent.INVALID, reason)

    def _report(self, key_id: Optional[str], event: KeyEvent, reason: Optional[str] = None) -> None:
        if key_id is None or self.override_key:
            return
        self.invalidate()
        self.supervisor.spawn(
            self._apply_event(key_id, event, reason),
            name=f"key-{event.value}-{key_id}",
        )

    async def _apply_event(self, key_id: str, event: KeyEvent, reason: Optional[str]) -> None:
        key = await self.store.apply_key_event(key_id, event, reason)
        if key is None:
            logger.warning(f"Health update {event.value} for unknown key {key_id}")
            return

        if event == KeyEvent.RATE_LIMITED:
            logger.warning(f"Key {key_id} marked RATE_LIMITED")
        elif event == KeyEvent.INVALID:
            logger.error(f"Key {key_id} disabled: {reason}")
        elif event == KeyEvent.FAILURE and key.consecutive_failures >= self.FAILURE_ALERT_THRESHOLD:
            logger.warning(
                f"Key {key_id} has failed {key.consecutive_failures} times in a row, consider disabling it"
            )
