"""
Key Pool Tests

Tests for round-robin credential selection, the active-set cache and
fire-and-forget health reporting.
Run with: pytest tests/test_key_pool.py -v
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from contact_sync.background import BackgroundSupervisor
from contact_sync.crypto import CredentialCipher
from contact_sync.key_pool import RetryingKeyPool
from contact_sync.models import ApiKey, ApiKeyStatus
from contact_sync.store.memory import InMemorySyncStore


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def add_keys(store, *ids, cipher=None, **overrides):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i, key_id in enumerate(ids):
        secret = f"secret-{key_id}"
        store.add_key(ApiKey(
            id=key_id,
            encrypted_secret=cipher.encrypt(secret) if cipher else secret,
            created_at=base + timedelta(minutes=i),
            **overrides,
        ))


@pytest.fixture
def store():
    return InMemorySyncStore()


@pytest.fixture
def supervisor():
    return BackgroundSupervisor("test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool(store, supervisor, clock):
    return RetryingKeyPool(store, supervisor, clock=clock)


class TestSelection:
    """Tests for get_next round-robin behavior."""

    @pytest.mark.asyncio
    async def test_round_robin_over_active_keys_oldest_first(self, store, pool):
        add_keys(store, "k1", "k2", "k3")

        leases = [await pool.get_next() for _ in range(4)]

        assert [lease.key_id for lease in leases] == ["k1", "k2", "k3", "k1"]
        assert leases[0].secret == "secret-k1"

    @pytest.mark.asyncio
    async def test_returns_none_when_no_keys(self, pool):
        assert await pool.get_next() is None

    @pytest.mark.asyncio
    async def test_skips_non_active_keys(self, store, pool):
        add_keys(store, "k1")
        add_keys(store, "k2", status=ApiKeyStatus.DISABLED)

        assert (await pool.get_next()).key_id == "k1"
        assert (await pool.get_next()).key_id == "k1"
        assert await pool.key_count() == 1

    @pytest.mark.asyncio
    async def test_override_key_never_touches_store(self, supervisor):
        store = Mock()
        store.list_active_key_ids = AsyncMock()
        store.get_key = AsyncMock()
        pool = RetryingKeyPool(store, supervisor, override_key="env-secret")

        lease = await pool.get_next()
        pool.record_failure(lease.key_id)
        pool.mark_rate_limited(lease.key_id)

        assert lease.secret == "env-secret"
        assert lease.key_id is None
        assert await pool.key_count() == 1
        store.list_active_key_ids.assert_not_called()
        store.get_key.assert_not_called()
        assert supervisor.pending == 0

    @pytest.mark.asyncio
    async def test_evicted_key_triggers_one_refresh_and_retry(self, store, pool):
        add_keys(store, "k1", "k2")
        assert (await pool.get_next()).key_id == "k1"

        # k2 is disabled elsewhere while the cache still lists it
        store.keys["k2"] = store.keys["k2"].model_copy(update={"status": ApiKeyStatus.DISABLED})

        lease = await pool.get_next()

        assert lease.key_id == "k1"
        assert await pool.key_count() == 1


class TestActiveSetCache:
    """Tests for cache TTL, debounce and refresh de-duplication."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, store, pool):
        add_keys(store, "k1", "k2")

        with patch.object(store, "list_active_key_ids", wraps=store.list_active_key_ids) as loader:
            counts = await asyncio.gather(*(pool.key_count() for _ in range(10)))

        assert counts == [2] * 10
        assert loader.call_count == 1

    @pytest.mark.asyncio
    async def test_invalidation_is_debounced(self, store, pool, clock):
        add_keys(store, "k1")
        await pool.key_count()

        with patch.object(store, "list_active_key_ids", wraps=store.list_active_key_ids) as loader:
            pool.invalidate()
            clock.advance(1)
            await pool.key_count()
            assert loader.call_count == 0

            clock.advance(10)
            await pool.key_count()
            assert loader.call_count == 1

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, store, pool, clock):
        add_keys(store, "k1")
        await pool.key_count()
        add_keys(store, "k2")

        assert await pool.key_count() == 1
        clock.advance(RetryingKeyPool.CACHE_TTL_SECONDS + 1)
        assert await pool.key_count() == 2

    @pytest.mark.asyncio
    async def test_store_failure_keeps_previous_cache(self, store, pool, clock):
        add_keys(store, "k1")
        await pool.key_count()
        clock.advance(RetryingKeyPool.CACHE_TTL_SECONDS + 1)

        with patch.object(store, "list_active_key_ids", AsyncMock(side_effect=RuntimeError("db down"))):
            assert await pool.key_count() == 1


class TestHealthReporting:
    """Tests for fire-and-forget health events."""

    @pytest.mark.asyncio
    async def test_rate_limited_key_leaves_rotation(self, store, supervisor, pool, clock):
        add_keys(store, "k1", "k2")
        first = await pool.get_next()

        pool.mark_rate_limited(first.key_id)
        await supervisor.drain()
        clock.advance(RetryingKeyPool.REFRESH_DEBOUNCE_SECONDS + 1)

        assert store.keys["k1"].status == ApiKeyStatus.RATE_LIMITED
        assert store.keys["k1"].rate_limited_at is not None
        assert [(await pool.get_next()).key_id for _ in range(2)] == ["k2", "k2"]

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, store, supervisor, pool):
        add_keys(store, "k1", consecutive_failures=4)

        pool.record_success("k1")
        await supervisor.drain()

        key = store.keys["k1"]
        assert key.consecutive_failures == 0
        assert key.total_requests == 1
        assert key.last_success_at is not None

    @pytest.mark.asyncio
    async def test_invalid_key_is_disabled_with_reason(self, store, supervisor, pool):
        add_keys(store, "k1")

        pool.mark_invalid("k1", "401 Unauthorized")
        await supervisor.drain()

        assert store.keys["k1"].status == ApiKeyStatus.DISABLED
        assert store.keys["k1"].disabled_reason == "401 Unauthorized"

    @pytest.mark.asyncio
    async def test_repeated_failures_are_flagged_not_disabled(self, store, supervisor, pool, caplog):
        add_keys(store, "k1", consecutive_failures=RetryingKeyPool.FAILURE_ALERT_THRESHOLD - 1)

        with caplog.at_level(logging.WARNING, logger="contact_sync.key_pool"):
            pool.record_failure("k1")
            await supervisor.drain()

        assert store.keys["k1"].status == ApiKeyStatus.ACTIVE
        assert store.keys["k1"].consecutive_failures == RetryingKeyPool.FAILURE_ALERT_THRESHOLD
        assert "consider disabling" in caplog.text

    @pytest.mark.asyncio
    async def test_health_write_failure_is_contained(self, store, supervisor, pool):
        add_keys(store, "k1")

        with patch.object(store, "apply_key_event", AsyncMock(side_effect=RuntimeError("db down"))):
            pool.record_success("k1")
            await supervisor.drain()

        assert supervisor.failure_count == 1


class TestEncryptedSecrets:
    """Tests for Fernet-encrypted stored secrets."""

    @pytest.mark.asyncio
    async def test_secret_is_decrypted_on_lease(self, store, supervisor, clock):
        cipher = CredentialCipher(CredentialCipher.generate_key())
        add_keys(store, "k1", cipher=cipher)
        pool = RetryingKeyPool(store, supervisor, cipher=cipher, clock=clock)

        lease = await pool.get_next()

        assert lease.secret == "secret-k1"
        assert store.keys["k1"].encrypted_secret != "secret-k1"

    @pytest.mark.asyncio
    async def test_undecryptable_key_is_unusable(self, store, supervisor, clock):
        cipher = CredentialCipher(CredentialCipher.generate_key())
        add_keys(store, "k1")  # stored in plaintext, not a Fernet token
        pool = RetryingKeyPool(store, supervisor, cipher=cipher, clock=clock)

        assert await pool.get_next() is None

    @pytest.mark.asyncio
    async def test_resolve_key_id_by_secret(self, store, supervisor, clock):
        cipher = CredentialCipher(CredentialCipher.generate_key())
        add_keys(store, "k1", "k2", cipher=cipher)
        pool = RetryingKeyPool(store, supervisor, cipher=cipher, clock=clock)

        assert await pool.resolve_key_id("secret-k2") == "k2"
        assert await pool.resolve_key_id("unknown") is None
