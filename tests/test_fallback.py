"""Tests for the local fallback store and the store factory."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from apiguard.app.core.config import settings
from apiguard.app.core.metrics import get_metrics
from apiguard.app.exceptions import BackendFailureError, ConfigurationError
from apiguard.app.ratelimit.engine import RateLimitEngine
from apiguard.app.ratelimit.models import RateLimitPolicy
from apiguard.app.store import (
    FallbackStore,
    LocalStore,
    RedisStore,
    create_store,
    get_store,
)


def broken_redis():
    client = MagicMock()
    error = redis.ConnectionError("connection refused")
    client.eval = AsyncMock(side_effect=error)
    client.get = AsyncMock(side_effect=error)
    client.delete = AsyncMock(side_effect=error)
    client.ping = AsyncMock(side_effect=error)
    client.aclose = AsyncMock()
    return client


class TestFallbackStore:
    """Tests for degrading to the local store."""

    @pytest.mark.asyncio
    async def test_rate_limit_falls_back(self, clock):
        store = FallbackStore(RedisStore(redis_client=broken_redis()), LocalStore())
        engine = RateLimitEngine(store=store, clock=clock)
        policy = RateLimitPolicy(permits=2, window_seconds=60)

        results = [await engine.check("k", policy) for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]
        assert get_metrics().get_summary()["fallbacks"] == 3

    @pytest.mark.asyncio
    async def test_records_fall_back(self, clock):
        store = FallbackStore(RedisStore(redis_client=broken_redis()), LocalStore())
        now = clock()

        assert await store.create_if_absent("k", {"expire_time": now + 1_000}, now) is None
        assert await store.get("k", now) == {"expire_time": now + 1_000}
        updated, record = await store.compare_and_update("k", {}, {"status": "SUCCESS"}, now)
        assert updated is True
        assert record["status"] == "SUCCESS"

    @pytest.mark.asyncio
    async def test_healthy_primary_is_used(self, mock_redis, clock):
        local = LocalStore()
        store = FallbackStore(RedisStore(redis_client=mock_redis), local)
        now = clock()

        await store.create_if_absent("k", {"expire_time": now + 1_000}, now)

        assert "k" in mock_redis.data
        assert await local.get("k", now) is None
        assert store.storage_type == "redis"

    @pytest.mark.asyncio
    async def test_fallback_failure_propagates(self, clock):
        failing_local = MagicMock()
        failing_local.storage_type = "memory"
        failing_local.get = AsyncMock(side_effect=BackendFailureError("lock", "k"))
        store = FallbackStore(RedisStore(redis_client=broken_redis()), failing_local)

        with pytest.raises(BackendFailureError) as exc_info:
            await store.get("k", clock())
        assert exc_info.value.operation == "lock"

    @pytest.mark.asyncio
    async def test_delete_clears_local_state_during_outage(self, clock):
        local = LocalStore()
        store = FallbackStore(RedisStore(redis_client=broken_redis()), local)
        now = clock()
        await store.create_if_absent("k", {"expire_time": now + 1_000}, now)

        assert await store.delete("k") is True
        assert await local.get("k", now) is None
        with pytest.raises(BackendFailureError):
            await store.delete("k")


class TestStoreFactory:
    """Tests for create_store and get_store."""

    def test_memory_backend(self):
        assert isinstance(create_store("memory"), LocalStore)

    def test_redis_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "fallback_to_local", False)
        assert isinstance(create_store("redis"), RedisStore)

        monkeypatch.setattr(settings, "fallback_to_local", True)
        store = create_store("REDIS")
        assert isinstance(store, FallbackStore)
        assert isinstance(store.fallback, LocalStore)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_store("etcd")
        assert exc_info.value.error_code == "CONFIG_UNSUPPORTED"

    def test_global_store_is_shared(self, monkeypatch):
        monkeypatch.setattr(settings, "storage_backend", "memory")
        assert get_store() is get_store()
