"""Tests for the in-process record store."""

import asyncio

import pytest

from apiguard.app.exceptions import BackendFailureError
from apiguard.app.ratelimit.models import RateLimitPolicy
from apiguard.app.store import LocalStore


def make_record(now, ttl_ms=60_000, **fields):
    record = {"status": "PENDING", "expire_time": now + ttl_ms, "access_count": 1}
    record.update(fields)
    return record


class TestCreateAndRead:
    """Tests for create_if_absent and get."""

    @pytest.mark.asyncio
    async def test_create_if_absent(self, local_store, clock):
        """Test that only the first create wins and later ones see it."""
        now = clock()
        assert await local_store.create_if_absent("k", make_record(now, owner="a"), now) is None

        existing = await local_store.create_if_absent("k", make_record(now, owner="b"), now)
        assert existing["owner"] == "a"
        assert (await local_store.get("k", now))["owner"] == "a"

    @pytest.mark.asyncio
    async def test_expired_record_behaves_as_absent(self, local_store, clock):
        """Test logical expiry through expire_time."""
        now = clock()
        await local_store.create_if_absent("k", make_record(now, ttl_ms=1_000, owner="a"), now)

        assert await local_store.get("k", now + 999) is not None
        assert await local_store.get("k", now + 1_000) is None
        created = await local_store.create_if_absent(
            "k", make_record(now + 1_000, owner="b"), now + 1_000
        )
        assert created is None
        assert (await local_store.get("k", now + 1_000))["owner"] == "b"

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, local_store, clock):
        """Test that callers cannot mutate stored state by reference."""
        now = clock()
        record = make_record(now)
        await local_store.create_if_absent("k", record, now)
        record["status"] = "SUCCESS"

        fetched = await local_store.get("k", now)
        fetched["status"] = "FAILED"
        assert (await local_store.get("k", now))["status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_round_trip_preserves_fields(self, local_store, clock):
        """Test that status and result fields read back unchanged."""
        now = clock()
        record = make_record(now, status="SUCCESS", result='{"id":7,"items":["a","b"]}')
        await local_store.create_if_absent("k", record, now)
        assert await local_store.get("k", now) == record

    @pytest.mark.asyncio
    async def test_delete(self, local_store, clock):
        now = clock()
        await local_store.create_if_absent("k", make_record(now), now)
        assert await local_store.delete("k") is True
        assert await local_store.delete("k") is False
        assert await local_store.get("k", now) is None


class TestCompareAndUpdate:
    """Tests for compare_and_update."""

    @pytest.mark.asyncio
    async def test_update_when_expected_matches(self, local_store, clock):
        now = clock()
        await local_store.create_if_absent("k", make_record(now, error="boom"), now)

        updated, record = await local_store.compare_and_update(
            "k",
            {"status": "PENDING"},
            {"status": "SUCCESS", "result": "42"},
            now,
            remove=["error"],
            increments={"access_count": 1},
        )

        assert updated is True
        assert record["status"] == "SUCCESS"
        assert record["result"] == "42"
        assert "error" not in record
        assert record["access_count"] == 2

    @pytest.mark.asyncio
    async def test_mismatch_leaves_record_unchanged(self, local_store, clock):
        now = clock()
        await local_store.create_if_absent("k", make_record(now, status="SUCCESS"), now)

        updated, record = await local_store.compare_and_update(
            "k", {"status": "PENDING"}, {"status": "FAILED"}, now
        )

        assert updated is False
        assert record["status"] == "SUCCESS"
        assert (await local_store.get("k", now))["status"] == "SUCCESS"

    @pytest.mark.asyncio
    async def test_absent_or_expired(self, local_store, clock):
        now = clock()
        assert await local_store.compare_and_update("k", {}, {"a": 1}, now) == (False, None)

        await local_store.create_if_absent("k", make_record(now, ttl_ms=10), now)
        assert await local_store.compare_and_update("k", {}, {"a": 1}, now + 10) == (False, None)

    @pytest.mark.asyncio
    async def test_update_keeps_remaining_lifetime(self, local_store, clock):
        """Test that an update without a new expiry keeps the original one."""
        now = clock()
        await local_store.create_if_absent("k", make_record(now, ttl_ms=5_000), now)
        await local_store.compare_and_update("k", {}, {"status": "SUCCESS"}, now + 4_000)

        assert await local_store.get("k", now + 4_999) is not None
        assert await local_store.get("k", now + 5_000) is None

    @pytest.mark.asyncio
    async def test_new_expire_time_extends_lifetime(self, local_store, clock):
        now = clock()
        await local_store.create_if_absent("k", make_record(now, ttl_ms=5_000), now)
        await local_store.compare_and_update(
            "k", {}, {"expire_time": now + 20_000}, now + 1_000
        )
        assert await local_store.get("k", now + 10_000) is not None


class TestBounds:
    """Tests for LRU eviction, idle expiry and key locks."""

    @pytest.mark.asyncio
    async def test_lru_eviction(self, clock):
        """Test that the least recently used entry is evicted first."""
        store = LocalStore(max_entries=2, expire_after_access_seconds=3600)
        now = clock()
        await store.create_if_absent("a", make_record(now), now)
        await store.create_if_absent("b", make_record(now), now)
        await store.get("a", now)  # a becomes most recently used
        await store.create_if_absent("c", make_record(now), now)

        assert len(store) == 2
        assert len(store._locks) == 2
        assert await store.get("a", now) is not None
        assert await store.get("b", now) is None

    @pytest.mark.asyncio
    async def test_idle_expiry(self, clock):
        """Test that entries without a deadline are dropped after the idle period."""
        store = LocalStore(expire_after_access_seconds=10)
        now = clock()
        await store.create_if_absent("k", {"status": "PENDING"}, now)

        assert await store.get("k", now + 9_999) is not None
        assert await store.get("k", now + 19_998) is not None
        assert await store.get("k", now + 29_998) is None

    @pytest.mark.asyncio
    async def test_deadline_outlives_idle_period(self, clock):
        """Test that an entry with its own deadline survives long idle periods."""
        store = LocalStore(expire_after_access_seconds=10)
        now = clock()
        await store.create_if_absent("k", make_record(now, ttl_ms=86_400_000), now)

        assert await store.get("k", now + 3_601_000) is not None
        assert await store.get("k", now + 86_399_999) is not None
        assert await store.get("k", now + 86_400_000) is None

    @pytest.mark.asyncio
    async def test_long_window_state_survives_idle_period(self, clock):
        """Test that a daily window keeps counting across an idle hour."""
        store = LocalStore(expire_after_access_seconds=3600, clock=clock)
        policy = RateLimitPolicy(permits=2, window_seconds=86_400)
        now = clock()
        assert (await store.evaluate_rate_limit("daily", policy, now)).allowed is True
        assert (await store.evaluate_rate_limit("daily", policy, now)).allowed is True

        clock.advance(seconds=3601)
        assert store.cleanup() == 0
        assert (await store.evaluate_rate_limit("daily", policy, clock())).allowed is False

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_entries(self, clock):
        store = LocalStore(clock=clock)
        now = clock()
        await store.create_if_absent("short", make_record(now, ttl_ms=100), now)
        await store.create_if_absent("long", make_record(now), now)

        clock.advance(ms=100)
        assert store.cleanup() == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_lock_timeout_is_backend_failure(self, clock):
        """Test that waiting too long for a key lock fails instead of blocking."""
        store = LocalStore(lock_timeout_seconds=0.05)
        handle = await store._locks.acquire("k")
        try:
            with pytest.raises(BackendFailureError) as exc_info:
                await store.get("k", clock())
            assert exc_info.value.operation == "lock"
        finally:
            store._locks.release(handle)

        assert await store.get("k", clock()) is None

    @pytest.mark.asyncio
    async def test_lock_wait_does_not_block_event_loop(self, clock):
        """Test that other tasks keep running while a key lock is contended."""
        store = LocalStore(lock_timeout_seconds=1.0)
        handle = await store._locks.acquire("k")
        ticks = 0

        async def ticker():
            nonlocal ticks
            for _ in range(5):
                ticks += 1
                await asyncio.sleep(0)

        waiter = asyncio.create_task(store.get("k", clock()))
        await asyncio.gather(ticker(), asyncio.sleep(0.01))
        assert ticks == 5
        assert not waiter.done()

        store._locks.release(handle)
        assert await waiter is None
        assert len(store._locks) == 1

    @pytest.mark.asyncio
    async def test_cancelled_lock_wait_releases_its_claim(self, clock):
        store = LocalStore(lock_timeout_seconds=1.0)
        handle = await store._locks.acquire("k")
        waiter = asyncio.create_task(store.get("k", clock()))
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        store._locks.release(handle)

        store._locks.discard("k")
        assert len(store._locks) == 0

    @pytest.mark.asyncio
    async def test_rate_limit_state_expires_with_window(self, local_store, clock):
        """Test that window state is dropped after one window."""
        policy = RateLimitPolicy(permits=1, window_seconds=1, algorithm="FIXED_WINDOW")
        now = clock()
        assert (await local_store.evaluate_rate_limit("r", policy, now)).allowed is True
        assert len(local_store) == 1
        await local_store.evaluate_rate_limit("r", policy, now + 1_000)
        outcome = await local_store.evaluate_rate_limit("r", policy, now + 5_000, consume=False)
        assert outcome.allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_creates_single_winner(self, local_store, clock):
        now = clock()
        results = await asyncio.gather(
            *(local_store.create_if_absent("k", make_record(now, owner=i), now) for i in range(10))
        )
        assert sum(r is None for r in results) == 1
