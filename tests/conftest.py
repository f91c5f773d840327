"""Shared fixtures."""

import json
from unittest.mock import MagicMock

import pytest

from apiguard.app.core.clock import ManualClock
from apiguard.app.core.metrics import reset_metrics
from apiguard.app.core.result_cache import reset_result_cache
from apiguard.app.store import LocalStore, reset_store
from apiguard.app.store.redis_lua import (
    COMPARE_AND_UPDATE_SCRIPT,
    CREATE_IF_ABSENT_SCRIPT,
    FIXED_WINDOW_SCRIPT,
)

# First millisecond of a 30s window: 1_700_000_010_000 % 30_000 == 0
START_MS = 1_700_000_010_000


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_store()
    reset_result_cache()
    reset_metrics()
    yield
    reset_store()
    reset_result_cache()
    reset_metrics()


@pytest.fixture
def clock():
    return ManualClock(START_MS)


@pytest.fixture
def local_store():
    return LocalStore(
        max_entries=1000,
        expire_after_access_seconds=3600,
        lock_timeout_seconds=1.0,
        bucket_state_ttl_seconds=3600,
    )


@pytest.fixture
def mock_redis():
    """Create a mock Redis client recording ``eval`` calls.

    String records, fixed window counters and the JSON record scripts are
    simulated on a plain dict so gate logic can run end to end without a
    server. Each call is recorded in ``redis.calls`` as
    ``(script, numkeys, args)``.
    """
    redis = MagicMock()
    redis.data = {}
    redis.calls = []

    async def mock_eval(script, num_keys, *args):
        redis.calls.append((script, num_keys, args))
        key = args[0]
        if script == CREATE_IF_ABSENT_SCRIPT:
            record, _ttl, now = args[1], args[2], int(args[3])
            existing = redis.data.get(key)
            if existing is not None:
                expire_time = json.loads(existing).get("expire_time")
                if expire_time is None or int(expire_time) > now:
                    return existing
            redis.data[key] = record
            return None
        if script == COMPARE_AND_UPDATE_SCRIPT:
            now = int(args[1])
            expected, changes = json.loads(args[2]), json.loads(args[3])
            remove, increments = json.loads(args[4]), json.loads(args[5])
            existing = redis.data.get(key)
            if existing is None:
                return [0]
            record = json.loads(existing)
            if record.get("expire_time") is not None and int(record["expire_time"]) <= now:
                return [0]
            if any(record.get(k) != v for k, v in expected.items()):
                return [0, existing]
            record.update(changes)
            for field in remove:
                record.pop(field, None)
            for field, delta in increments.items():
                record[field] = int(record.get(field) or 0) + delta
            redis.data[key] = json.dumps(record)
            return [1, redis.data[key]]
        if script == FIXED_WINDOW_SCRIPT:
            now, window_ms, permits, consume = int(args[1]), int(args[2]), int(args[3]), args[4] == "1"
            index = now // window_ms
            w, c = redis.data.get(key, (None, 0))
            count = c if w == index else 0
            allowed = count + 1 <= permits
            if allowed and consume:
                count += 1
                redis.data[key] = (index, count)
            return [1 if allowed else 0, str(count), index]
        raise AssertionError("unexpected script")

    async def mock_get(key):
        value = redis.data.get(key)
        return value if isinstance(value, str) else None

    async def mock_delete(key):
        return 1 if redis.data.pop(key, None) is not None else 0

    async def mock_ping():
        return True

    async def mock_aclose():
        return None

    redis.eval = mock_eval
    redis.get = mock_get
    redis.delete = mock_delete
    redis.ping = mock_ping
    redis.aclose = mock_aclose
    return redis
