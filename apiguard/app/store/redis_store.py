"""Redis record store for multi-instance deployments.

Every state-changing operation is a single Lua script (see ``redis_lua``),
so the check and the mutation are atomic across all instances sharing the
Redis server. Redis errors, timeouts and malformed payloads are reported as
``BackendFailureError``.
"""

import asyncio
import json
import time
import uuid
from typing import Any, Iterable, Mapping, Optional

import redis
import redis.asyncio as aioredis

from apiguard.app.core.config import settings
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.metrics import get_metrics
from apiguard.app.exceptions import BackendFailureError
from apiguard.app.ratelimit import algorithms
from apiguard.app.ratelimit.models import (
    RateLimitAlgorithm,
    RateLimitOutcome,
    RateLimitPolicy,
)
from apiguard.app.store.base import EXPIRE_TIME_FIELD, Record, RecordStore, is_expired
from apiguard.app.store.redis_lua import (
    COMPARE_AND_UPDATE_SCRIPT,
    CREATE_IF_ABSENT_SCRIPT,
    FIXED_WINDOW_SCRIPT,
    LEAKY_BUCKET_SCRIPT,
    SLIDING_WINDOW_SCRIPT,
    TOKEN_BUCKET_SCRIPT,
)

logger = get_logger(__name__)

REDIS_EXCEPTIONS = (redis.RedisError, asyncio.TimeoutError, OSError)


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisStore(RecordStore):
    """Distributed record store backed by Redis Lua scripts.

    The client is created lazily on first use and shared by every gate; it
    can be injected for tests.
    """

    storage_type = "redis"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        operation_timeout: Optional[float] = None,
        bucket_state_ttl_seconds: Optional[int] = None,
    ) -> None:
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._timeout = operation_timeout or settings.store_operation_timeout
        self._bucket_ttl_seconds = bucket_state_ttl_seconds or settings.bucket_state_ttl_seconds

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_timeout,
            )
        return self._redis

    async def _call(self, operation: str, key: Optional[str], coro_factory) -> Any:
        """Run one Redis call under the operation timeout."""
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(coro_factory(self._get_redis()), timeout=self._timeout)
        except REDIS_EXCEPTIONS as e:
            logger.warning(
                f"Redis {operation} failed: {e!r}",
                extra=get_log_context(guard_key=key, backend=self.storage_type),
            )
            get_metrics().record_backend_failure(operation)
            raise BackendFailureError(operation, key, cause=e) from e
        finally:
            elapsed = time.perf_counter() - start
            get_metrics().record_store_call(elapsed)
            logger.debug(
                f"Redis {operation} took {elapsed * 1000:.2f}ms",
                extra=get_log_context(guard_key=key, backend=self.storage_type),
            )

    async def _eval(self, operation: str, script: str, key: str, *args: Any) -> Any:
        return await self._call(
            operation, key, lambda client: client.eval(script, 1, key, *args)
        )

    @staticmethod
    def _parse_record(operation: str, key: str, raw: Any) -> Record:
        try:
            record = json.loads(_decode(raw))
        except (TypeError, ValueError) as e:
            raise BackendFailureError(
                operation, key, cause=e, detail=f"Malformed record stored under {key}"
            ) from e
        if not isinstance(record, dict):
            raise BackendFailureError(
                operation, key, detail=f"Malformed record stored under {key}"
            )
        return record

    @staticmethod
    def _encode(operation: str, key: str, value: Any) -> str:
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            get_metrics().record_backend_failure(operation)
            raise BackendFailureError(operation, key, cause=e) from e

    async def evaluate_rate_limit(
        self, key: str, policy: RateLimitPolicy, now_ms: int, consume: bool = True
    ) -> RateLimitOutcome:
        flag = "1" if consume else "0"
        algorithm = policy.algorithm
        if algorithm is RateLimitAlgorithm.SLIDING_WINDOW:
            # Unique member so two requests in the same millisecond both count
            member = f"{now_ms}-{uuid.uuid4().hex}"
            raw = await self._eval(
                "sliding_window", SLIDING_WINDOW_SCRIPT, key,
                now_ms, policy.window_ms, policy.permits, flag, member,
            )
        elif algorithm is RateLimitAlgorithm.FIXED_WINDOW:
            raw = await self._eval(
                "fixed_window", FIXED_WINDOW_SCRIPT, key,
                now_ms, policy.window_ms, policy.permits, flag,
            )
        else:
            ttl_ms = algorithms.state_ttl_ms(policy, self._bucket_ttl_seconds)
            script = TOKEN_BUCKET_SCRIPT if algorithm is RateLimitAlgorithm.TOKEN_BUCKET else LEAKY_BUCKET_SCRIPT
            raw = await self._eval(
                algorithm.value.lower(), script, key,
                now_ms, policy.capacity, repr(policy.rate), flag, ttl_ms,
            )

        try:
            allowed, level, index = raw
            return RateLimitOutcome(
                allowed=int(allowed) == 1,
                level=float(_decode(level)),
                window_index=int(index) if algorithm is RateLimitAlgorithm.FIXED_WINDOW else None,
            )
        except (TypeError, ValueError) as e:
            raise BackendFailureError(
                "rate_limit", key, cause=e, detail=f"Unexpected script reply: {raw!r}"
            ) from e

    async def create_if_absent(self, key: str, record: Record, now_ms: int) -> Optional[Record]:
        ttl_ms = self._ttl_from_record(record, now_ms)
        raw = await self._eval(
            "create_if_absent", CREATE_IF_ABSENT_SCRIPT, key,
            self._encode("create_if_absent", key, record), ttl_ms, now_ms,
        )
        if raw is None:
            return None
        return self._parse_record("create_if_absent", key, raw)

    async def get(self, key: str, now_ms: int) -> Optional[Record]:
        raw = await self._call("get", key, lambda client: client.get(key))
        if raw is None:
            return None
        record = self._parse_record("get", key, raw)
        return None if is_expired(record, now_ms) else record

    async def compare_and_update(
        self,
        key: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
        now_ms: int,
        remove: Iterable[str] = (),
        increments: Optional[Mapping[str, int]] = None,
        ttl_ms: Optional[int] = None,
    ) -> tuple[bool, Optional[Record]]:
        if ttl_ms is None and EXPIRE_TIME_FIELD in changes:
            ttl_ms = self._ttl_from_record(changes, now_ms)
        raw = await self._eval(
            "compare_and_update", COMPARE_AND_UPDATE_SCRIPT, key,
            now_ms,
            self._encode("compare_and_update", key, dict(expected)),
            self._encode("compare_and_update", key, dict(changes)),
            self._encode("compare_and_update", key, list(remove)),
            self._encode("compare_and_update", key, dict(increments or {})),
            max(0, ttl_ms or 0),
        )
        if not raw or len(raw) < 2 or raw[1] is None:
            return False, None
        return int(raw[0]) == 1, self._parse_record("compare_and_update", key, raw[1])

    async def delete(self, key: str) -> bool:
        deleted = await self._call("delete", key, lambda client: client.delete(key))
        return bool(deleted)

    async def ping(self) -> bool:
        return bool(await self._call("ping", None, lambda client: client.ping()))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _ttl_from_record(record: Mapping[str, Any], now_ms: int) -> int:
        expire_time = record.get(EXPIRE_TIME_FIELD)
        if expire_time is None:
            return settings.idempotency_default_timeout * 1000
        return max(1, int(expire_time) - now_ms)
