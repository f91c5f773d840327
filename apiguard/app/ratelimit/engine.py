"""Rate limit engine.

Runs a check for a key against the configured store and builds the
caller-facing result. Backend failures are never turned into decisions: they
propagate as ``BackendFailureError`` so the caller chooses fail-open or
fail-closed (see ``allow_on_backend_failure``).
"""

import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.metrics import GuardMetrics, get_metrics
from apiguard.app.core.result_cache import LocalResultCache, get_result_cache
from apiguard.app.exceptions import BackendFailureError, RateLimitExceededError
from apiguard.app.ratelimit.algorithms import build_result
from apiguard.app.ratelimit.models import (
    CombineStrategy,
    MultiRateLimitResult,
    RateLimitCheck,
    RateLimitPolicy,
    RateLimitResult,
)
from apiguard.app.store import RecordStore, get_store

logger = get_logger(__name__)

GATE = "rate_limit"


async def combine_checks(
    checks: Iterable[RateLimitCheck | tuple],
    run: Callable[[RateLimitCheck], Awaitable[RateLimitResult]],
    strategy: CombineStrategy | str = CombineStrategy.AND,
    short_circuit: bool = True,
) -> MultiRateLimitResult:
    """Run limits in order and combine their decisions.

    With ``short_circuit`` evaluation stops as soon as the outcome is known:
    at the first denial for AND, at the first allowed check for OR. Without
    it every limit is run.

    Args:
        checks: ``RateLimitCheck`` items or ``(key, policy[, dimension])`` tuples
        run: Performs one check
        strategy: AND (all must allow) or OR (one is enough)
        short_circuit: Stop once the combined outcome is decided

    Returns:
        MultiRateLimitResult; an empty list of checks is allowed
    """
    strategy = CombineStrategy.parse(strategy)
    items = [c if isinstance(c, RateLimitCheck) else RateLimitCheck(*c) for c in checks]
    if not items:
        return MultiRateLimitResult(allowed=True, strategy=strategy)

    evaluated: list[tuple[RateLimitCheck, RateLimitResult]] = []
    for item in items:
        result = await run(item)
        evaluated.append((item, result))
        decided = result.allowed if strategy is CombineStrategy.OR else not result.allowed
        if short_circuit and decided:
            break

    outcomes = [result.allowed for _, result in evaluated]
    allowed = all(outcomes) if strategy is CombineStrategy.AND else any(outcomes)
    if allowed:
        deciding_check, deciding = min(
            ((c, r) for c, r in evaluated if r.allowed), key=lambda pair: pair[1].remaining_permits
        )
    else:
        deciding_check, deciding = next((c, r) for c, r in evaluated if not r.allowed)
    return MultiRateLimitResult(
        allowed=allowed,
        strategy=strategy,
        results=[result for _, result in evaluated],
        deciding=deciding,
        deciding_check=deciding_check,
    )


def raise_if_denied(combined: MultiRateLimitResult, message: Optional[str] = None) -> MultiRateLimitResult:
    """Raise ``RateLimitExceededError`` for the deciding denial of a combined check."""
    if not combined.allowed:
        raise RateLimitExceededError(
            combined.deciding,
            window_seconds=combined.deciding_check.policy.window_seconds,
            message=message,
        )
    return combined


class RateLimitEngine:
    """Rate limit checks over a record store.

    Example:
        >>> engine = RateLimitEngine()
        >>> policy = RateLimitPolicy(permits=5, window_seconds=30, algorithm="FIXED_WINDOW")
        >>> result = await engine.check("apiguard:rate:api:orders.create", policy)
    """

    CACHE_PREFIX = "rate"

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        clock: Clock = system_clock,
        result_cache: Optional[LocalResultCache] = None,
        use_result_cache: Optional[bool] = None,
        metrics: Optional[GuardMetrics] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._result_cache = result_cache
        self._use_result_cache = use_result_cache
        self._metrics = metrics

    @property
    def store(self) -> RecordStore:
        if self._store is None:
            self._store = get_store()
        return self._store

    @property
    def metrics(self) -> GuardMetrics:
        return self._metrics or get_metrics()

    def _cache(self) -> Optional[LocalResultCache]:
        """Cache for allowed status snapshots, only in front of a distributed store."""
        enabled = settings.result_cache_enabled if self._use_result_cache is None else self._use_result_cache
        if not enabled or self.store.storage_type == "memory":
            return None
        if self._result_cache is None:
            self._result_cache = get_result_cache()
        return self._result_cache

    def _cache_key(self, key: str, policy: RateLimitPolicy) -> str:
        return (
            f"{self.CACHE_PREFIX}|{key}|{policy.algorithm.value}|{policy.permits}|"
            f"{policy.window_seconds}|{policy.capacity}|{policy.rate}"
        )

    async def check(
        self,
        key: str,
        policy: RateLimitPolicy,
        dimension: Optional[str] = None,
    ) -> RateLimitResult:
        """Check and consume one permit.

        Args:
            key: Rate limit key
            policy: Limit parameters
            dimension: Dimension name, echoed in the result

        Returns:
            RateLimitResult with allowed status and metadata

        Raises:
            BackendFailureError: The store could not decide
        """
        cache = self._cache()
        if cache is not None:
            cache.invalidate(self._cache_key(key, policy))
        return await self._evaluate(key, policy, dimension, consume=True)

    async def status(
        self,
        key: str,
        policy: RateLimitPolicy,
        dimension: Optional[str] = None,
    ) -> RateLimitResult:
        """Report the current state of a key without consuming a permit.

        In front of a distributed store, allowed snapshots may be served from
        the local result cache for its short lifetime. Denied snapshots are
        never cached, and any check through this engine drops the snapshot.
        """
        cache = self._cache()
        cache_key = self._cache_key(key, policy)
        if cache is not None:
            cached = cache.get(cache_key)
            if cached is not None:
                return cached
        result = await self._evaluate(key, policy, dimension, consume=False)
        if cache is not None and result.allowed:
            cache.put(cache_key, result)
        return result

    async def check_or_raise(
        self,
        key: str,
        policy: RateLimitPolicy,
        dimension: Optional[str] = None,
        message: Optional[str] = None,
    ) -> RateLimitResult:
        """Check a key and raise ``RateLimitExceededError`` when denied."""
        result = await self.check(key, policy, dimension)
        if not result.allowed:
            raise RateLimitExceededError(result, window_seconds=policy.window_seconds, message=message)
        return result

    async def check_all(
        self,
        checks: Iterable[RateLimitCheck | tuple],
        strategy: CombineStrategy | str = CombineStrategy.AND,
        short_circuit: bool = True,
    ) -> MultiRateLimitResult:
        """Check several limits for one request and combine the decisions.

        Each check consumes a permit from its own key; see ``combine_checks``
        for the evaluation order.
        """
        return await combine_checks(
            checks, lambda c: self.check(c.key, c.policy, c.dimension), strategy, short_circuit
        )

    async def check_all_or_raise(
        self,
        checks: Iterable[RateLimitCheck | tuple],
        strategy: CombineStrategy | str = CombineStrategy.AND,
        short_circuit: bool = True,
        message: Optional[str] = None,
    ) -> MultiRateLimitResult:
        """Combined check raising ``RateLimitExceededError`` for the first denial."""
        return raise_if_denied(await self.check_all(checks, strategy, short_circuit), message)

    async def _evaluate(
        self, key: str, policy: RateLimitPolicy, dimension: Optional[str], consume: bool
    ) -> RateLimitResult:
        now = self._clock()
        start = time.perf_counter()
        try:
            outcome = await self.store.evaluate_rate_limit(key, policy, now, consume)
        except BackendFailureError:
            self.metrics.record_decision(GATE, "backend_failure")
            logger.error(
                "Rate limit check failed",
                extra=get_log_context(
                    guard_key=key,
                    gate=GATE,
                    decision="backend_failure",
                    backend=self.store.storage_type,
                    algorithm=policy.algorithm.value,
                ),
            )
            raise

        result = build_result(policy, outcome, now, key=key, dimension=dimension)
        if consume:
            decision = "allowed" if result.allowed else "denied"
            self.metrics.record_decision(GATE, decision)
            if not result.allowed:
                logger.info(
                    f"Rate limit exceeded: {result.total_permits} per {policy.window_seconds}s, "
                    f"retry after {result.retry_after_seconds}s",
                    extra=get_log_context(
                        guard_key=key,
                        gate=GATE,
                        decision=decision,
                        backend=self.store.storage_type,
                        algorithm=policy.algorithm.value,
                        duration_ms=round((time.perf_counter() - start) * 1000, 2),
                    ),
                )
        return result

    async def reset_rate_limit(self, key: str) -> bool:
        """Atomically clear one key's state, including cached snapshots.

        Returns:
            True if state existed
        """
        cache = self._result_cache or get_result_cache()
        cache.invalidate_prefix(f"{self.CACHE_PREFIX}|{key}|")
        deleted = await self.store.delete(key)
        logger.info(
            f"Rate limit reset for {key} (existed={deleted})",
            extra=get_log_context(guard_key=key, gate=GATE, decision="reset"),
        )
        return deleted

    async def health(self) -> dict[str, Any]:
        """Probe backend reachability."""
        start = time.perf_counter()
        try:
            await self.store.ping()
        except BackendFailureError as e:
            return {
                "status": "unhealthy",
                "storage_type": self.store.storage_type,
                "error": e.message,
            }
        return {
            "status": "healthy",
            "storage_type": self.store.storage_type,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }

    @staticmethod
    def allow_on_backend_failure(policy: RateLimitPolicy, key: Optional[str] = None) -> RateLimitResult:
        """Result to use when the store is down.

        Allows the request (fail-open) unless ``rate_limit_fail_closed`` is
        set, in which case the request is denied.
        """
        allowed = not settings.rate_limit_fail_closed
        return RateLimitResult(
            allowed=allowed,
            remaining_permits=0,
            total_permits=policy.capacity,
            retry_after_seconds=None if allowed else 1,
            algorithm=policy.algorithm.value,
            key=key,
        )
