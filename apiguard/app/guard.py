"""Policy-driven protection for named operations.

``OperationGuard`` looks up an operation's ``OperationPolicy`` in a
``PolicyRegistry``, derives the gate key for the policy's dimension and runs
the gate on the store named by the policy's ``storage_backend``. Operations
without a backend use the configured default store.

Example:
    >>> registry = PolicyRegistry()
    >>> registry.load_file("policies.json")
    >>> guard = OperationGuard(registry)
    >>> await guard.rate_limit("orders.create", identity="u-42")
    >>> order = await guard.idempotent("orders.create", create_order, params=body, caller="u-42")
"""

from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.keys import IdempotencyKeyStrategy, KeyBuilder, fingerprint
from apiguard.app.core.metrics import GuardMetrics
from apiguard.app.core.policies import OperationPolicy, PolicyRegistry
from apiguard.app.duplicate.models import DuplicateSubmitMarker
from apiguard.app.duplicate.service import DuplicateSubmitGate
from apiguard.app.idempotency.service import IdempotencyGate
from apiguard.app.ratelimit.engine import RateLimitEngine, combine_checks, raise_if_denied
from apiguard.app.ratelimit.models import (
    CombineStrategy,
    MultiRateLimitResult,
    RateLimitCheck,
    RateLimitResult,
)
from apiguard.app.store import RecordStore, get_store


class OperationGuard:
    """Runs the gates for registered operations.

    Gates are created lazily, one set per storage backend, so operations on
    the same backend share state and operations on different backends never
    see each other's keys.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        clock: Clock = system_clock,
        key_builder: Optional[KeyBuilder] = None,
        stores: Optional[Mapping[str, RecordStore]] = None,
        metrics: Optional[GuardMetrics] = None,
    ) -> None:
        self.registry = registry
        self._clock = clock
        self._keys = key_builder or KeyBuilder()
        self._stores = dict(stores or {})
        self._metrics = metrics
        self._engines: dict[str, RateLimitEngine] = {}
        self._idempotency_gates: dict[str, IdempotencyGate] = {}
        self._duplicate_gates: dict[str, DuplicateSubmitGate] = {}

    @staticmethod
    def backend_for(policy: OperationPolicy) -> str:
        return (policy.storage_backend or settings.storage_backend).lower()

    def store_for(self, policy: OperationPolicy) -> RecordStore:
        backend = self.backend_for(policy)
        if backend not in self._stores:
            self._stores[backend] = get_store(backend)
        return self._stores[backend]

    def engine_for(self, policy: OperationPolicy) -> RateLimitEngine:
        backend = self.backend_for(policy)
        if backend not in self._engines:
            self._engines[backend] = RateLimitEngine(
                store=self.store_for(policy), clock=self._clock, metrics=self._metrics
            )
        return self._engines[backend]

    def idempotency_gate_for(self, policy: OperationPolicy) -> IdempotencyGate:
        backend = self.backend_for(policy)
        if backend not in self._idempotency_gates:
            self._idempotency_gates[backend] = IdempotencyGate(
                store=self.store_for(policy),
                clock=self._clock,
                key_builder=self._keys,
                metrics=self._metrics,
            )
        return self._idempotency_gates[backend]

    def duplicate_gate_for(self, policy: OperationPolicy) -> DuplicateSubmitGate:
        backend = self.backend_for(policy)
        if backend not in self._duplicate_gates:
            self._duplicate_gates[backend] = DuplicateSubmitGate(
                store=self.store_for(policy),
                clock=self._clock,
                key_builder=self._keys,
                metrics=self._metrics,
            )
        return self._duplicate_gates[backend]

    def _rate_limit_check(
        self, operation: str, identity: Optional[str]
    ) -> tuple[RateLimitCheck, OperationPolicy]:
        policy = self.registry.get(operation)
        key = self._keys.rate_limit_key(operation, policy.dimension, identity)
        return RateLimitCheck(key, policy.rate_limit_policy(), policy.dimension.value), policy

    async def rate_limit(self, operation: str, identity: Optional[str] = None) -> RateLimitResult:
        """Consume one permit for ``operation``.

        Args:
            operation: Registered operation name
            identity: Resolved value of the policy's dimension (user id, IP
                or custom value); unused for API and GLOBAL

        Raises:
            RateLimitExceededError: The limit denied the request
            ConfigurationError: No policy for the operation
        """
        check, policy = self._rate_limit_check(operation, identity)
        return await self.engine_for(policy).check_or_raise(
            check.key, check.policy, check.dimension, policy.message
        )

    async def rate_limit_all(
        self,
        operations: Iterable[str | tuple[str, Optional[str]]],
        strategy: CombineStrategy | str = CombineStrategy.AND,
        short_circuit: bool = True,
        message: Optional[str] = None,
    ) -> MultiRateLimitResult:
        """Apply several operation limits to one request.

        Each item is an operation name or an ``(operation, identity)`` pair;
        every limit runs on its own policy's backend.

        Raises:
            RateLimitExceededError: The combined decision denied the request
        """
        engines: dict[RateLimitCheck, RateLimitEngine] = {}
        checks = []
        for item in operations:
            operation, identity = (item, None) if isinstance(item, str) else item
            check, policy = self._rate_limit_check(operation, identity)
            engines[check] = self.engine_for(policy)
            checks.append(check)

        async def run(check: RateLimitCheck) -> RateLimitResult:
            return await engines[check].check(check.key, check.policy, check.dimension)

        return raise_if_denied(await combine_checks(checks, run, strategy, short_circuit), message)

    async def idempotent(
        self,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        params: Optional[Mapping[str, Any]] = None,
        caller: Optional[str] = None,
        key_strategy: IdempotencyKeyStrategy | str = IdempotencyKeyStrategy.USER_PARAMS,
        custom_value: Optional[str] = None,
    ) -> Any:
        """Run ``fn`` at most once per the operation's idempotency policy.

        The policy supplies the record lifetime (``timeout_seconds``), the
        re-execution rule after failure and the conflict message.
        """
        policy = self.registry.get(operation)
        gate = self.idempotency_gate_for(policy)
        key = gate.build_key(operation, params, caller, key_strategy, custom_value)
        return await gate.execute(
            key,
            fn,
            operation=operation,
            fingerprint_value=fingerprint(params),
            caller=caller,
            timeout_seconds=policy.timeout_seconds,
            allow_retry_on_failure=policy.allow_retry_on_failure,
            message=policy.message,
        )

    async def prevent_duplicate(
        self,
        operation: str,
        identity: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> DuplicateSubmitMarker:
        """Accept the first submission of ``operation`` within its interval.

        Raises:
            DuplicateSubmitError: A live marker exists for the key
        """
        policy = self.registry.get(operation)
        key = self._keys.duplicate_submit_key(operation, policy.dimension, identity)
        return await self.duplicate_gate_for(policy).acquire_or_raise(
            key,
            interval_seconds=policy.interval_seconds,
            operation=operation,
            caller=caller or identity,
            message=policy.message,
        )

    async def release_duplicate(self, operation: str, identity: Optional[str] = None) -> bool:
        """Drop the operation's duplicate marker, e.g. after the handler failed."""
        policy = self.registry.get(operation)
        key = self._keys.duplicate_submit_key(operation, policy.dimension, identity)
        return await self.duplicate_gate_for(policy).release(key)
