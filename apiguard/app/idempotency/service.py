"""Idempotency gate.

State machine per key::

    ABSENT -> PENDING -> SUCCESS | FAILED  (terminal, expires back to ABSENT)

``begin`` atomically creates a PENDING record; exactly one concurrent caller
wins and owns the execution. The owner finishes it with ``complete``, which
only applies while the record is still its own PENDING record. Everyone else
observes the record and either waits (PENDING), replays the cached result
(SUCCESS) or gets the cached failure (FAILED, unless re-execution after
failure is allowed).
"""

import json
import uuid
from typing import Any, Awaitable, Callable, Mapping, Optional

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.keys import NO_PARAMS, IdempotencyKeyStrategy, KeyBuilder, fingerprint
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.metrics import GuardMetrics, get_metrics
from apiguard.app.core.result_cache import LocalResultCache, get_result_cache
from apiguard.app.exceptions import (
    BackendFailureError,
    ConfigurationError,
    IdempotentConflictError,
    IdempotentFailedError,
)
from apiguard.app.idempotency.models import (
    BeginResult,
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotentOutcome,
    OutcomeKind,
)
from apiguard.app.store import RecordStore, get_store

logger = get_logger(__name__)

GATE = "idempotency"

_UNSET = object()


class IdempotencyGate:
    """Run-at-most-once gate with result replay.

    Example:
        >>> gate = IdempotencyGate()
        >>> key = gate.build_key("orders.create", {"sku": "A1", "qty": 2}, caller="u-42")
        >>> order = await gate.execute(key, create_order, operation="orders.create")
    """

    CACHE_PREFIX = "idem"
    MAX_RESOLVE_ATTEMPTS = 3

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        clock: Clock = system_clock,
        key_builder: Optional[KeyBuilder] = None,
        result_cache: Optional[LocalResultCache] = None,
        use_result_cache: Optional[bool] = None,
        max_result_size: Optional[int] = None,
        allow_retry_on_failure: Optional[bool] = None,
        metrics: Optional[GuardMetrics] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._keys = key_builder
        self._result_cache = result_cache
        self._use_result_cache = use_result_cache
        self._max_result_size = max_result_size or settings.idempotency_max_result_size
        self._allow_retry = (
            settings.idempotency_allow_retry_on_failure
            if allow_retry_on_failure is None
            else allow_retry_on_failure
        )
        self._metrics = metrics

    @property
    def store(self) -> RecordStore:
        if self._store is None:
            self._store = get_store()
        return self._store

    @property
    def metrics(self) -> GuardMetrics:
        return self._metrics or get_metrics()

    def build_key(
        self,
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
        caller: Optional[str] = None,
        strategy: IdempotencyKeyStrategy | str = IdempotencyKeyStrategy.USER_PARAMS,
        custom_value: Optional[str] = None,
    ) -> str:
        keys = self._keys or KeyBuilder()
        return keys.idempotency_key(operation, fingerprint(params), caller, strategy, custom_value)

    def _cache(self) -> Optional[LocalResultCache]:
        enabled = settings.result_cache_enabled if self._use_result_cache is None else self._use_result_cache
        if not enabled or self.store.storage_type == "memory":
            return None
        if self._result_cache is None:
            self._result_cache = get_result_cache()
        return self._result_cache

    def _log(self, message: str, key: str, decision: str, level: str = "info") -> None:
        self.metrics.record_decision(GATE, decision)
        getattr(logger, level)(
            message,
            extra=get_log_context(
                guard_key=key, gate=GATE, decision=decision, backend=self.store.storage_type
            ),
        )

    async def begin(
        self,
        key: str,
        operation: str,
        fingerprint_value: str = NO_PARAMS,
        caller: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> BeginResult:
        """Atomically create a PENDING record unless one is live.

        Returns:
            BeginResult; ``created`` means the caller must execute and then
            call ``complete``
        """
        timeout = timeout_seconds or settings.idempotency_default_timeout
        if timeout < 1:
            raise ConfigurationError.invalid_range("timeout_seconds", timeout, ">= 1")
        now = self._clock()
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            fingerprint=fingerprint_value,
            caller=caller,
            status=IdempotencyStatus.PENDING,
            first_request_time=now,
            last_access_time=now,
            expire_time=now + timeout * 1000,
            owner_token=uuid.uuid4().hex,
        )
        existing = await self.store.create_if_absent(key, record.to_dict(), now)
        if existing is None:
            return BeginResult(created=True, record=record)
        return BeginResult(created=False, record=IdempotencyRecord.from_dict(existing))

    def _serialize_result(self, key: str, result: Any) -> Optional[str]:
        """Serialize a result for caching; ``None`` means status only."""
        try:
            text = json.dumps(result, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logger.warning(
                f"Result is not serializable, recording status only: {e}",
                extra=get_log_context(guard_key=key, gate=GATE),
            )
            return None
        size = len(text.encode("utf-8"))
        if size > self._max_result_size:
            logger.warning(
                f"Result of {size} bytes exceeds {self._max_result_size}, recording status only",
                extra=get_log_context(guard_key=key, gate=GATE),
            )
            return None
        return text

    async def complete(
        self,
        key: str,
        status: IdempotencyStatus | str,
        result: Any = _UNSET,
        error: Optional[str] = None,
        owner_token: Optional[str] = None,
    ) -> bool:
        """Move a PENDING record to SUCCESS or FAILED.

        The original lifetime is preserved. On SUCCESS the result is cached
        when it serializes within the size limit; either way the status is
        recorded. With ``owner_token`` the update applies only to the record
        created by that execution.

        Returns:
            True if the record was updated, False if it was no longer
            PENDING (or not ours, or expired)
        """
        status = IdempotencyStatus(status)
        if not status.is_terminal:
            raise ConfigurationError.invalid_parameter("status", status.value, "must be SUCCESS or FAILED")

        now = self._clock()
        changes: dict[str, Any] = {"status": status.value, "last_access_time": now}
        if status is IdempotencyStatus.SUCCESS:
            serialized = None if result is _UNSET else self._serialize_result(key, result)
            if serialized is not None:
                changes["result"] = serialized
                remove = ["error"]
            else:
                remove = ["error", "result"]
        else:
            changes["error"] = error or "unknown error"
            remove = ["result"]

        expected: dict[str, Any] = {"status": IdempotencyStatus.PENDING.value}
        if owner_token is not None:
            expected["owner_token"] = owner_token

        updated, stored = await self.store.compare_and_update(
            key, expected, changes, now, remove=remove, increments={"access_count": 1}
        )
        if not updated:
            logger.warning(
                f"Cannot complete {key} as {status.value}: record is "
                f"{'absent' if stored is None else stored.get('status')}",
                extra=get_log_context(guard_key=key, gate=GATE, decision="complete_rejected"),
            )
            return False

        self.metrics.record_decision(GATE, status.value.lower())
        if status is IdempotencyStatus.SUCCESS and stored is not None:
            self._remember(IdempotencyRecord.from_dict(stored))
        return True

    def _remember(self, record: IdempotencyRecord) -> None:
        cache = self._cache()
        if cache is not None and record.status is IdempotencyStatus.SUCCESS:
            cache.put(f"{self.CACHE_PREFIX}|{record.key}", record, expires_at=record.expire_time)

    def _cached_success(self, key: str) -> Optional[IdempotencyRecord]:
        cache = self._cache()
        if cache is None:
            return None
        record = cache.get(f"{self.CACHE_PREFIX}|{key}")
        if record is None or record.expire_time <= self._clock():
            return None
        return record

    def _replay(self, record: IdempotencyRecord, from_cache: bool = False) -> IdempotentOutcome:
        try:
            value = record.result_value()
        except ValueError as e:
            raise BackendFailureError(
                "decode_result", record.key, cause=e, detail=f"Malformed cached result under {record.key}"
            ) from e
        self._log(
            f"Replaying result of {record.operation} (cached body: {record.has_result})",
            record.key,
            "replay",
        )
        return IdempotentOutcome(
            kind=OutcomeKind.REPLAY,
            record=record,
            has_result=record.has_result,
            result=value,
            from_cache=from_cache,
        )

    async def _retake(self, record: IdempotencyRecord, timeout: int) -> Optional[IdempotencyRecord]:
        """Atomically turn a FAILED record into a fresh PENDING one we own."""
        now = self._clock()
        token = uuid.uuid4().hex
        updated, stored = await self.store.compare_and_update(
            record.key,
            {"status": IdempotencyStatus.FAILED.value, "owner_token": record.owner_token},
            {
                "status": IdempotencyStatus.PENDING.value,
                "first_request_time": now,
                "last_access_time": now,
                "expire_time": now + timeout * 1000,
                "owner_token": token,
            },
            now,
            remove=["error", "result"],
            increments={"access_count": 1},
        )
        if not updated or stored is None:
            return None
        return IdempotencyRecord.from_dict(stored)

    async def resolve(
        self,
        key: str,
        operation: str,
        fingerprint_value: str = NO_PARAMS,
        caller: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        allow_retry_on_failure: Optional[bool] = None,
    ) -> IdempotentOutcome:
        """Decide what the caller should do for ``key``.

        Combines ``begin`` with the replay rules. A FAILED record is either
        reported (FAILED) or, when re-execution after failure is allowed,
        atomically retaken so exactly one caller re-executes.
        """
        timeout = timeout_seconds or settings.idempotency_default_timeout
        allow_retry = self._allow_retry if allow_retry_on_failure is None else allow_retry_on_failure

        record: Optional[IdempotencyRecord] = None
        for _ in range(self.MAX_RESOLVE_ATTEMPTS):
            cached = self._cached_success(key)
            if cached is not None:
                return self._replay(cached, from_cache=True)

            begun = await self.begin(key, operation, fingerprint_value, caller, timeout)
            record = begun.record
            if begun.created:
                self._log(f"Started {operation}", key, "created", level="debug")
                return IdempotentOutcome(kind=OutcomeKind.CREATED, record=record)

            if record.status is IdempotencyStatus.PENDING:
                break
            if record.status is IdempotencyStatus.SUCCESS:
                self._remember(record)
                return self._replay(record)

            if not allow_retry:
                self._log(f"Previous {operation} failed: {record.error}", key, "failed")
                return IdempotentOutcome(kind=OutcomeKind.FAILED, record=record, error=record.error)

            retaken = await self._retake(record, timeout)
            if retaken is not None:
                self._log(f"Re-executing {operation} after failure", key, "retaken")
                return IdempotentOutcome(kind=OutcomeKind.CREATED, record=retaken)
            # Another caller retook it or it expired meanwhile; look again

        self._log(f"{operation} already in progress", key, "pending")
        return IdempotentOutcome(kind=OutcomeKind.PENDING, record=record)

    async def execute(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        operation: str,
        fingerprint_value: str = NO_PARAMS,
        caller: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        allow_retry_on_failure: Optional[bool] = None,
        message: Optional[str] = None,
    ) -> Any:
        """Run ``fn`` at most once for ``key`` and replay its result.

        Raises:
            IdempotentConflictError: Execution in flight, or succeeded
                without a cached result
            IdempotentFailedError: Previous execution failed and
                re-execution is not allowed
        """
        outcome = await self.resolve(
            key, operation, fingerprint_value, caller, timeout_seconds, allow_retry_on_failure
        )
        record = outcome.record

        if outcome.kind is OutcomeKind.CREATED:
            try:
                result = await fn()
            except Exception as e:
                detail = str(e) or type(e).__name__
                try:
                    await self.complete(key, IdempotencyStatus.FAILED, error=detail, owner_token=record.owner_token)
                except BackendFailureError as store_error:
                    logger.error(
                        f"Could not record failure of {operation}: {store_error.message}",
                        extra=get_log_context(guard_key=key, gate=GATE, decision="backend_failure"),
                    )
                raise
            await self.complete(key, IdempotencyStatus.SUCCESS, result=result, owner_token=record.owner_token)
            return result

        if outcome.kind is OutcomeKind.PENDING:
            raise IdempotentConflictError(key, record.status.value, record.first_request_time, message)
        if outcome.kind is OutcomeKind.REPLAY:
            if outcome.has_result:
                return outcome.result
            raise IdempotentConflictError(key, record.status.value, record.first_request_time, message)
        raise IdempotentFailedError(key, outcome.error, record.first_request_time, message)

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        stored = await self.store.get(key, self._clock())
        return None if stored is None else IdempotencyRecord.from_dict(stored)

    async def delete_record(self, key: str) -> bool:
        """Remove a record regardless of status (administrative)."""
        cache = self._result_cache or get_result_cache()
        cache.invalidate(f"{self.CACHE_PREFIX}|{key}")
        return await self.store.delete(key)
