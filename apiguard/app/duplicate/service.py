"""Duplicate submission gate.

A reduced idempotency gate: the first call within the interval creates a
marker, and the marker's presence alone rejects every repeat until it
expires. There is no completion step and no result replay.
"""

from typing import Optional

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.keys import Dimension, KeyBuilder
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.metrics import GuardMetrics, get_metrics
from apiguard.app.duplicate.models import (
    DuplicateSubmitMarker,
    DuplicateSubmitOutcome,
    SubmitDecision,
)
from apiguard.app.exceptions import ConfigurationError, DuplicateSubmitError
from apiguard.app.store import RecordStore, get_store

logger = get_logger(__name__)

GATE = "duplicate_submit"


class DuplicateSubmitGate:
    """Suppress repeats of the same submission within an interval."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        clock: Clock = system_clock,
        key_builder: Optional[KeyBuilder] = None,
        metrics: Optional[GuardMetrics] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._keys = key_builder
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
        dimension: Dimension | str = Dimension.USER,
        identity: Optional[str] = None,
    ) -> str:
        return (self._keys or KeyBuilder()).duplicate_submit_key(operation, dimension, identity)

    async def try_acquire(
        self,
        key: str,
        interval_seconds: Optional[int] = None,
        operation: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> DuplicateSubmitOutcome:
        """Atomically create the marker unless one is live.

        A rejection leaves the existing marker untouched, so the interval is
        always measured from the first accepted submission.
        """
        interval = interval_seconds or settings.duplicate_submit_default_interval
        if interval < 1:
            raise ConfigurationError.invalid_range("interval_seconds", interval, ">= 1")

        now = self._clock()
        marker = DuplicateSubmitMarker(
            key=key,
            created_at=now,
            interval_seconds=interval,
            expire_time=now + interval * 1000,
            operation=operation,
            caller=caller,
        )
        existing = await self.store.create_if_absent(key, marker.to_dict(), now)
        if existing is None:
            self.metrics.record_decision(GATE, "acquired")
            return DuplicateSubmitOutcome(SubmitDecision.ACQUIRED, marker)

        blocking = DuplicateSubmitMarker.from_dict(existing)
        retry_after = blocking.retry_after_seconds(now)
        self.metrics.record_decision(GATE, "rejected")
        logger.info(
            f"Duplicate submission rejected, retry after {retry_after}s",
            extra=get_log_context(
                guard_key=key, gate=GATE, decision="rejected", backend=self.store.storage_type
            ),
        )
        return DuplicateSubmitOutcome(SubmitDecision.REJECTED, blocking, retry_after)

    async def acquire_or_raise(
        self,
        key: str,
        interval_seconds: Optional[int] = None,
        operation: Optional[str] = None,
        caller: Optional[str] = None,
        message: Optional[str] = None,
    ) -> DuplicateSubmitMarker:
        """Acquire the marker or raise ``DuplicateSubmitError``."""
        outcome = await self.try_acquire(key, interval_seconds, operation, caller)
        if not outcome.acquired:
            raise DuplicateSubmitError(
                key,
                first_submit_time=outcome.marker.created_at,
                interval_seconds=outcome.marker.interval_seconds,
                retry_after_seconds=outcome.retry_after_seconds,
                message=message,
            )
        return outcome.marker

    async def release(self, key: str) -> bool:
        """Remove the marker early, e.g. after the handler failed."""
        released = await self.store.delete(key)
        logger.debug(
            f"Released duplicate submission marker (existed={released})",
            extra=get_log_context(guard_key=key, gate=GATE, decision="released"),
        )
        return released

    async def get_marker(self, key: str) -> Optional[DuplicateSubmitMarker]:
        stored = await self.store.get(key, self._clock())
        return None if stored is None else DuplicateSubmitMarker.from_dict(stored)
