"""In-process record store.

Suitable for single-instance deployments and as the fallback of the Redis
store.

Memory bounds:
- OrderedDict gives LRU order; the least recently used entry is evicted
  once ``max_entries`` is exceeded
- Entries carry their own deadline (window, bucket horizon or the
  record's ``expire_time``) and live exactly until it, however long they
  sit idle
- Entries without a deadline are dropped once idle for longer than
  ``expire_after_access_ms``
"""

import asyncio
import copy
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.logging import get_logger
from apiguard.app.exceptions import BackendFailureError
from apiguard.app.ratelimit import algorithms
from apiguard.app.ratelimit.models import RateLimitOutcome, RateLimitPolicy
from apiguard.app.store.base import (
    EXPIRE_TIME_FIELD,
    Record,
    RecordStore,
    apply_update,
    is_expired,
)

logger = get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[int]
    last_access: int

    def is_expired(self, now_ms: int, idle_ms: int) -> bool:
        # Idle expiry only bounds entries without a deadline of their own
        if self.expires_at is not None:
            return now_ms >= self.expires_at
        return now_ms - self.last_access >= idle_ms


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class _KeyLockArena:
    """Per-key mutual exclusion.

    Locks are created lazily on first use and reference counted. A lock is
    only discarded by ``discard`` (called on eviction) and only while no
    caller holds or waits for it, so two callers can never end up with
    different locks for the same key.
    """

    MIN_BACKOFF = 0.0005
    MAX_BACKOFF = 0.02

    def __init__(self, timeout_seconds: float) -> None:
        self._timeout = timeout_seconds
        self._locks: dict[str, _KeyLock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    async def acquire(self, key: str) -> _KeyLock:
        """Take the key's lock without blocking the event loop.

        The lock is polled with a growing ``asyncio.sleep`` backoff, so a
        holder on another thread or task delays only this coroutine.
        """
        with self._guard:
            handle = self._locks.get(key)
            if handle is None:
                handle = self._locks[key] = _KeyLock()
            handle.holders += 1
        deadline = time.monotonic() + self._timeout
        delay = self.MIN_BACKOFF
        acquired = False
        try:
            acquired = handle.lock.acquire(blocking=False)
            while not acquired:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(delay, remaining))
                delay = min(delay * 2, self.MAX_BACKOFF)
                acquired = handle.lock.acquire(blocking=False)
        finally:
            if not acquired:
                with self._guard:
                    handle.holders -= 1
        if not acquired:
            raise BackendFailureError(
                "lock", key, detail=f"Timed out after {self._timeout}s waiting for key lock"
            )
        return handle

    def release(self, handle: _KeyLock) -> None:
        handle.lock.release()
        with self._guard:
            handle.holders -= 1

    def discard(self, key: str) -> None:
        with self._guard:
            handle = self._locks.get(key)
            if handle is not None and handle.holders == 0:
                del self._locks[key]


class LocalStore(RecordStore):
    """Local record store with per-key locking and LRU eviction.

    Every public operation runs its whole read-modify-write sequence inside
    the key's lock. The critical sections never await, so they are safe
    across asyncio tasks and OS threads alike.
    """

    storage_type = "memory"

    def __init__(
        self,
        max_entries: Optional[int] = None,
        expire_after_access_seconds: Optional[int] = None,
        lock_timeout_seconds: Optional[float] = None,
        bucket_state_ttl_seconds: Optional[int] = None,
        clock: Clock = system_clock,
    ) -> None:
        from apiguard.app.core.config import settings

        self._max_entries = max_entries or settings.local_max_entries
        self._idle_ms = (
            expire_after_access_seconds or settings.local_expire_after_access_seconds
        ) * 1000
        self._bucket_ttl_seconds = bucket_state_ttl_seconds or settings.bucket_state_ttl_seconds
        self._clock = clock
        self._data: OrderedDict[str, _Entry] = OrderedDict()
        self._data_lock = threading.Lock()
        self._locks = _KeyLockArena(lock_timeout_seconds or settings.local_lock_timeout_seconds)

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._data)

    # Entry map helpers. Callers hold the key lock; the map itself is
    # guarded by ``_data_lock`` for structural changes.

    def _read(self, key: str, now_ms: int) -> Optional[_Entry]:
        with self._data_lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.is_expired(now_ms, self._idle_ms):
                del self._data[key]
                return None
            entry.last_access = max(entry.last_access, now_ms)
            self._data.move_to_end(key)
            return entry

    def _write(self, key: str, value: Any, expires_at: Optional[int], now_ms: int) -> None:
        evicted = []
        with self._data_lock:
            self._data[key] = _Entry(value, expires_at, now_ms)
            self._data.move_to_end(key)
            while len(self._data) > self._max_entries:
                old_key, _ = self._data.popitem(last=False)
                evicted.append(old_key)
        for old_key in evicted:
            self._locks.discard(old_key)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} local entries (max {self._max_entries})")

    def _remove(self, key: str) -> bool:
        with self._data_lock:
            return self._data.pop(key, None) is not None

    def _live_record(self, key: str, now_ms: int) -> Optional[_Entry]:
        entry = self._read(key, now_ms)
        if entry is None:
            return None
        if not isinstance(entry.value, dict) or is_expired(entry.value, now_ms):
            self._remove(key)
            return None
        return entry

    @staticmethod
    def _record_deadline(record: Mapping[str, Any]) -> Optional[int]:
        expire_time = record.get(EXPIRE_TIME_FIELD)
        return None if expire_time is None else int(expire_time)

    async def evaluate_rate_limit(
        self, key: str, policy: RateLimitPolicy, now_ms: int, consume: bool = True
    ) -> RateLimitOutcome:
        handle = await self._locks.acquire(key)
        try:
            entry = self._read(key, now_ms)
            state = entry.value if entry is not None else None
            outcome, new_state = algorithms.evaluate(state, policy, now_ms, consume)
            if new_state is not None:
                ttl_ms = algorithms.state_ttl_ms(policy, self._bucket_ttl_seconds)
                self._write(key, new_state, now_ms + ttl_ms, now_ms)
            return outcome
        finally:
            self._locks.release(handle)

    async def create_if_absent(self, key: str, record: Record, now_ms: int) -> Optional[Record]:
        handle = await self._locks.acquire(key)
        try:
            existing = self._live_record(key, now_ms)
            if existing is not None:
                return copy.deepcopy(existing.value)
            self._write(key, copy.deepcopy(record), self._record_deadline(record), now_ms)
            return None
        finally:
            self._locks.release(handle)

    async def get(self, key: str, now_ms: int) -> Optional[Record]:
        handle = await self._locks.acquire(key)
        try:
            entry = self._live_record(key, now_ms)
            return None if entry is None else copy.deepcopy(entry.value)
        finally:
            self._locks.release(handle)

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
        handle = await self._locks.acquire(key)
        try:
            entry = self._live_record(key, now_ms)
            if entry is None:
                return False, None
            current = entry.value
            if any(current.get(field) != value for field, value in expected.items()):
                return False, copy.deepcopy(current)

            updated = apply_update(current, copy.deepcopy(dict(changes)), remove, increments)
            if ttl_ms is not None:
                deadline: Optional[int] = now_ms + ttl_ms
            elif EXPIRE_TIME_FIELD in changes:
                deadline = self._record_deadline(updated)
            else:
                deadline = entry.expires_at
            self._write(key, updated, deadline, now_ms)
            return True, copy.deepcopy(updated)
        finally:
            self._locks.release(handle)

    async def delete(self, key: str) -> bool:
        handle = await self._locks.acquire(key)
        try:
            return self._remove(key)
        finally:
            self._locks.release(handle)

    async def ping(self) -> bool:
        return True

    async def clear(self) -> None:
        """Drop every entry. Primarily useful for testing."""
        with self._data_lock:
            self._data.clear()

    def cleanup(self) -> int:
        """Evict expired and idle entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        start = time.perf_counter()
        with self._data_lock:
            doomed = [k for k, e in self._data.items() if e.is_expired(now, self._idle_ms)]
            for k in doomed:
                del self._data[k]
        for k in doomed:
            self._locks.discard(k)
        if doomed:
            logger.debug(
                f"Removed {len(doomed)} expired local entries "
                f"in {(time.perf_counter() - start) * 1000:.2f}ms"
            )
        return len(doomed)
