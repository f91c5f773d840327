"""Process-wide cache for positive gate outcomes.

Sits in front of the distributed store to save round-trips for outcomes
that are safe to repeat locally (allowed rate limit status snapshots and
terminal idempotency successes). Entries are bounded in number and
lifetime; denials are never cached.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

from apiguard.app.core.clock import Clock, system_clock


@dataclass
class _CacheEntry:
    """Internal cache entry with expiry tracking (epoch ms)."""

    value: Any
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at


class LocalResultCache:
    """Bounded LRU cache with per-entry lifetime.

    Thread-safe; every operation holds one internal lock for a short,
    non-blocking critical section.
    """

    def __init__(self, max_size: int = 1000, ttl_ms: int = 200, clock: Clock = system_clock) -> None:
        self._data: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._max_size = max_size
        self._ttl_ms = ttl_ms
        self._clock = clock
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _live_entry(self, key: str, now_ms: int) -> Optional[_CacheEntry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(now_ms):
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return entry

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return None if entry is None else entry.value

    def put(self, key: str, value: Any, ttl_ms: Optional[int] = None, expires_at: Optional[int] = None) -> None:
        """Store a value.

        The entry lives for ``ttl_ms`` (default: the cache TTL) and never past
        ``expires_at`` when one is given.
        """
        now = self._clock()
        deadline = now + (self._ttl_ms if ttl_ms is None else ttl_ms)
        if expires_at is not None:
            deadline = min(deadline, expires_at)
        if deadline <= now:
            return
        with self._lock:
            self._data[key] = _CacheEntry(value=value, expires_at=deadline)
            self._data.move_to_end(key)
            while len(self._data) > self._max_size:
                self._data.popitem(last=False)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


# Global cache instance (singleton pattern)
_result_cache: LocalResultCache | None = None
_result_cache_lock = threading.Lock()


def get_result_cache() -> LocalResultCache:
    """Get or create the process-wide result cache."""
    global _result_cache
    with _result_cache_lock:
        if _result_cache is None:
            from apiguard.app.core.config import settings

            _result_cache = LocalResultCache(
                max_size=settings.result_cache_max_size,
                ttl_ms=settings.result_cache_ttl_ms,
            )
        return _result_cache


def reset_result_cache() -> None:
    """Reset the global result cache. Primarily useful for testing."""
    global _result_cache
    with _result_cache_lock:
        _result_cache = None
