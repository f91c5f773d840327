"""Record store abstraction shared by every gate.

A store maps string keys to small time-bounded records and offers a few
atomic primitives. Both implementations honour the same contract:

- Each operation on one key behaves as if serialized with every other
  operation on that key; no partial application is observable.
- Records are JSON objects. A record whose ``expire_time`` (epoch ms) is
  not in the future behaves exactly as an absent record.
- Failures to reach or interpret the backend surface as
  ``BackendFailureError``; they never read as "denied" or "absent".
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional

from apiguard.app.ratelimit.models import RateLimitOutcome, RateLimitPolicy

Record = dict[str, Any]

EXPIRE_TIME_FIELD = "expire_time"


def is_expired(record: Mapping[str, Any], now_ms: int) -> bool:
    """Whether a record's logical lifetime has ended."""
    expire_time = record.get(EXPIRE_TIME_FIELD)
    return expire_time is not None and int(expire_time) <= now_ms


def apply_update(
    record: Record,
    changes: Mapping[str, Any],
    remove: Iterable[str] = (),
    increments: Optional[Mapping[str, int]] = None,
) -> Record:
    """Apply a compare-and-update mutation to a copy of ``record``."""
    updated = dict(record)
    updated.update(changes)
    for field in remove:
        updated.pop(field, None)
    for field, delta in (increments or {}).items():
        updated[field] = int(updated.get(field) or 0) + delta
    return updated


class RecordStore(ABC):
    """Abstract base class for record stores."""

    storage_type: str = "unknown"

    @abstractmethod
    async def evaluate_rate_limit(
        self, key: str, policy: RateLimitPolicy, now_ms: int, consume: bool = True
    ) -> RateLimitOutcome:
        """Atomically check (and, when ``consume``, commit) one request.

        Args:
            key: Rate limit key
            policy: Limit parameters
            now_ms: Current time in epoch milliseconds
            consume: False evaluates without changing any state

        Returns:
            Raw decision; see ``RateLimitOutcome``
        """

    @abstractmethod
    async def create_if_absent(self, key: str, record: Record, now_ms: int) -> Optional[Record]:
        """Store ``record`` unless a live record exists.

        The record's ``expire_time`` sets its lifetime.

        Returns:
            ``None`` when the record was created, otherwise the existing record
        """

    @abstractmethod
    async def get(self, key: str, now_ms: int) -> Optional[Record]:
        """Read a live record, or ``None``."""

    @abstractmethod
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
        """Update a live record only if every ``expected`` field matches.

        The remaining lifetime is preserved unless ``ttl_ms`` is given or the
        changes carry a new ``expire_time``.

        Returns:
            ``(updated, record)`` where ``record`` is the stored record after
            the call, or ``None`` when no live record exists
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove any state under ``key``. Returns whether something existed."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check backend reachability. Raises ``BackendFailureError`` when down."""

    async def close(self) -> None:
        """Release backend resources."""
