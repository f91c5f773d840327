"""Primary store with a one-time local fallback.

When the primary (distributed) store raises ``BackendFailureError`` the
same call is retried once against the fallback store. A failure of the
fallback propagates. Denials are ordinary return values and are never
retried.
"""

from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.metrics import get_metrics
from apiguard.app.exceptions import BackendFailureError
from apiguard.app.ratelimit.models import RateLimitOutcome, RateLimitPolicy
from apiguard.app.store.base import Record, RecordStore

logger = get_logger(__name__)


class FallbackStore(RecordStore):
    """Store that degrades to a local store when the primary fails.

    State written to the fallback is not copied back to the primary; while
    the primary is down each instance enforces limits on its own.
    """

    def __init__(self, primary: RecordStore, fallback: RecordStore) -> None:
        self.primary = primary
        self.fallback = fallback

    @property
    def storage_type(self) -> str:  # type: ignore[override]
        return self.primary.storage_type

    async def _with_fallback(
        self, operation: str, key: Optional[str], call: Callable[[RecordStore], Awaitable[Any]]
    ) -> Any:
        try:
            return await call(self.primary)
        except BackendFailureError as e:
            logger.warning(
                f"Primary store failed during {operation}, using local fallback: {e.message}",
                extra=get_log_context(guard_key=key, backend=self.fallback.storage_type),
            )
            get_metrics().record_fallback()
            return await call(self.fallback)

    async def evaluate_rate_limit(
        self, key: str, policy: RateLimitPolicy, now_ms: int, consume: bool = True
    ) -> RateLimitOutcome:
        return await self._with_fallback(
            "rate_limit", key, lambda s: s.evaluate_rate_limit(key, policy, now_ms, consume)
        )

    async def create_if_absent(self, key: str, record: Record, now_ms: int) -> Optional[Record]:
        return await self._with_fallback(
            "create_if_absent", key, lambda s: s.create_if_absent(key, record, now_ms)
        )

    async def get(self, key: str, now_ms: int) -> Optional[Record]:
        return await self._with_fallback("get", key, lambda s: s.get(key, now_ms))

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
        remove = tuple(remove)
        return await self._with_fallback(
            "compare_and_update",
            key,
            lambda s: s.compare_and_update(
                key, expected, changes, now_ms, remove=remove, increments=increments, ttl_ms=ttl_ms
            ),
        )

    async def delete(self, key: str) -> bool:
        # Clear both so a reset also covers state written during an outage
        deleted_local = await self.fallback.delete(key)
        try:
            return await self.primary.delete(key) or deleted_local
        except BackendFailureError as e:
            if not deleted_local:
                raise
            logger.warning(
                f"Primary store failed during delete, cleared local state only: {e.message}",
                extra=get_log_context(guard_key=key),
            )
            return True

    async def ping(self) -> bool:
        return await self.primary.ping()

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()
