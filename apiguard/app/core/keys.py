"""Key model shared by all gates.

Maps (operation identity, dimension, resolved identity values) to a single
string key. Key layout::

    {prefix}:rate:user:{user_id}:{operation}
    {prefix}:rate:ip:{client_ip}:{operation}
    {prefix}:rate:api:{operation}
    {prefix}:rate:global:system
    {prefix}:rate:custom:{value}
    {prefix}:idempotent:{operation}:{caller}:{fingerprint}
    {prefix}:duplicate:{dimension}:{identity}:{operation}
"""

import hashlib
import json
from enum import Enum
from typing import Any, Mapping, Optional

from apiguard.app.core.config import settings

ANONYMOUS = "anonymous"
NO_PARAMS = "no-params"


class Dimension(str, Enum):
    """Identity axis a gate partitions on."""
    GLOBAL = "GLOBAL"
    API = "API"
    IP = "IP"
    USER = "USER"
    CUSTOM = "CUSTOM"


class IdempotencyKeyStrategy(str, Enum):
    PARAMS_HASH = "PARAMS_HASH"
    USER_PARAMS = "USER_PARAMS"
    CUSTOM = "CUSTOM"


def fingerprint(params: Optional[Mapping[str, Any]]) -> str:
    """Hash request parameters into a stable fingerprint.

    Parameters are serialized canonically (sorted keys) so the same logical
    call always yields the same value regardless of argument order.

    Returns:
        32 hex characters, or ``"no-params"`` when there is nothing to hash.
    """
    if not params:
        return NO_PARAMS
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


class KeyBuilder:
    """Builds gate keys from resolved identity values."""

    RATE_NAMESPACE = "rate"
    IDEMPOTENT_NAMESPACE = "idempotent"
    DUPLICATE_NAMESPACE = "duplicate"

    def __init__(self, prefix: Optional[str] = None, separator: Optional[str] = None) -> None:
        self.prefix = settings.key_prefix if prefix is None else prefix
        self.separator = separator or settings.key_separator

    def _join(self, *components: Optional[str]) -> str:
        parts = [self.prefix] if self.prefix else []
        parts.extend(str(c) for c in components if c not in (None, ""))
        return self.separator.join(parts)

    def _dimension_components(
        self, dimension: Dimension | str, operation: str, identity: Optional[str]
    ) -> tuple[Optional[str], ...]:
        dimension = Dimension(dimension)
        if dimension is Dimension.USER:
            return ("user", identity or ANONYMOUS, operation)
        if dimension is Dimension.IP:
            return ("ip", identity, operation)
        if dimension is Dimension.API:
            return ("api", operation)
        if dimension is Dimension.GLOBAL:
            return ("global", "system")
        # CUSTOM falls back to the operation when no value was resolved
        return ("custom", identity or operation)

    def rate_limit_key(
        self,
        operation: str,
        dimension: Dimension | str = Dimension.API,
        identity: Optional[str] = None,
    ) -> str:
        return self._join(
            self.RATE_NAMESPACE, *self._dimension_components(dimension, operation, identity)
        )

    def duplicate_submit_key(
        self,
        operation: str,
        dimension: Dimension | str = Dimension.USER,
        identity: Optional[str] = None,
    ) -> str:
        return self._join(
            self.DUPLICATE_NAMESPACE, *self._dimension_components(dimension, operation, identity)
        )

    def idempotency_key(
        self,
        operation: str,
        fingerprint_value: str = NO_PARAMS,
        caller: Optional[str] = None,
        strategy: IdempotencyKeyStrategy | str = IdempotencyKeyStrategy.USER_PARAMS,
        custom_value: Optional[str] = None,
    ) -> str:
        """Build an idempotency key.

        USER_PARAMS scopes the fingerprint to the caller (anonymous callers
        share one scope), PARAMS_HASH uses the fingerprint alone and CUSTOM
        uses a caller-resolved value, falling back to the fingerprint.
        """
        strategy = IdempotencyKeyStrategy(strategy)
        if strategy is IdempotencyKeyStrategy.USER_PARAMS:
            base: tuple[Optional[str], ...] = (caller or ANONYMOUS, fingerprint_value)
        elif strategy is IdempotencyKeyStrategy.PARAMS_HASH:
            base = (fingerprint_value,)
        else:
            base = (custom_value or fingerprint_value,)
        return self._join(self.IDEMPOTENT_NAMESPACE, operation, *base)

    def extract_dimension(self, key: str) -> Optional[str]:
        """Return the dimension segment of a rate limit or duplicate key."""
        parts = key.split(self.separator)
        offset = 1 if self.prefix else 0
        if self.prefix and (not parts or parts[0] != self.prefix):
            return None
        if len(parts) < offset + 2:
            return None
        return parts[offset + 1].upper()

    def is_valid_key(self, key: str) -> bool:
        if not key:
            return False
        if not self.prefix:
            return True
        head = self.prefix + self.separator
        return key.startswith(head) and len(key) > len(head)
