"""Rate limiting data models.

This module contains the algorithm enum, the validated policy and the
dataclasses exchanged between the engine and the stores.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from apiguard.app.exceptions import ConfigurationError


class RateLimitAlgorithm(str, Enum):
    SLIDING_WINDOW = "SLIDING_WINDOW"
    FIXED_WINDOW = "FIXED_WINDOW"
    TOKEN_BUCKET = "TOKEN_BUCKET"
    LEAKY_BUCKET = "LEAKY_BUCKET"

    @classmethod
    def parse(cls, value: "RateLimitAlgorithm | str") -> "RateLimitAlgorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ConfigurationError.unsupported("algorithm", value) from None


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limit parameters for one protected operation.

    Attributes:
        permits: Requests allowed per window (bucket algorithms: nominal rate)
        window_seconds: Window length in seconds
        algorithm: Rate limiting algorithm
        bucket_capacity: Token bucket capacity, 0 means ``permits``
        refill_rate: Token bucket refill in tokens/second, 0 means
            ``permits / window_seconds``
    """
    permits: int
    window_seconds: int
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.SLIDING_WINDOW
    bucket_capacity: int = 0
    refill_rate: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "algorithm", RateLimitAlgorithm.parse(self.algorithm))
        if isinstance(self.permits, bool) or not isinstance(self.permits, int) or self.permits < 1:
            raise ConfigurationError.invalid_range("permits", self.permits, ">= 1")
        if (
            isinstance(self.window_seconds, bool)
            or not isinstance(self.window_seconds, int)
            or self.window_seconds < 1
        ):
            raise ConfigurationError.invalid_range("window_seconds", self.window_seconds, ">= 1")
        if self.bucket_capacity is None or self.bucket_capacity < 0:
            raise ConfigurationError.invalid_range("bucket_capacity", self.bucket_capacity, ">= 0")
        if (
            self.refill_rate is None
            or not math.isfinite(self.refill_rate)
            or self.refill_rate < 0
        ):
            raise ConfigurationError.invalid_range("refill_rate", self.refill_rate, ">= 0")

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000

    @property
    def capacity(self) -> int:
        """Effective capacity: bucket size for token bucket, permits otherwise."""
        if self.algorithm is RateLimitAlgorithm.TOKEN_BUCKET and self.bucket_capacity > 0:
            return self.bucket_capacity
        return self.permits

    @property
    def rate(self) -> float:
        """Refill (token bucket) or drain (leaky bucket) rate per second."""
        if self.algorithm is RateLimitAlgorithm.TOKEN_BUCKET and self.refill_rate > 0:
            return float(self.refill_rate)
        return self.permits / self.window_seconds


@dataclass
class RateLimitOutcome:
    """Raw decision returned by a store.

    ``level`` is algorithm specific: accepted requests in the window
    (sliding/fixed), tokens left (token bucket) or water level (leaky
    bucket), always measured after the operation.
    """
    allowed: bool
    level: float
    window_index: Optional[int] = None


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_time`` is epoch milliseconds.
    """
    allowed: bool
    remaining_permits: int
    total_permits: int
    reset_time: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    algorithm: str = RateLimitAlgorithm.SLIDING_WINDOW.value
    dimension: Optional[str] = None
    key: Optional[str] = None

    def headers(self) -> dict[str, str]:
        """Standard rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.total_permits),
            "X-RateLimit-Remaining": str(self.remaining_permits),
        }
        if self.reset_time is not None:
            headers["X-RateLimit-Reset"] = str(math.ceil(self.reset_time / 1000))
        if not self.allowed and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining_permits": self.remaining_permits,
            "total_permits": self.total_permits,
            "reset_time": self.reset_time,
            "retry_after_seconds": self.retry_after_seconds,
            "algorithm": self.algorithm,
            "dimension": self.dimension,
            "key": self.key,
        }


class CombineStrategy(str, Enum):
    """How several limits on one request combine.

    AND: every limit must allow. OR: one allowing limit is enough.
    """
    AND = "AND"
    OR = "OR"

    @classmethod
    def parse(cls, value: "CombineStrategy | str") -> "CombineStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ConfigurationError.unsupported("strategy", value) from None


@dataclass(frozen=True)
class RateLimitCheck:
    """One limit of a combined check."""
    key: str
    policy: RateLimitPolicy
    dimension: Optional[str] = None


@dataclass
class MultiRateLimitResult:
    """Combined decision over several limits.

    ``results`` holds the checks actually made, in order; with short-circuit
    evaluation it stops at the check that decided. ``deciding`` is the first
    denial when denied, and the allowed result with the fewest remaining
    permits when allowed.
    """
    allowed: bool
    strategy: CombineStrategy
    results: list[RateLimitResult] = field(default_factory=list)
    deciding: Optional[RateLimitResult] = None
    deciding_check: Optional[RateLimitCheck] = None

    def headers(self) -> dict[str, str]:
        return self.deciding.headers() if self.deciding is not None else {}
