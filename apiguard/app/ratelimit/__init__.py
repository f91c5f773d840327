"""Rate limiting.

The engine lives in ``apiguard.app.ratelimit.engine``; it is not imported
here because the stores depend on the models in this package.
"""

from apiguard.app.ratelimit.models import (
    CombineStrategy,
    MultiRateLimitResult,
    RateLimitAlgorithm,
    RateLimitCheck,
    RateLimitOutcome,
    RateLimitPolicy,
    RateLimitResult,
)

__all__ = [
    "CombineStrategy",
    "MultiRateLimitResult",
    "RateLimitCheck",
    "RateLimitAlgorithm",
    "RateLimitOutcome",
    "RateLimitPolicy",
    "RateLimitResult",
]
