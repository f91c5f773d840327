"""Rate limiting state machines.

Each ``evaluate_*`` function is pure: it takes the previous state (or
``None`` for a fresh key), the policy and the current time, and returns the
decision together with the state to commit. The local store runs them under
its per-key lock; the Redis scripts in ``apiguard.app.store.redis_lua``
perform the same arithmetic server-side, in the same order, so both
backends agree to the last bit.

``build_result`` turns a raw decision into the caller-facing result and is
shared by every backend.
"""

import math
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Union

from apiguard.app.ratelimit.models import (
    RateLimitAlgorithm,
    RateLimitOutcome,
    RateLimitPolicy,
    RateLimitResult,
)


@dataclass
class SlidingWindowState:
    """Timestamps (epoch ms) of accepted requests, oldest first."""
    timestamps: deque = field(default_factory=deque)


@dataclass
class FixedWindowState:
    window_index: int
    count: int = 0


@dataclass
class TokenBucketState:
    tokens: float
    last_refill: int


@dataclass
class LeakyBucketState:
    water: float
    last_drain: int


RateLimitState = Union[SlidingWindowState, FixedWindowState, TokenBucketState, LeakyBucketState]


def state_type(algorithm: RateLimitAlgorithm) -> type:
    return {
        RateLimitAlgorithm.SLIDING_WINDOW: SlidingWindowState,
        RateLimitAlgorithm.FIXED_WINDOW: FixedWindowState,
        RateLimitAlgorithm.TOKEN_BUCKET: TokenBucketState,
        RateLimitAlgorithm.LEAKY_BUCKET: LeakyBucketState,
    }[algorithm]


def state_ttl_ms(policy: RateLimitPolicy, bucket_state_ttl_seconds: int) -> int:
    """Lifetime of committed state.

    Window algorithms keep state for one window. Bucket algorithms keep it
    for the configured horizon, extended to the time a bucket needs to fully
    refill or drain so no state is dropped while it still matters.
    """
    if policy.algorithm in (RateLimitAlgorithm.SLIDING_WINDOW, RateLimitAlgorithm.FIXED_WINDOW):
        return policy.window_ms
    settle_ms = math.ceil(policy.capacity / policy.rate * 1000)
    return max(bucket_state_ttl_seconds * 1000, settle_ms)


def evaluate_sliding_window(
    state: Optional[SlidingWindowState], policy: RateLimitPolicy, now_ms: int, consume: bool
) -> tuple[RateLimitOutcome, Optional[SlidingWindowState]]:
    state = state or SlidingWindowState()
    cutoff = now_ms - policy.window_ms
    while state.timestamps and state.timestamps[0] < cutoff:
        state.timestamps.popleft()

    count = len(state.timestamps)
    allowed = count < policy.permits
    if allowed and consume:
        state.timestamps.append(now_ms)
        count += 1
        return RateLimitOutcome(allowed, count), state
    return RateLimitOutcome(allowed, count), None


def evaluate_fixed_window(
    state: Optional[FixedWindowState], policy: RateLimitPolicy, now_ms: int, consume: bool
) -> tuple[RateLimitOutcome, Optional[FixedWindowState]]:
    index = now_ms // policy.window_ms
    count = state.count if state is not None and state.window_index == index else 0

    allowed = count + 1 <= policy.permits
    if allowed and consume:
        count += 1
        return RateLimitOutcome(allowed, count, index), FixedWindowState(index, count)
    return RateLimitOutcome(allowed, count, index), None


def evaluate_token_bucket(
    state: Optional[TokenBucketState], policy: RateLimitPolicy, now_ms: int, consume: bool
) -> tuple[RateLimitOutcome, Optional[TokenBucketState]]:
    capacity = policy.capacity
    tokens = float(capacity)
    if state is not None:
        elapsed = max(0, now_ms - state.last_refill)
        tokens = min(capacity, state.tokens + elapsed * policy.rate / 1000)

    allowed = tokens >= 1
    if allowed and consume:
        tokens = max(0.0, tokens - 1)
        return RateLimitOutcome(allowed, tokens), TokenBucketState(tokens, now_ms)
    return RateLimitOutcome(allowed, tokens), None


def evaluate_leaky_bucket(
    state: Optional[LeakyBucketState], policy: RateLimitPolicy, now_ms: int, consume: bool
) -> tuple[RateLimitOutcome, Optional[LeakyBucketState]]:
    water = 0.0
    if state is not None:
        elapsed = max(0, now_ms - state.last_drain)
        water = max(0.0, state.water - elapsed * policy.rate / 1000)

    allowed = water < policy.permits
    if allowed and consume:
        water += 1
        return RateLimitOutcome(allowed, water), LeakyBucketState(water, now_ms)
    return RateLimitOutcome(allowed, water), None


_EVALUATORS = {
    RateLimitAlgorithm.SLIDING_WINDOW: evaluate_sliding_window,
    RateLimitAlgorithm.FIXED_WINDOW: evaluate_fixed_window,
    RateLimitAlgorithm.TOKEN_BUCKET: evaluate_token_bucket,
    RateLimitAlgorithm.LEAKY_BUCKET: evaluate_leaky_bucket,
}


def evaluate(
    state: Optional[RateLimitState], policy: RateLimitPolicy, now_ms: int, consume: bool = True
) -> tuple[RateLimitOutcome, Optional[RateLimitState]]:
    """Run one check.

    State of another algorithm (the policy changed under a live key) is
    discarded and the key starts fresh.

    Returns:
        ``(outcome, new_state)``; ``new_state`` is ``None`` when nothing
        needs to be committed.
    """
    if state is not None and not isinstance(state, state_type(policy.algorithm)):
        state = None
    return _EVALUATORS[policy.algorithm](state, policy, now_ms, consume)


def build_result(
    policy: RateLimitPolicy,
    outcome: RateLimitOutcome,
    now_ms: int,
    key: Optional[str] = None,
    dimension: Optional[str] = None,
) -> RateLimitResult:
    """Translate a raw store decision into a ``RateLimitResult``."""
    algorithm = policy.algorithm
    level = outcome.level
    retry_after: Optional[int] = None

    if algorithm is RateLimitAlgorithm.SLIDING_WINDOW:
        remaining = policy.permits - int(level)
        reset_time = now_ms + policy.window_ms
        if not outcome.allowed:
            retry_after = policy.window_seconds
    elif algorithm is RateLimitAlgorithm.FIXED_WINDOW:
        index = outcome.window_index if outcome.window_index is not None else now_ms // policy.window_ms
        remaining = policy.permits - int(level)
        reset_time = (index + 1) * policy.window_ms
        if not outcome.allowed:
            retry_after = max(1, math.ceil((reset_time - now_ms) / 1000))
    elif algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
        rate = policy.rate
        remaining = math.floor(level)
        reset_time = now_ms + math.ceil(max(0.0, policy.capacity - level) / rate * 1000)
        if not outcome.allowed:
            retry_after = max(1, math.ceil((1 - level) / rate))
    else:
        rate = policy.rate
        remaining = math.ceil(policy.permits - level) if level < policy.permits else 0
        reset_time = now_ms + math.ceil(level / rate * 1000)
        if not outcome.allowed:
            retry_after = max(1, math.ceil(1 / rate))

    return RateLimitResult(
        allowed=outcome.allowed,
        remaining_permits=max(0, remaining),
        total_permits=policy.capacity,
        reset_time=reset_time,
        retry_after_seconds=retry_after,
        algorithm=algorithm.value,
        dimension=dimension,
        key=key,
    )
