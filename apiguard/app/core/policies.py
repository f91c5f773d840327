"""Per-operation gate configuration.

An ``OperationPolicy`` carries every parameter a gate needs for one
protected operation; a ``PolicyRegistry`` maps operation names to policies
and can be loaded from a mapping or a JSON file. ``OperationGuard`` in
``apiguard.app.guard`` applies them.
"""

import json
import threading
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from apiguard.app.core.keys import Dimension
from apiguard.app.exceptions import ConfigurationError
from apiguard.app.ratelimit.models import RateLimitAlgorithm, RateLimitPolicy


class OperationPolicy(BaseModel):
    permits: int = Field(default=100, ge=1)
    window_seconds: int = Field(default=60, ge=1)
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.SLIDING_WINDOW
    bucket_capacity: int = Field(default=0, ge=0)
    refill_rate: float = Field(default=0.0, ge=0)
    timeout_seconds: Optional[int] = Field(default=None, ge=1)  # idempotency record lifetime
    interval_seconds: Optional[int] = Field(default=None, ge=1)  # duplicate submission
    storage_backend: Optional[Literal["memory", "redis"]] = None
    dimension: Dimension = Dimension.API
    allow_retry_on_failure: Optional[bool] = None
    message: Optional[str] = None

    @field_validator("algorithm", mode="before")
    @classmethod
    def normalize_algorithm(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("dimension", mode="before")
    @classmethod
    def normalize_dimension(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def rate_limit_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            permits=self.permits,
            window_seconds=self.window_seconds,
            algorithm=self.algorithm,
            bucket_capacity=self.bucket_capacity,
            refill_rate=self.refill_rate,
        )

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "OperationPolicy":
        """Validate raw configuration.

        Raises:
            ConfigurationError: The configuration is invalid
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            first = e.errors()[0]
            parameter = ".".join(str(p) for p in first.get("loc", ())) or None
            raise ConfigurationError(
                f"Invalid policy: {first.get('msg')}",
                parameter=parameter,
                value=first.get("input"),
            ) from e


class PolicyRegistry:
    """Thread-safe map of operation name to policy."""

    def __init__(self, default: Optional[OperationPolicy] = None) -> None:
        self._policies: dict[str, OperationPolicy] = {}
        self._default = default
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)

    def __contains__(self, operation: str) -> bool:
        with self._lock:
            return operation in self._policies

    def register(self, operation: str, policy: OperationPolicy | Mapping[str, Any]) -> OperationPolicy:
        if not operation:
            raise ConfigurationError.invalid_parameter("operation", operation, "must not be empty")
        if not isinstance(policy, OperationPolicy):
            policy = OperationPolicy.parse(policy)
        with self._lock:
            self._policies[operation] = policy
        return policy

    def unregister(self, operation: str) -> bool:
        with self._lock:
            return self._policies.pop(operation, None) is not None

    def get(self, operation: str) -> OperationPolicy:
        """Policy for ``operation``, falling back to the registry default.

        Raises:
            ConfigurationError: No policy and no default
        """
        with self._lock:
            policy = self._policies.get(operation, self._default)
        if policy is None:
            raise ConfigurationError.invalid_parameter("operation", operation, "no policy registered")
        return policy

    def load(self, policies: Mapping[str, Mapping[str, Any]]) -> int:
        """Register every entry of ``{operation: policy}``; returns the count.

        Everything is validated before anything is registered.
        """
        parsed = {op: OperationPolicy.parse(raw) for op, raw in policies.items()}
        for op, policy in parsed.items():
            self.register(op, policy)
        return len(parsed)

    def load_file(self, path: str | Path) -> int:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                f"Cannot read policy file {path}: {e}", parameter="path", value=str(path)
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError.invalid_parameter("path", str(path), "expected a JSON object")
        return self.load(data)
