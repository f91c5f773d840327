from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Guard settings loaded from environment variables.

    All settings can be configured via ``APIGUARD_*`` environment variables
    or a .env file.
    """

    # Storage backend selection
    storage_backend: Literal["memory", "redis"] = "memory"

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 2.0
    store_operation_timeout: float = 2.0  # Timeout is reported as backend failure
    fallback_to_local: bool = False  # Retry once on the local store when Redis fails

    # Key layout
    key_prefix: str = "apiguard"
    key_separator: str = ":"

    # Local store bounds
    local_max_entries: int = 10000
    local_expire_after_access_seconds: int = 3600
    local_lock_timeout_seconds: float = 5.0

    # Token/leaky bucket state horizon
    bucket_state_ttl_seconds: int = 3600

    # Positive result cache in front of the distributed store
    result_cache_enabled: bool = False
    result_cache_ttl_ms: int = 200
    result_cache_max_size: int = 1000

    # Idempotency
    idempotency_default_timeout: int = 300
    idempotency_max_result_size: int = 10240  # 10KB max cacheable result
    idempotency_allow_retry_on_failure: bool = True

    # Duplicate submission
    duplicate_submit_default_interval: int = 5

    # If True, callers should deny requests when the backend is unavailable
    rate_limit_fail_closed: bool = False

    # Admin endpoints (empty token disables them)
    admin_token: str = ""

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "local_max_entries",
        "local_expire_after_access_seconds",
        "bucket_state_ttl_seconds",
        "result_cache_ttl_ms",
        "result_cache_max_size",
        "idempotency_default_timeout",
        "idempotency_max_result_size",
        "duplicate_submit_default_interval",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate size and lifetime values are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "redis_socket_timeout",
        "store_operation_timeout",
        "local_lock_timeout_seconds",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("key_separator")
    @classmethod
    def validate_separator(cls, v: str) -> str:
        if not v:
            raise ValueError("key_separator must not be empty")
        return v

    model_config = SettingsConfigDict(
        env_prefix="APIGUARD_", env_file=".env", extra="ignore"
    )


# Global settings instance
settings = Settings()
