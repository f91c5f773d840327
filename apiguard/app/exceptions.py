"""Custom exceptions for the guard gates and stores.

Three families are kept apart so callers can react differently:

- ``DeniedError``: an expected, user-facing refusal (rate limit exceeded,
  duplicate submission, idempotent conflict). Never retried internally.
- ``BackendFailureError``: the store could not answer (unreachable, timeout,
  malformed stored data). Callers choose fail-open or fail-closed.
- ``ConfigurationError``: invalid policy or parameters. Fails fast.
"""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from apiguard.app.ratelimit.models import RateLimitResult


class GuardException(Exception):
    """Base class for guard exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "GUARD_ERROR"

    def __init__(self, message: str = "Guard error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {"error": self.error_code, "message": self.message}

    def headers(self) -> dict[str, str]:
        return {}


class DeniedError(GuardException):
    """A request was refused by one of the gates.

    Maps to HTTP 429 Too Many Requests unless a subclass says otherwise.
    """
    status_code = 429
    error_code = "REQUEST_DENIED"


class RateLimitExceededError(DeniedError):
    """Raised when a rate limit check denies the request.

    Carries the full check result so a client message can name the limit,
    the window and when to retry.
    """
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        result: "RateLimitResult",
        window_seconds: int | None = None,
        message: str | None = None,
    ):
        self.result = result
        self.window_seconds = window_seconds
        detail = message or (
            f"Rate limit exceeded: {result.total_permits} requests"
            + (f" per {window_seconds}s" if window_seconds else "")
            + "."
        )
        if result.retry_after_seconds is not None and not message:
            detail += f" Retry after {result.retry_after_seconds}s."
        super().__init__(detail)

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "limit": self.result.total_permits,
            "window_seconds": self.window_seconds,
            "remaining": self.result.remaining_permits,
            "reset_time": self.result.reset_time,
            "retry_after": self.result.retry_after_seconds,
            "algorithm": self.result.algorithm,
        }

    def headers(self) -> dict[str, str]:
        return self.result.headers()


class DuplicateSubmitError(DeniedError):
    """Raised when the same submission arrives again within its interval."""
    error_code = "DUPLICATE_SUBMIT_DETECTED"

    def __init__(
        self,
        key: str,
        first_submit_time: int | None = None,
        interval_seconds: int | None = None,
        retry_after_seconds: int = 0,
        message: str | None = None,
    ):
        self.key = key
        self.first_submit_time = first_submit_time
        self.interval_seconds = interval_seconds
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message or "Duplicate submission detected, please do not resubmit")

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "duplicate_key": self.key,
            "first_submit_time": self.first_submit_time,
            "interval_seconds": self.interval_seconds,
            "retry_after": self.retry_after_seconds,
        }

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(max(1, self.retry_after_seconds))}


class IdempotentConflictError(DeniedError):
    """Raised when an idempotent operation must not run again.

    Covers an execution still in flight and a completed execution whose
    result cannot be replayed. Maps to HTTP 409 Conflict.
    """
    status_code = 409
    error_code = "IDEMPOTENT_REQUEST_DUPLICATE"

    def __init__(
        self,
        key: str,
        status: str,
        first_request_time: int | None = None,
        message: str | None = None,
    ):
        self.key = key
        self.status = status
        self.first_request_time = first_request_time
        if message is None:
            if status == "PENDING":
                message = "Request is being processed, please retry later"
            else:
                message = "Request already processed, no cached result available"
        super().__init__(message)

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "idempotent_key": self.key,
            "status": self.status,
            "first_request_time": self.first_request_time,
        }


class IdempotentFailedError(DeniedError):
    """Raised when replaying a cached failure of an idempotent operation."""
    status_code = 409
    error_code = "IDEMPOTENT_PREVIOUS_FAILURE"

    def __init__(
        self,
        key: str,
        error_detail: str | None,
        first_request_time: int | None = None,
        message: str | None = None,
    ):
        self.key = key
        self.error_detail = error_detail
        self.first_request_time = first_request_time
        base = message or "Previous request failed"
        super().__init__(f"{base} (reason: {error_detail})")

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "idempotent_key": self.key,
            "error_detail": self.error_detail,
            "first_request_time": self.first_request_time,
        }


class BackendFailureError(GuardException):
    """Raised when the record store cannot complete an operation.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "STORAGE_BACKEND_FAILURE"

    def __init__(
        self,
        operation: str,
        key: str | None = None,
        cause: Optional[BaseException] = None,
        detail: str | None = None,
    ):
        self.operation = operation
        self.key = key
        self.cause = cause
        message = detail or f"Storage backend failed during {operation}"
        if cause is not None and detail is None:
            message += f": {cause}"
        super().__init__(message)

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": f"Storage backend unavailable during {self.operation}",
        }


class ConfigurationError(GuardException):
    """Raised for unsupported algorithms or invalid gate parameters."""
    status_code = 500
    error_code = "CONFIG_INVALID_PARAMETER"

    def __init__(
        self,
        message: str,
        parameter: str | None = None,
        value: Any = None,
        error_code: str | None = None,
    ):
        self.parameter = parameter
        self.value = value
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    @classmethod
    def invalid_parameter(cls, parameter: str, value: Any, reason: str) -> "ConfigurationError":
        return cls(
            f"Invalid parameter '{parameter}' with value '{value}': {reason}",
            parameter,
            value,
        )

    @classmethod
    def invalid_range(cls, parameter: str, value: Any, valid_range: str) -> "ConfigurationError":
        return cls(
            f"Parameter '{parameter}' with value '{value}' is out of valid range: {valid_range}",
            parameter,
            value,
            error_code="CONFIG_INVALID_RANGE",
        )

    @classmethod
    def unsupported(cls, parameter: str, value: Any) -> "ConfigurationError":
        return cls(
            f"Unsupported {parameter}: {value}",
            parameter,
            value,
            error_code="CONFIG_UNSUPPORTED",
        )
