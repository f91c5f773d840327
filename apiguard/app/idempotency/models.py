"""Idempotency record and outcome models."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from apiguard.app.exceptions import BackendFailureError


class IdempotencyStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not IdempotencyStatus.PENDING


@dataclass
class IdempotencyRecord:
    """Stored state of one idempotent execution.

    ``result`` holds the serialized result (JSON text) and is present only
    for SUCCESS records whose result could be cached. ``error`` is present
    only for FAILED records. ``owner_token`` identifies the execution that
    created the record so only it can complete it.
    """
    key: str
    operation: str
    fingerprint: str
    caller: Optional[str]
    status: IdempotencyStatus
    first_request_time: int
    last_access_time: int
    expire_time: int
    owner_token: str
    access_count: int = 1
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def has_result(self) -> bool:
        return self.status is IdempotencyStatus.SUCCESS and self.result is not None

    def result_value(self) -> Any:
        """Deserialize the cached result."""
        if self.result is None:
            return None
        return json.loads(self.result)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "key": self.key,
            "operation": self.operation,
            "fingerprint": self.fingerprint,
            "caller": self.caller,
            "status": self.status.value,
            "first_request_time": self.first_request_time,
            "last_access_time": self.last_access_time,
            "expire_time": self.expire_time,
            "owner_token": self.owner_token,
            "access_count": self.access_count,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IdempotencyRecord":
        """Build a record from its stored form.

        Raises:
            BackendFailureError: The stored data is not a valid record
        """
        try:
            return cls(
                key=data["key"],
                operation=data["operation"],
                fingerprint=data["fingerprint"],
                caller=data.get("caller"),
                status=IdempotencyStatus(data["status"]),
                first_request_time=int(data["first_request_time"]),
                last_access_time=int(data["last_access_time"]),
                expire_time=int(data["expire_time"]),
                owner_token=data["owner_token"],
                access_count=int(data.get("access_count", 1)),
                result=data.get("result"),
                error=data.get("error"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise BackendFailureError(
                "decode_record", data.get("key") if isinstance(data, dict) else None,
                cause=e, detail=f"Malformed idempotency record: {e}",
            ) from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "IdempotencyRecord":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise BackendFailureError(
                "decode_record", cause=e, detail="Malformed idempotency record"
            ) from e
        if not isinstance(data, dict):
            raise BackendFailureError("decode_record", detail="Malformed idempotency record")
        return cls.from_dict(data)


@dataclass
class BeginResult:
    """Result of ``begin``: either CREATED (authorized to run) or EXISTS."""
    created: bool
    record: IdempotencyRecord

    @property
    def exists(self) -> bool:
        return not self.created


class OutcomeKind(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    REPLAY = "REPLAY"
    FAILED = "FAILED"


@dataclass
class IdempotentOutcome:
    """Decision of the idempotency gate for one call.

    - CREATED: the caller owns the execution and must ``complete`` it
    - PENDING: another execution is in flight, retry later
    - REPLAY: a previous execution succeeded; ``result`` holds its value
      when ``has_result``
    - FAILED: a previous execution failed and re-execution is not allowed
    """
    kind: OutcomeKind
    record: IdempotencyRecord
    has_result: bool = False
    result: Any = None
    error: Optional[str] = None
    from_cache: bool = field(default=False, compare=False)

    @property
    def key(self) -> str:
        return self.record.key

    @property
    def owner_token(self) -> str:
        return self.record.owner_token
