"""Duplicate submission marker and outcome."""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from apiguard.app.exceptions import BackendFailureError


@dataclass
class DuplicateSubmitMarker:
    """Presence marker for one submission; never mutated once created."""
    key: str
    created_at: int
    interval_seconds: int
    expire_time: int
    operation: Optional[str] = None
    caller: Optional[str] = None

    def retry_after_seconds(self, now_ms: int) -> int:
        """Seconds until the marker expires (0 once expired)."""
        return max(0, math.ceil((self.expire_time - now_ms) / 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "operation": self.operation,
            "caller": self.caller,
            "created_at": self.created_at,
            "interval_seconds": self.interval_seconds,
            "expire_time": self.expire_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DuplicateSubmitMarker":
        try:
            return cls(
                key=data["key"],
                created_at=int(data["created_at"]),
                interval_seconds=int(data["interval_seconds"]),
                expire_time=int(data["expire_time"]),
                operation=data.get("operation"),
                caller=data.get("caller"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise BackendFailureError(
                "decode_marker", data.get("key") if isinstance(data, dict) else None,
                cause=e, detail=f"Malformed duplicate submission marker: {e}",
            ) from e


class SubmitDecision(str, Enum):
    ACQUIRED = "ACQUIRED"
    REJECTED = "REJECTED"


@dataclass
class DuplicateSubmitOutcome:
    """ACQUIRED carries our new marker, REJECTED the one that blocked us."""
    decision: SubmitDecision
    marker: DuplicateSubmitMarker
    retry_after_seconds: int = 0

    @property
    def acquired(self) -> bool:
        return self.decision is SubmitDecision.ACQUIRED
