from apiguard.app.idempotency.models import (
    BeginResult,
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotentOutcome,
    OutcomeKind,
)
from apiguard.app.idempotency.service import IdempotencyGate

__all__ = [
    "BeginResult",
    "IdempotencyGate",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotentOutcome",
    "OutcomeKind",
]
