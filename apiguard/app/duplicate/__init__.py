from apiguard.app.duplicate.models import (
    DuplicateSubmitMarker,
    DuplicateSubmitOutcome,
    SubmitDecision,
)
from apiguard.app.duplicate.service import DuplicateSubmitGate

__all__ = [
    "DuplicateSubmitGate",
    "DuplicateSubmitMarker",
    "DuplicateSubmitOutcome",
    "SubmitDecision",
]
