"""Import snapshots and rollback."""

from .snapshot import ImportSnapshot, capture_snapshot
from .rollback import (
    RollbackService,
    RollbackResult,
    NOT_FOUND,
    ALREADY_CONSUMED,
    NOT_LATEST,
)

__all__ = [
    "ImportSnapshot",
    "capture_snapshot",
    "RollbackService",
    "RollbackResult",
    "NOT_FOUND",
    "ALREADY_CONSUMED",
    "NOT_LATEST",
]
