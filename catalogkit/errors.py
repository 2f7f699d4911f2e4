"""
Exception taxonomy for the catalog import pipeline.

Validation findings (E/W codes) are never raised; they are ValidationIssue
values. Exceptions here cover three separate failure families:

1. Preconditions: the caller asked for something that must not run
   (unacknowledged warnings, empty diff, rollback of a consumed snapshot).
2. Store errors: raised by CatalogStore implementations (constraint
   violation, lost connection).
3. Transaction failures: what the executor and rollback service report
   after aborting a transaction. The store is always left unchanged.
"""

from typing import Iterable, List, Optional


class CatalogImportError(Exception):
    """Base class for all catalog import failures."""


class FileTooLargeError(CatalogImportError, ValueError):
    """Uploaded workbook exceeds the configured size limit."""


class ValidationFailedError(CatalogImportError, ValueError):
    """Diffing or execution was requested for a workbook with errors."""

    def __init__(self, result):
        self.result = result
        codes = sorted({issue.code.value for issue in result.errors})
        super().__init__(f"Validation failed with {len(result.errors)} error(s): {', '.join(codes)}")


# =============================================================================
# PRECONDITIONS
# =============================================================================

class PreconditionError(CatalogImportError):
    """A request was rejected before any write happened."""


class UnacknowledgedWarningsError(PreconditionError):
    """The diff carries warnings the caller has not acknowledged."""

    def __init__(self, codes: Iterable[str]):
        self.codes: List[str] = sorted(set(codes))
        super().__init__(f"Warnings must be acknowledged before execution: {', '.join(self.codes)}")


class NoChangesError(PreconditionError):
    """The diff is empty; there is nothing to execute."""


class RollbackRejectedError(PreconditionError):
    """
    Rollback precondition failed.

    reason is one of: "not_found", "already_consumed", "not_latest".
    Never retried automatically.
    """

    def __init__(self, import_id, reason: str, message: Optional[str] = None):
        self.import_id = import_id
        self.reason = reason
        super().__init__(message or f"Rollback of import {import_id} rejected: {reason}")


# =============================================================================
# STORE ERRORS
# =============================================================================

class StoreError(CatalogImportError):
    """Raised by store implementations."""


class StoreConstraintError(StoreError):
    """A unique, foreign-key or check constraint was violated."""


class StoreConnectionError(StoreError):
    """The store connection failed or was lost mid-transaction."""


# =============================================================================
# TRANSACTION FAILURES
# =============================================================================

CONSTRAINT_VIOLATION = "constraint_violation"
CONNECTION = "connection"
STALE_DIFF = "stale_diff"
UNKNOWN = "unknown"


class StaleDiffError(StoreError):
    """A row the diff expects to update or delete no longer exists."""


class TransactionFailedError(CatalogImportError, RuntimeError):
    """
    A write transaction was aborted and rolled back.

    kind is one of: "constraint_violation", "connection", "stale_diff",
    "unknown". Distinct from E/W validation codes.
    """

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message)

    @classmethod
    def from_store_error(cls, exc: Exception, action: str) -> "TransactionFailedError":
        if isinstance(exc, StoreConstraintError):
            kind = CONSTRAINT_VIOLATION
        elif isinstance(exc, StoreConnectionError):
            kind = CONNECTION
        elif isinstance(exc, StaleDiffError):
            kind = STALE_DIFF
        else:
            kind = UNKNOWN
        return cls(kind, f"{action} failed and was rolled back: {exc}")
