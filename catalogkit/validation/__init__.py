"""Workbook validation: ordered rule set producing E/W coded issues."""

from .issues import (
    IssueCode,
    Severity,
    ValidationIssue,
    ValidationResult,
)
from .engine import ValidationEngine, validate_workbook
from .rules import RULES, ValidationContext

__all__ = [
    "IssueCode",
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "ValidationEngine",
    "validate_workbook",
    "RULES",
    "ValidationContext",
]
