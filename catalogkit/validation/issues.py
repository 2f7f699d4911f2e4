"""
Validation issue taxonomy.

Two independent severities, never merged:
- Errors (E-codes) are fatal to the current import attempt. The file must be
  fixed and re-uploaded; diffing and execution refuse to run.
- Warnings (W-codes) describe legal but surprising changes. They gate only
  execution, which requires the caller to acknowledge every warning code.

Codes are stable identifiers. Messages are for humans and may change.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


class IssueCode(Enum):
    """Stable validation codes. The value is the code reported to callers."""
    # Structure
    E1_MISSING_HIDDEN_COLUMNS = "E1"
    E10_MISSING_SHEET = "E10"
    E11_DUPLICATE_HEADERS = "E11"
    E12_MISSING_REQUIRED_COLUMNS = "E12"

    # Cell and row content
    E2_DUPLICATE_SKU = "E2"
    E3_EMPTY_REQUIRED_FIELD = "E3"
    E4_INVALID_ID = "E4"
    E5_ORPHANED_PART_REFERENCE = "E5"
    E6_INVALID_YEAR_RANGE = "E6"
    E7_STRING_TOO_LONG = "E7"
    E8_YEAR_OUT_OF_RANGE = "E8"
    E9_INVALID_NUMBER_FORMAT = "E9"
    E19_ID_NOT_IN_STORE = "E19"
    E20_INVALID_SKU_FORMAT = "E20"
    E21_INVALID_ROW_ACTION = "E21"
    E22_INVALID_URL = "E22"
    E23_INVALID_ALIAS_TYPE = "E23"
    E24_DUPLICATE_ALIAS = "E24"
    E25_PART_MATCHED_TWICE = "E25"

    # Changes against stored values
    W1_SKU_CHANGED = "W1"
    W2_YEAR_RANGE_NARROWED = "W2"
    W3_PART_TYPE_CHANGED = "W3"
    W4_POSITION_CHANGED = "W4"
    W5_CROSS_REFERENCE_DELETED = "W5"
    W6_VEHICLE_APPLICATION_DELETED = "W6"
    W7_SPECIFICATIONS_SHORTENED = "W7"
    W8_MAKE_CHANGED = "W8"
    W9_MODEL_CHANGED = "W9"

    # Recoverable input problems
    W11_DUPLICATE_COMPETITOR_SKU = "W11"
    W12_SPACE_DELIMITED_SKUS = "W12"

    # Emitted by the diff engine
    W13_PART_DELETE_CASCADE = "W13"

    @property
    def severity(self) -> Severity:
        return Severity.ERROR if self.value.startswith("E") else Severity.WARNING


@dataclass
class ValidationIssue:
    """A single error or warning, located by sheet, row and column."""
    code: IssueCode
    sheet: str
    row: Optional[int]
    column: Optional[str]
    message: str
    value: Any = None
    rows: List[int] = field(default_factory=list)  # every row involved, for multi-row issues

    @property
    def severity(self) -> Severity:
        return self.code.severity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "sheet": self.sheet,
            "row": self.row,
            "column": self.column,
            "message": self.message,
            "value": self.value,
            "rows": list(self.rows) if self.rows else ([self.row] if self.row is not None else []),
        }


@dataclass
class ValidationResult:
    """
    Ordered validation outcome.

    valid is True iff there are no errors. Issue order follows rule order,
    then sheet row order, so results are reproducible.
    """
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def warning_codes(self) -> List[str]:
        codes = []
        for issue in self.warnings:
            if issue.code.value not in codes:
                codes.append(issue.code.value)
        return codes

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity == Severity.ERROR:
            self.errors.append(issue)
        else:
            self.warnings.append(issue)

    def summary(self) -> Dict[str, Any]:
        errors_by_sheet: Dict[str, int] = {}
        warnings_by_sheet: Dict[str, int] = {}
        for issue in self.errors:
            errors_by_sheet[issue.sheet] = errors_by_sheet.get(issue.sheet, 0) + 1
        for issue in self.warnings:
            warnings_by_sheet[issue.sheet] = warnings_by_sheet.get(issue.sheet, 0) + 1
        return {
            "totalErrors": len(self.errors),
            "totalWarnings": len(self.warnings),
            "errorsBySheet": errors_by_sheet,
            "warningsBySheet": warnings_by_sheet,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "summary": self.summary(),
        }
