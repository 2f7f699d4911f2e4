"""
Validation engine for catalog workbooks.

validate(workbook, state) -> ValidationResult

CORE PRINCIPLES:
1. Stateless: the result depends only on the extracted rows, the stored
   catalog snapshot and the settings. The store is never queried.
2. Deterministic: rules run in a fixed order and walk rows in sheet order.
3. Errors and warnings are never merged: any error makes the import
   invalid; warnings only gate execution.
"""

import logging
from typing import Callable, List, Optional

from ..config import Settings
from ..rows import ExtractedWorkbook
from ..state import CatalogState, PartResolver
from .issues import ValidationResult
from .rules import RULES, ValidationContext

logger = logging.getLogger(__name__)


class ValidationEngine:
    """Runs the ordered rule set over an extracted workbook."""

    def __init__(self, settings: Optional[Settings] = None, rules: Optional[List[Callable]] = None):
        """
        Args:
            settings: SKU prefix and year bounds (defaults apply when omitted)
            rules: Override the rule list (defaults to RULES)
        """
        self.settings = settings or Settings()
        self.rules = rules if rules is not None else RULES

    def validate(self, workbook: ExtractedWorkbook, state: CatalogState) -> ValidationResult:
        context = ValidationContext(
            settings=self.settings,
            resolver=PartResolver(workbook.parts, state),
            diagnostic_cells={(d.sheet, d.row, d.column) for d in workbook.diagnostics},
        )

        result = ValidationResult()
        for rule in self.rules:
            for issue in rule(workbook, state, context):
                result.add(issue)

        logger.info(
            f"Validation finished: {len(result.errors)} error(s), {len(result.warnings)} warning(s)"
        )
        return result


def validate_workbook(
    workbook: ExtractedWorkbook,
    state: CatalogState,
    settings: Optional[Settings] = None
) -> ValidationResult:
    """Validate with the default rule set."""
    return ValidationEngine(settings=settings).validate(workbook, state)
