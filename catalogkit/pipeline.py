"""
Catalog import pipeline: extract -> validate -> diff -> execute, plus rollback.

ImportPipeline wires the components together for one store and one tenant
and returns plain dicts suitable for an HTTP layer or a CLI. Exceptions from
the executor and rollback service are translated into
{"success": False, "error": {"type": ..., "message": ...}} results; file-level
problems (FileTooLargeError, unreadable workbooks) still raise.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .adapters.excel_adapter import ExcelAdapter
from .config import Settings
from .diff.catalog_diff import CatalogDiff, diff_catalog
from .errors import (
    NoChangesError,
    RollbackRejectedError,
    TransactionFailedError,
    UnacknowledgedWarningsError,
)
from .history.rollback import RollbackService
from .ingest.executor import ImportExecutor
from .parser import CatalogParser
from .rows import ExtractedWorkbook
from .state import CatalogState, load_catalog_state
from .validation.engine import ValidationEngine
from .validation.issues import ValidationResult

logger = logging.getLogger(__name__)


def _failure(error_type: str, message: str, **extra) -> Dict[str, Any]:
    error = {"type": error_type, "message": message}
    error.update(extra)
    return {"success": False, "error": error}


class ImportPipeline:
    """
    End-to-end catalog import for one store.

    Args:
        db: CatalogStore implementation
        settings: Pipeline settings (defaults apply when omitted)
        parser: Row extractor (defaults to a CatalogParser with the Excel adapter)
        debug: Verbose executor and rollback logging
    """

    def __init__(self, db, settings: Optional[Settings] = None,
                 parser: Optional[CatalogParser] = None, debug: bool = False):
        self.db = db
        self.settings = settings or Settings()
        if parser is None:
            parser = CatalogParser(max_file_size_mb=self.settings.max_file_size_mb)
            parser.register_adapter(ExcelAdapter())
        self.parser = parser
        self.validator = ValidationEngine(settings=self.settings)
        self.executor = ImportExecutor(db, settings=self.settings, debug=debug)
        self.rollbacks = RollbackService(
            db,
            tenant_id=self.settings.tenant_id,
            debug=debug,
            retention=self.settings.snapshot_retention,
        )

    def load_state(self) -> CatalogState:
        return load_catalog_state(self.db, tenant_id=self.settings.tenant_id)

    def _validate(self, source) -> Tuple[ExtractedWorkbook, CatalogState, ValidationResult]:
        workbook = self.parser.parse(source)
        state = self.load_state()
        return workbook, state, self.validator.validate(workbook, state)

    def compute_diff(self, source) -> Tuple[ValidationResult, Optional[CatalogDiff]]:
        """Validate a workbook and, when it has no errors, diff it."""
        workbook, state, result = self._validate(source)
        if not result.valid:
            return result, None
        return result, diff_catalog(workbook, state, result)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def validate(self, source) -> Dict[str, Any]:
        """
        Returns:
            {"valid", "errors", "warnings", "summary"}
        """
        _, _, result = self._validate(source)
        return result.to_dict()

    def preview(self, source) -> Dict[str, Any]:
        """
        Validate and diff without writing.

        Returns:
            {"valid", "errors", "warnings", "diff"}; diff is None when invalid.
            warnings include the diff's cascade warnings.
        """
        result, diff = self.compute_diff(source)
        warnings = diff.warnings if diff is not None else result.warnings
        return {
            "valid": result.valid,
            "errors": [e.to_dict() for e in result.errors],
            "warnings": [w.to_dict() for w in warnings],
            "diff": diff.to_dict() if diff is not None else None,
        }

    def execute(
        self,
        source,
        acknowledged_warnings: Iterable[str] = (),
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
        max_retries: int = 0
    ) -> Dict[str, Any]:
        """
        Validate, diff and apply a workbook.

        Returns:
            {"success": True, "importId", "summary"} or
            {"success": False, "error": {"type", "message", ...}, "errors"?}
        """
        workbook, state, result = self._validate(source)
        if not result.valid:
            response = _failure(
                "validation_failed",
                f"Validation failed with {len(result.errors)} error(s)",
            )
            response["errors"] = [e.to_dict() for e in result.errors]
            return response

        diff = diff_catalog(workbook, state, result)
        try:
            executed = self.executor.execute(
                diff,
                acknowledged_warnings=acknowledged_warnings,
                file_name=file_name,
                imported_by=imported_by,
                file_size_bytes=workbook.file_size_bytes,
                max_retries=max_retries,
            )
        except UnacknowledgedWarningsError as e:
            return _failure("warnings_unacknowledged", str(e), codes=e.codes)
        except NoChangesError as e:
            return _failure("no_changes", str(e))
        except TransactionFailedError as e:
            return _failure(e.kind, str(e))

        return {"success": True, "importId": executed.import_id, "summary": executed.summary}

    def rollback(self, import_id: str) -> Dict[str, Any]:
        """
        Returns:
            {"success": True, "importId", "restored"} or
            {"success": False, "error": {"type", "message", "reason"?}}
        """
        try:
            result = self.rollbacks.rollback(import_id)
        except RollbackRejectedError as e:
            return _failure("rollback_rejected", str(e), reason=e.reason)
        except TransactionFailedError as e:
            return _failure(e.kind, str(e))
        return {"success": True, **result.to_dict()}

    def list_snapshots(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.rollbacks.list_available_snapshots(limit=limit)

    def export(self, destination):
        """Write the current catalog as an importable workbook."""
        return self.parser.export(self.load_state(), destination)
