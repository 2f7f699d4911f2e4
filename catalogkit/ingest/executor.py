"""
Import executor: applies a CatalogDiff to the store in one transaction.

Write order (parents before children on insert, children before parents on
delete, so foreign keys hold after every statement):

1. Capture pre-images of every updated or deleted row (locks them)
2. Delete cross references, vehicle applications, aliases, parts
3. Insert parts; map each new part's normalized SKU to its generated id
4. Update parts
5. Insert/update vehicle applications, then cross references, resolving
   parents added by this import through the SKU -> id map
6. Insert/update aliases
7. Insert the import_history record and prune old snapshots
8. Commit

Any failure rolls the whole transaction back: the store is either fully
updated or untouched.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from ..config import Settings
from ..diff.catalog_diff import CatalogDiff, DiffEntry, ENTITY_LABELS
from ..errors import (
    CONNECTION,
    NoChangesError,
    StaleDiffError,
    StoreError,
    TransactionFailedError,
    UnacknowledgedWarningsError,
)
from ..history.snapshot import ImportSnapshot, capture_snapshot
from ..schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
)

logger = logging.getLogger(__name__)

UPDATED_BY = "import"

DELETE_ORDER = [CROSS_REFERENCES_TABLE, VEHICLE_APPLICATIONS_TABLE, ALIASES_TABLE, PARTS_TABLE]

# Dependent tables and the column holding their parent part id
PARENT_COLUMNS = {
    VEHICLE_APPLICATIONS_TABLE: "part_id",
    CROSS_REFERENCES_TABLE: "acr_part_id",
}

# Tables without an updated_by column
UNAUDITED_TABLES = {ALIASES_TABLE}


@dataclass
class ExecuteResult:
    import_id: str
    summary: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {"importId": self.import_id, "summary": self.summary}


def import_summary(diff: CatalogDiff) -> Dict[str, int]:
    """
    Counts recorded on import_history.import_summary.

    Returns:
        {"adds", "updates", "deletes", "partsAdded", "partsUpdated", ...,
         "aliasesDeleted", "totalChanges"}
    """
    summary = {
        "adds": sum(len(e.added) for _, e in diff.entities()),
        "updates": sum(len(e.updated) for _, e in diff.entities()),
        "deletes": sum(len(e.deleted) for _, e in diff.entities()),
    }
    for table, entity in diff.entities():
        label = ENTITY_LABELS[table]
        summary[f"{label}Added"] = len(entity.added)
        summary[f"{label}Updated"] = len(entity.updated)
        summary[f"{label}Deleted"] = len(entity.deleted)
    summary["totalChanges"] = diff.total_changes
    return summary


class ImportExecutor:
    """
    Applies diffs atomically and records a snapshot for rollback.

    Args:
        db: CatalogStore implementation
        settings: Tenant and snapshot retention (defaults apply when omitted)
        debug: Log per-stage counts
    """

    def __init__(self, db, settings: Optional[Settings] = None, debug: bool = False):
        self.db = db
        self.settings = settings or Settings()
        self.tenant_id = self.settings.tenant_id
        self.debug = debug

    # =========================================================================
    # PRECONDITIONS
    # =========================================================================

    def check_preconditions(self, diff: CatalogDiff, acknowledged_warnings: Iterable[str] = ()) -> None:
        """
        Raises:
            UnacknowledgedWarningsError: If a warning code in the diff is not acknowledged
            NoChangesError: If the diff is empty
        """
        acknowledged = {str(code).upper() for code in acknowledged_warnings}
        missing = [code for code in diff.warning_codes if code not in acknowledged]
        if missing:
            raise UnacknowledgedWarningsError(missing)
        if not diff.has_changes:
            raise NoChangesError("Nothing to import: the file matches the catalog")

    # =========================================================================
    # WRITES
    # =========================================================================

    def _record(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(values)
        record["tenant_id"] = self.tenant_id
        if table not in UNAUDITED_TABLES:
            record["updated_by"] = UPDATED_BY
        return record

    def _update_values(self, table: str, entry: DiffEntry) -> Dict[str, Any]:
        values = dict(entry.after or {})
        if table not in UNAUDITED_TABLES:
            values["updated_by"] = UPDATED_BY
        return values

    @staticmethod
    def _resolve_parent(table: str, entry: DiffEntry, values: Dict[str, Any],
                        new_part_ids: Dict[str, str]) -> Dict[str, Any]:
        if entry.part_key is None:
            return values
        parent_id = new_part_ids.get(entry.part_key)
        if parent_id is None:
            raise ValueError(f"{table} row {entry.row_number}: new part {entry.part_key} was not inserted")
        values[PARENT_COLUMNS[table]] = parent_id
        return values

    def _delete_all(self, diff: CatalogDiff) -> None:
        entities = dict(diff.entities())
        for table in DELETE_ORDER:
            ids = [entry.id for entry in entities[table].deleted]
            if not ids:
                continue
            deleted = self.db.delete_rows(table, ids)
            if deleted != len(ids):
                raise StaleDiffError(f"Expected to delete {len(ids)} {table} row(s), deleted {deleted}")
            if self.debug:
                logger.info(f"Deleted {deleted} {table} row(s)")

    def _update(self, table: str, entry: DiffEntry, values: Dict[str, Any]) -> None:
        if self.db.update_row(table, entry.id, values) != 1:
            raise StaleDiffError(f"{table} row {entry.id} no longer exists")

    def _apply(self, diff: CatalogDiff, snapshot: ImportSnapshot) -> None:
        self._delete_all(diff)

        new_part_ids: Dict[str, str] = {}
        for entry in diff.parts.added:
            row_id = self.db.insert_row(PARTS_TABLE, self._record(PARTS_TABLE, entry.after))
            snapshot.record_added(PARTS_TABLE, row_id)
            new_part_ids[entry.key[0]] = row_id
        for entry in diff.parts.updated:
            self._update(PARTS_TABLE, entry, self._update_values(PARTS_TABLE, entry))
        if self.debug:
            logger.info(f"Parts: {len(diff.parts.added)} inserted, {len(diff.parts.updated)} updated")

        for table, entity in ((VEHICLE_APPLICATIONS_TABLE, diff.vehicle_applications),
                              (CROSS_REFERENCES_TABLE, diff.cross_references)):
            for entry in entity.added:
                record = self._resolve_parent(table, entry, self._record(table, entry.after), new_part_ids)
                snapshot.record_added(table, self.db.insert_row(table, record))
            for entry in entity.updated:
                values = self._resolve_parent(table, entry, self._update_values(table, entry), new_part_ids)
                self._update(table, entry, values)
            if self.debug:
                logger.info(f"{table}: {len(entity.added)} inserted, {len(entity.updated)} updated")

        for entry in diff.aliases.added:
            snapshot.record_added(ALIASES_TABLE, self.db.insert_row(ALIASES_TABLE, self._record(ALIASES_TABLE, entry.after)))
        for entry in diff.aliases.updated:
            self._update(ALIASES_TABLE, entry, self._update_values(ALIASES_TABLE, entry))

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _execute_once(
        self,
        diff: CatalogDiff,
        file_name: Optional[str],
        imported_by: Optional[str],
        file_size_bytes: Optional[int]
    ) -> ExecuteResult:
        summary = import_summary(diff)

        try:
            self.db.begin_transaction()
        except StoreError as e:
            logger.error(f"Import could not open a transaction: {e}")
            raise TransactionFailedError.from_store_error(e, "Import") from e

        try:
            snapshot = capture_snapshot(self.db, diff)
            self._apply(diff, snapshot)

            import_id = self.db.insert_history({
                "tenant_id": self.tenant_id,
                "imported_by": imported_by,
                "file_name": file_name,
                "file_size_bytes": file_size_bytes,
                "rows_imported": summary["totalChanges"],
                "snapshot_data": snapshot.snapshot_data,
                "import_summary": summary,
            })
            pruned = self.db.prune_history(tenant_id=self.tenant_id, keep=self.settings.snapshot_retention)
            if self.debug and pruned:
                logger.info(f"Pruned {pruned} old snapshot(s)")

            self.db.commit_transaction()
            logger.info(f"Import {import_id} committed: {summary['totalChanges']} change(s)")
            return ExecuteResult(import_id=str(import_id), summary=summary)

        except StoreError as e:
            self.db.rollback_transaction()
            logger.error(f"Import failed and was rolled back: {e}", exc_info=True)
            raise TransactionFailedError.from_store_error(e, "Import") from e

        except Exception as e:
            self.db.rollback_transaction()
            logger.error(f"Import failed and was rolled back: {e}", exc_info=True)
            raise

    def execute(
        self,
        diff: CatalogDiff,
        acknowledged_warnings: Iterable[str] = (),
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
        file_size_bytes: Optional[int] = None,
        max_retries: int = 0
    ) -> ExecuteResult:
        """
        Apply a diff atomically.

        Args:
            diff: CatalogDiff from diff_catalog()
            acknowledged_warnings: Warning codes the caller accepts (e.g. ["W3"])
            file_name: Source file name for the history record
            imported_by: Who ran the import
            file_size_bytes: Source file size for the history record
            max_retries: Extra attempts after a lost connection (constraint
                violations are never retried)

        Returns:
            ExecuteResult(import_id, summary)

        Raises:
            UnacknowledgedWarningsError, NoChangesError: Before any write
            TransactionFailedError: If the transaction was rolled back
        """
        self.check_preconditions(diff, acknowledged_warnings)
        logger.info(f"Executing import: {diff.total_changes} change(s)")

        attempt = 0
        while True:
            try:
                return self._execute_once(diff, file_name, imported_by, file_size_bytes)
            except TransactionFailedError as e:
                if e.kind != CONNECTION or attempt >= max_retries:
                    raise
                attempt += 1
                logger.warning(f"Import lost its connection; retrying ({attempt}/{max_retries})")
