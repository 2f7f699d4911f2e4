"""
Rollback of a committed import from its ImportSnapshot.

Rollback undoes the import's writes in exactly the reverse order the executor
made them, inside one transaction:

1. Aliases, cross references, vehicle applications: restore updated rows,
   then delete added rows
2. Parts: restore updated rows, delete added rows, re-insert deleted rows
   with their original ids
3. Re-insert deleted aliases, vehicle applications, cross references
4. Mark the history record consumed

Every step inverts a step that already succeeded, so foreign keys and
unique keys hold throughout. Rollbacks are sequential: only the newest
unconsumed import of a tenant can be rolled back.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..diff.catalog_diff import ENTITY_LABELS
from ..errors import (
    RollbackRejectedError,
    StoreError,
    TransactionFailedError,
)
from ..schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
    DEFAULT_SNAPSHOT_RETENTION,
)
from .snapshot import ImportSnapshot

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
ALREADY_CONSUMED = "already_consumed"
NOT_LATEST = "not_latest"

# Reverse of the executor's dependent write order
DEPENDENT_UNDO_ORDER = [ALIASES_TABLE, CROSS_REFERENCES_TABLE, VEHICLE_APPLICATIONS_TABLE]
DEPENDENT_REINSERT_ORDER = [ALIASES_TABLE, VEHICLE_APPLICATIONS_TABLE, CROSS_REFERENCES_TABLE]


@dataclass
class RollbackResult:
    import_id: str
    restored: Dict[str, Dict[str, int]]

    def to_dict(self) -> Dict[str, Any]:
        return {"importId": self.import_id, "restored": self.restored}


def _restore_values(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if k != "id"}


class RollbackService:
    """
    Reverts committed imports.

    Args:
        db: CatalogStore implementation
        tenant_id: Default tenant for list_available_snapshots()
        debug: Log per-table counts while restoring
        retention: Number of snapshots offered for rollback
    """

    def __init__(self, db, tenant_id: Optional[str] = None, debug: bool = False,
                 retention: int = DEFAULT_SNAPSHOT_RETENTION):
        self.db = db
        self.tenant_id = tenant_id
        self.debug = debug
        self.retention = retention

    def list_available_snapshots(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Newest unconsumed import_history records, without snapshot_data."""
        return self.db.list_history(tenant_id=self.tenant_id, limit=limit or self.retention)

    def _check_preconditions(self, import_id: str) -> Dict[str, Any]:
        record = self.db.get_history(import_id, for_update=True)
        if record is None:
            raise RollbackRejectedError(import_id, NOT_FOUND, f"Import {import_id} not found")
        if record.get("consumed_at") is not None:
            raise RollbackRejectedError(import_id, ALREADY_CONSUMED,
                                        f"Import {import_id} has already been rolled back")
        latest = self.db.latest_history_id(tenant_id=record.get("tenant_id"))
        if latest is not None and str(latest) != str(record["id"]):
            raise RollbackRejectedError(import_id, NOT_LATEST,
                                        f"Import {import_id} is not the most recent import; "
                                        f"roll back {latest} first")
        return record

    def _undo(self, snapshot: ImportSnapshot, table: str, counts: Dict[str, Dict[str, int]],
              reinsert: bool = False):
        label = ENTITY_LABELS[table]
        if reinsert:
            for row in snapshot.deleted(table):
                self.db.insert_row(table, dict(row))
            counts[label]["reinserted"] = len(snapshot.deleted(table))
            return

        for row in reversed(snapshot.updated(table)):
            self.db.update_row(table, str(row["id"]), _restore_values(row))
        counts[label]["reverted"] = len(snapshot.updated(table))

        added = snapshot.added(table)
        if added:
            counts[label]["deleted"] = self.db.delete_rows(table, added)

    def rollback(self, import_id: str) -> RollbackResult:
        """
        Revert one import atomically.

        Args:
            import_id: import_history id

        Returns:
            RollbackResult with per-entity counts

        Raises:
            RollbackRejectedError: not_found, already_consumed or not_latest
            TransactionFailedError: If a store write failed (nothing changed)
        """
        import_id = str(import_id)
        logger.info(f"Rolling back import {import_id}")
        counts = {label: {"deleted": 0, "reverted": 0, "reinserted": 0} for label in ENTITY_LABELS.values()}

        try:
            self.db.begin_transaction()
        except StoreError as e:
            logger.error(f"Rollback of import {import_id} could not open a transaction: {e}")
            raise TransactionFailedError.from_store_error(e, "Rollback") from e

        try:
            record = self._check_preconditions(import_id)
            snapshot = ImportSnapshot.from_snapshot_data(record.get("snapshot_data") or {})

            for table in DEPENDENT_UNDO_ORDER:
                self._undo(snapshot, table, counts)
            self._undo(snapshot, PARTS_TABLE, counts)
            self._undo(snapshot, PARTS_TABLE, counts, reinsert=True)
            for table in DEPENDENT_REINSERT_ORDER:
                self._undo(snapshot, table, counts, reinsert=True)

            if self.debug:
                logger.info(f"Rollback {import_id} restored: {counts}")

            if not self.db.mark_history_consumed(import_id):
                raise RollbackRejectedError(import_id, ALREADY_CONSUMED,
                                            f"Import {import_id} has already been rolled back")

            self.db.commit_transaction()
            logger.info(f"Rollback of import {import_id} committed")
            return RollbackResult(import_id=import_id, restored=counts)

        except RollbackRejectedError as e:
            self.db.rollback_transaction()
            logger.warning(f"Rollback of import {import_id} rejected: {e.reason}")
            raise

        except StoreError as e:
            self.db.rollback_transaction()
            logger.error(f"Rollback of import {import_id} failed: {e}", exc_info=True)
            raise TransactionFailedError.from_store_error(e, "Rollback") from e

        except Exception as e:
            self.db.rollback_transaction()
            logger.error(f"Rollback of import {import_id} failed: {e}", exc_info=True)
            raise
