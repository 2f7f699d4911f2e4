"""
In-process implementation of CatalogStore.

Holds every table as a dict of row dicts and enforces the same constraints
as the Postgres schema (unique normalized acr_sku, foreign keys without
cascade, year order, unique cross-reference and alias identity), so the
executor's atomicity and ordering can be exercised without a database.

Transactions copy the tables on begin and restore the copy on rollback.
Reads through fetch_rows() and list_history() always see committed data.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from uuid import uuid4

from .store import CatalogStore
from ..errors import StoreConstraintError, StoreConnectionError
from ..normalizer import normalize_sku
from ..schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
    IMPORT_HISTORY_TABLE,
    ENTITY_TABLES,
    ALIAS_TYPES,
)
from ..state import cross_reference_key, alias_key

logger = logging.getLogger(__name__)


class MemoryClient(CatalogStore):
    """
    Transactional in-memory catalog store.

    Args:
        fail_after_writes: If set, raise StoreConnectionError on the write
            after this many writes in a transaction (simulates a dropped
            connection mid-batch).
    """

    def __init__(self, fail_after_writes: Optional[int] = None):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            table: {} for table in ENTITY_TABLES + [IMPORT_HISTORY_TABLE]
        }
        self._committed: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._sequence = 0
        self._writes = 0
        self.fail_after_writes = fail_after_writes

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._committed is not None

    def begin_transaction(self) -> None:
        if self._committed is not None:
            raise RuntimeError("Transaction already in progress")
        self._committed = copy.deepcopy(self._tables)
        self._writes = 0

    def commit_transaction(self) -> None:
        if self._committed is None:
            raise RuntimeError("No transaction in progress")
        self._committed = None

    def rollback_transaction(self) -> None:
        if self._committed is None:
            raise RuntimeError("No transaction in progress")
        self._tables = self._committed
        self._committed = None

    def _require_transaction(self):
        if self._committed is None:
            raise RuntimeError("No transaction in progress. Call begin_transaction() first.")

    def _count_write(self):
        if self.fail_after_writes is not None and self._writes >= self.fail_after_writes:
            raise StoreConnectionError("Connection lost")
        self._writes += 1

    def _visible(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Committed tables, as seen by readers outside the transaction."""
        return self._committed if self._committed is not None else self._tables

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    # =========================================================================
    # CONSTRAINTS
    # =========================================================================

    def _check_constraints(self, table: str, row_id: str, record: Dict[str, Any]) -> None:
        tables = self._tables

        if table == PARTS_TABLE:
            sku = normalize_sku(record.get("acr_sku"))
            if not sku:
                raise StoreConstraintError("parts.acr_sku must not be empty")
            for other_id, other in tables[PARTS_TABLE].items():
                if other_id != row_id and other.get("tenant_id") == record.get("tenant_id") \
                        and normalize_sku(other.get("acr_sku")) == sku:
                    raise StoreConstraintError(
                        f"duplicate key value violates unique constraint parts_acr_sku_key: {record.get('acr_sku')}"
                    )

        elif table == VEHICLE_APPLICATIONS_TABLE:
            if record.get("part_id") not in tables[PARTS_TABLE]:
                raise StoreConstraintError(
                    f"vehicle_applications.part_id {record.get('part_id')} violates foreign key"
                )
            start, end = record.get("start_year"), record.get("end_year")
            if start is not None and end is not None and start > end:
                raise StoreConstraintError(f"vehicle_applications year check violated: {start} > {end}")

        elif table == CROSS_REFERENCES_TABLE:
            if record.get("acr_part_id") not in tables[PARTS_TABLE]:
                raise StoreConstraintError(
                    f"cross_references.acr_part_id {record.get('acr_part_id')} violates foreign key"
                )
            key = cross_reference_key(record.get("acr_part_id"), record.get("competitor_brand"),
                                      record.get("competitor_sku"))
            for other_id, other in tables[CROSS_REFERENCES_TABLE].items():
                if other_id != row_id and cross_reference_key(
                        other.get("acr_part_id"), other.get("competitor_brand"), other.get("competitor_sku")) == key:
                    raise StoreConstraintError(f"duplicate cross reference {key}")

        elif table == ALIASES_TABLE:
            if record.get("alias_type") not in ALIAS_TYPES:
                raise StoreConstraintError(f"vehicle_aliases.alias_type check violated: {record.get('alias_type')}")
            key = alias_key(record.get("alias"), record.get("alias_type"))
            for other_id, other in tables[ALIASES_TABLE].items():
                if other_id != row_id and other.get("tenant_id") == record.get("tenant_id") \
                        and alias_key(other.get("alias"), other.get("alias_type")) == key:
                    raise StoreConstraintError(f"duplicate alias {key}")

    def _check_no_dependents(self, part_id: str) -> None:
        for va in self._tables[VEHICLE_APPLICATIONS_TABLE].values():
            if va.get("part_id") == part_id:
                raise StoreConstraintError(f"part {part_id} is still referenced by vehicle_applications")
        for ref in self._tables[CROSS_REFERENCES_TABLE].values():
            if ref.get("acr_part_id") == part_id:
                raise StoreConstraintError(f"part {part_id} is still referenced by cross_references")

    # =========================================================================
    # ENTITY ROWS
    # =========================================================================

    def fetch_rows(self, table: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            dict(row) for row in self._visible()[table].values()
            if row.get("tenant_id") == tenant_id
        ]

    def get_rows(self, table: str, ids: List[str]) -> List[Dict[str, Any]]:
        self._require_transaction()
        rows = self._tables[table]
        return [dict(rows[i]) for i in ids if i in rows]

    def insert_row(self, table: str, record: Dict[str, Any]) -> str:
        self._require_transaction()
        self._count_write()
        row = dict(record)
        row_id = str(row.get("id") or uuid4())
        if row_id in self._tables[table]:
            raise StoreConstraintError(f"duplicate key value violates unique constraint {table}_pkey: {row_id}")
        row["id"] = row_id
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        self._check_constraints(table, row_id, row)
        self._tables[table][row_id] = row
        return row_id

    def update_row(self, table: str, row_id: str, values: Dict[str, Any]) -> int:
        self._require_transaction()
        self._count_write()
        current = self._tables[table].get(row_id)
        if current is None:
            return 0
        updated = {**current, **values, "id": row_id}
        self._check_constraints(table, row_id, updated)
        self._tables[table][row_id] = updated
        return 1

    def delete_rows(self, table: str, ids: List[str]) -> int:
        self._require_transaction()
        deleted = 0
        for row_id in ids:
            self._count_write()
            if row_id not in self._tables[table]:
                continue
            if table == PARTS_TABLE:
                self._check_no_dependents(row_id)
            del self._tables[table][row_id]
            deleted += 1
        return deleted

    # =========================================================================
    # IMPORT HISTORY
    # =========================================================================

    def insert_history(self, record: Dict[str, Any]) -> str:
        self._require_transaction()
        self._count_write()
        row = copy.deepcopy(record)
        row_id = str(row.get("id") or uuid4())
        row["id"] = row_id
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        row.setdefault("consumed_at", None)
        row["_sequence"] = self._next_sequence()
        self._tables[IMPORT_HISTORY_TABLE][row_id] = row
        return row_id

    def get_history(self, import_id: str, for_update: bool = True) -> Optional[Dict[str, Any]]:
        self._require_transaction()
        row = self._tables[IMPORT_HISTORY_TABLE].get(str(import_id))
        return self._public_history(row, with_snapshot=True) if row else None

    def _unconsumed_history(self, tables, tenant_id):
        rows = [
            row for row in tables[IMPORT_HISTORY_TABLE].values()
            if row.get("tenant_id") == tenant_id and row.get("consumed_at") is None
        ]
        return sorted(rows, key=lambda r: r["_sequence"], reverse=True)

    def latest_history_id(self, tenant_id: Optional[str] = None) -> Optional[str]:
        rows = self._unconsumed_history(self._tables, tenant_id)
        return rows[0]["id"] if rows else None

    def mark_history_consumed(self, import_id: str) -> bool:
        self._require_transaction()
        self._count_write()
        row = self._tables[IMPORT_HISTORY_TABLE].get(str(import_id))
        if row is None or row.get("consumed_at") is not None:
            return False
        row["consumed_at"] = datetime.now(timezone.utc).isoformat()
        return True

    def list_history(self, tenant_id: Optional[str] = None, limit: int = 3) -> List[Dict[str, Any]]:
        rows = self._unconsumed_history(self._visible(), tenant_id)[:limit]
        return [self._public_history(row, with_snapshot=False) for row in rows]

    def prune_history(self, tenant_id: Optional[str] = None, keep: int = 3) -> int:
        self._require_transaction()
        pruned = 0
        for row in self._unconsumed_history(self._tables, tenant_id)[keep:]:
            row["consumed_at"] = datetime.now(timezone.utc).isoformat()
            pruned += 1
        return pruned

    @staticmethod
    def _public_history(row: Dict[str, Any], with_snapshot: bool) -> Dict[str, Any]:
        result = {k: copy.deepcopy(v) for k, v in row.items() if not k.startswith("_")}
        if not with_snapshot:
            result.pop("snapshot_data", None)
        return result

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def row_counts(self) -> Dict[str, int]:
        """Committed row count per entity table."""
        return {table: len(self._visible()[table]) for table in ENTITY_TABLES}

    def close(self):
        """Nothing to release; present for parity with SupabaseClient."""
