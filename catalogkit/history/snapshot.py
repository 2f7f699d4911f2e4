"""
Import snapshots: the pre-change state rollback restores from.

snapshot_data layout (stored as JSON on import_history):

    {
        "parts": {"added": [ids], "updated": [pre-image rows], "deleted": [pre-image rows]},
        "vehicle_applications": {...},
        "cross_references": {...},
        "vehicle_aliases": {...},
        "timestamp": "<ISO-8601 capture time>"
    }

Pre-images are read from the store inside the executor's transaction (rows
are locked), not taken from the diff, so the snapshot reflects exactly what
the import overwrote. Added ids are recorded as inserts happen.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..errors import StaleDiffError
from ..schema import ENTITY_TABLES

logger = logging.getLogger(__name__)

ADDED = "added"
UPDATED = "updated"
DELETED = "deleted"


def _empty_tables() -> Dict[str, Dict[str, List]]:
    return {table: {ADDED: [], UPDATED: [], DELETED: []} for table in ENTITY_TABLES}


@dataclass
class ImportSnapshot:
    """Pre-change state of every row one import touches."""
    tables: Dict[str, Dict[str, List]] = field(default_factory=_empty_tables)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def record_added(self, table: str, row_id: str) -> None:
        self.tables[table][ADDED].append(row_id)

    def added(self, table: str) -> List[str]:
        return self.tables[table][ADDED]

    def updated(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table][UPDATED]

    def deleted(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table][DELETED]

    @property
    def snapshot_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            table: {
                ADDED: list(sections[ADDED]),
                UPDATED: [dict(row) for row in sections[UPDATED]],
                DELETED: [dict(row) for row in sections[DELETED]],
            }
            for table, sections in self.tables.items()
        }
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_snapshot_data(cls, data: Dict[str, Any]) -> "ImportSnapshot":
        """Rebuild from a stored import_history.snapshot_data value."""
        tables = _empty_tables()
        for table in ENTITY_TABLES:
            sections = data.get(table) or {}
            tables[table] = {
                ADDED: [str(i) for i in sections.get(ADDED, [])],
                UPDATED: [dict(row) for row in sections.get(UPDATED, [])],
                DELETED: [dict(row) for row in sections.get(DELETED, [])],
            }
        return cls(tables=tables, timestamp=data.get("timestamp") or datetime.now(timezone.utc).isoformat())

    def counts(self) -> Dict[str, Dict[str, int]]:
        return {
            table: {section: len(rows) for section, rows in sections.items()}
            for table, sections in self.tables.items()
        }


def capture_snapshot(db, diff) -> ImportSnapshot:
    """
    Read pre-images of every updated or deleted row.

    Must run inside the executor's transaction: rows are read with
    get_rows(), which locks them until commit or rollback.

    Args:
        db: CatalogStore with an open transaction
        diff: CatalogDiff about to be applied

    Returns:
        ImportSnapshot with updated/deleted sections filled; added ids are
        recorded later by the executor

    Raises:
        StaleDiffError: If a row the diff expects to exist is gone
    """
    snapshot = ImportSnapshot()

    for table, entity in diff.entities():
        for section, entries in ((UPDATED, entity.updated), (DELETED, entity.deleted)):
            ids = [entry.id for entry in entries]
            if not ids:
                continue
            rows = {str(row["id"]): row for row in db.get_rows(table, ids)}
            missing = [row_id for row_id in ids if row_id not in rows]
            if missing:
                raise StaleDiffError(
                    f"{len(missing)} {table} row(s) changed since the diff was computed: {', '.join(missing[:5])}"
                )
            snapshot.tables[table][section] = [rows[row_id] for row_id in ids]

    logger.info(f"Snapshot captured: {snapshot.counts()}")
    return snapshot
