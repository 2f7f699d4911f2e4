"""
Diff engine for catalog imports.

This module compares validated workbook rows against the stored catalog and
classifies every entity as Added, Updated or Deleted:
- Uses surrogate ids as stable identity when the row carries one
- Falls back to natural keys (ACR_SKU, composite vehicle key, brand + SKU)
- Performs field-level diffs only for rows that match a stored entity
- Deletes only on an explicit row action or [DELETE] marker

CORE PRINCIPLES:
1. Identity before content: a row is matched first, compared second
2. Stored rows absent from the file are left alone (no implicit deletes)
3. Deleting a part deletes its dependents; the cascade is explicit in the diff
4. The diff is a pure function of (rows, stored state); the store is never queried
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from ..errors import ValidationFailedError
from ..normalizer import normalize_sku, normalize_text
from ..rows import ExtractedWorkbook
from ..schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
    PART_FIELDS,
    VEHICLE_APPLICATION_FIELDS,
    CROSS_REFERENCE_FIELDS,
    ALIAS_FIELDS,
    PARTS_SHEET,
)
from ..state import (
    CatalogState,
    PartResolver,
    alias_key,
    cross_reference_key,
    vehicle_application_key,
)
from ..validation.issues import IssueCode, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

# Why an entity landed in Deleted
REASON_ROW_ACTION = "row_action"
REASON_DELETE_MARKER = "delete_marker"
REASON_CASCADE = "cascade"

# camelCase names used in summaries returned to callers
ENTITY_LABELS = {
    PARTS_TABLE: "parts",
    VEHICLE_APPLICATIONS_TABLE: "vehicleApplications",
    CROSS_REFERENCES_TABLE: "crossReferences",
    ALIASES_TABLE: "aliases",
}


@dataclass
class FieldChange:
    """A single field-level change on a matched entity."""
    field: str
    was: Any
    now: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "was": self.was, "now": self.now}


@dataclass
class DiffEntry:
    """
    One entity in the diff.

    Added entries carry `after` only; Updated carry `id`, `before`, `after`
    (changed fields) and `changes`; Deleted carry `id` and `before`.

    part_key is set when the entity belongs to a part added by the same
    import: the parent id does not exist yet, so the executor maps the
    normalized SKU to the id it generates.
    """
    table: str
    key: Tuple
    id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changes: List[FieldChange] = field(default_factory=list)
    sheet: Optional[str] = None
    row_number: Optional[int] = None
    part_key: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sheet": self.sheet,
            "row": self.row_number,
            "before": self.before,
            "after": self.after,
            "changes": [c.to_dict() for c in self.changes],
            "partKey": self.part_key,
            "reason": self.reason,
        }


@dataclass
class EntityDiff:
    added: List[DiffEntry] = field(default_factory=list)
    updated: List[DiffEntry] = field(default_factory=list)
    deleted: List[DiffEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.updated) + len(self.deleted)

    def summary(self) -> Dict[str, int]:
        return {
            "adds": len(self.added),
            "updates": len(self.updated),
            "deletes": len(self.deleted),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": [e.to_dict() for e in self.added],
            "updated": [e.to_dict() for e in self.updated],
            "deleted": [e.to_dict() for e in self.deleted],
        }


@dataclass
class CatalogDiff:
    """
    Complete diff of one import against the stored catalog.

    warnings holds the validation warnings followed by warnings the diff
    itself raises (W13 cascades). Execution requires all of their codes to
    be acknowledged.
    """
    parts: EntityDiff = field(default_factory=EntityDiff)
    vehicle_applications: EntityDiff = field(default_factory=EntityDiff)
    cross_references: EntityDiff = field(default_factory=EntityDiff)
    aliases: EntityDiff = field(default_factory=EntityDiff)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def entities(self) -> List[Tuple[str, EntityDiff]]:
        return [
            (PARTS_TABLE, self.parts),
            (VEHICLE_APPLICATIONS_TABLE, self.vehicle_applications),
            (CROSS_REFERENCES_TABLE, self.cross_references),
            (ALIASES_TABLE, self.aliases),
        ]

    @property
    def total_changes(self) -> int:
        return sum(entity.total for _, entity in self.entities())

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0

    @property
    def warning_codes(self) -> List[str]:
        codes = []
        for issue in self.warnings:
            if issue.code.value not in codes:
                codes.append(issue.code.value)
        return codes

    def summary(self) -> Dict[str, Any]:
        """
        Counts per entity plus totals.

        Returns:
            {"parts": {"adds", "updates", "deletes"}, ..., "totalAdds",
             "totalUpdates", "totalDeletes", "totalChanges"}
        """
        summary: Dict[str, Any] = {}
        for table, entity in self.entities():
            summary[ENTITY_LABELS[table]] = entity.summary()
        summary["totalAdds"] = sum(len(e.added) for _, e in self.entities())
        summary["totalUpdates"] = sum(len(e.updated) for _, e in self.entities())
        summary["totalDeletes"] = sum(len(e.deleted) for _, e in self.entities())
        summary["totalChanges"] = self.total_changes
        return summary

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            ENTITY_LABELS[table]: entity.to_dict() for table, entity in self.entities()
        }
        result["summary"] = self.summary()
        result["warnings"] = [w.to_dict() for w in self.warnings]
        return result


def _text(value: Any) -> Any:
    return normalize_text(value) if isinstance(value, str) or value is None else value


def diff_fields(stored: Dict[str, Any], values: Dict[str, Any], fields: List[str]) -> List[FieldChange]:
    """
    Field-level diff of a stored row against new values.

    Text is compared after trimming, with None and "" treated alike, so an
    exported-then-reimported file produces no changes.
    """
    changes = []
    for name in fields:
        was = _text(stored.get(name))
        now = _text(values.get(name))
        if was != now:
            changes.append(FieldChange(field=name, was=stored.get(name), now=now))
    return changes


class _DiffBuilder:
    """Accumulates one CatalogDiff; tracks ids already claimed per table."""

    def __init__(self, workbook: ExtractedWorkbook, state: CatalogState):
        self.workbook = workbook
        self.state = state
        self.resolver = PartResolver(workbook.parts, state)
        self.diff = CatalogDiff()
        self.claimed: Dict[str, Set[str]] = {
            PARTS_TABLE: set(),
            VEHICLE_APPLICATIONS_TABLE: set(),
            CROSS_REFERENCES_TABLE: set(),
            ALIASES_TABLE: set(),
        }
        self.added_part_keys: Set[str] = set()
        self.deleted_parts: List[Tuple[Dict[str, Any], Any]] = []

    def _claim(self, table: str, row_id: str) -> bool:
        """Mark a stored id as handled; False if an earlier row already did."""
        if row_id in self.claimed[table]:
            return False
        self.claimed[table].add(row_id)
        return True

    def _delete(self, entity: EntityDiff, table: str, stored: Dict[str, Any], key: Tuple,
                reason: str, row=None):
        if not self._claim(table, stored["id"]):
            return
        entity.deleted.append(DiffEntry(
            table=table,
            key=key,
            id=stored["id"],
            before=dict(stored),
            sheet=getattr(row, "sheet", None),
            row_number=getattr(row, "row_number", None),
            reason=reason,
        ))

    # -------------------------------------------------------------------------
    # Parts
    # -------------------------------------------------------------------------

    def diff_parts(self):
        entity = self.diff.parts
        for part in self.workbook.parts:
            stored = self.resolver.stored_part(part)
            key = (normalize_sku(part.acr_sku),)

            if part.is_delete:
                if stored is not None and stored["id"] not in self.claimed[PARTS_TABLE]:
                    self._delete(entity, PARTS_TABLE, stored, key, REASON_ROW_ACTION, part)
                    self.deleted_parts.append((stored, part))
                continue

            if stored is None:
                if key[0] in self.added_part_keys:
                    continue
                self.added_part_keys.add(key[0])
                after = {name: _text(value) for name, value in part.values().items()}
                entity.added.append(DiffEntry(
                    table=PARTS_TABLE,
                    key=key,
                    after=after,
                    sheet=part.sheet,
                    row_number=part.row_number,
                ))
                continue

            if not self._claim(PARTS_TABLE, stored["id"]):
                logger.warning(f"Row {part.row_number}: part {stored['id']} already matched by an earlier row")
                continue
            changes = diff_fields(stored, part.values(), PART_FIELDS)
            if changes:
                entity.updated.append(DiffEntry(
                    table=PARTS_TABLE,
                    key=key,
                    id=stored["id"],
                    before=dict(stored),
                    after={c.field: c.now for c in changes},
                    changes=changes,
                    sheet=part.sheet,
                    row_number=part.row_number,
                ))

    def order_part_renames(self):
        """Put each part update after the update that frees the SKU it takes."""
        updates = self.diff.parts.updated
        holders = {
            normalize_sku(entry.before.get("acr_sku")): entry
            for entry in updates
            if "acr_sku" in entry.after
        }
        ordered: List[DiffEntry] = []
        placed: Set[str] = set()

        def place(entry: DiffEntry, pending: Set[str]):
            if entry.id in placed or entry.id in pending:
                return
            holder = holders.get(normalize_sku(entry.after.get("acr_sku")))
            if holder is not None and holder is not entry:
                place(holder, pending | {entry.id})
            placed.add(entry.id)
            ordered.append(entry)

        for entry in updates:
            place(entry, set())
        self.diff.parts.updated = ordered

    # -------------------------------------------------------------------------
    # Vehicle applications
    # -------------------------------------------------------------------------

    def diff_vehicle_applications(self):
        entity = self.diff.vehicle_applications
        added_keys: Set[Tuple] = set()

        for va in self.workbook.vehicle_applications:
            ref = self.resolver.resolve(va.part_id, va.acr_sku)

            stored = self.state.vehicle_applications.get(va.id) if va.id else None
            if stored is None and va.id is None and ref is not None and ref.part_id:
                stored = self.state.vehicle_application_by_key(
                    vehicle_application_key(ref.part_id, va.make, va.model, va.start_year, va.end_year)
                )

            if va.is_delete:
                if stored is not None:
                    key = vehicle_application_key(stored.get("part_id"), stored.get("make"), stored.get("model"),
                                                  stored.get("start_year"), stored.get("end_year"))
                    self._delete(entity, VEHICLE_APPLICATIONS_TABLE, stored, key, REASON_ROW_ACTION, va)
                continue

            if ref is None:
                raise ValueError(f"Vehicle application on row {va.row_number} references an unknown part")
            if ref.deleted:
                # Stored applications of a deleted part go through the cascade
                continue

            key = vehicle_application_key(ref.identity, va.make, va.model, va.start_year, va.end_year)
            values = {
                "part_id": ref.part_id,
                "make": va.make,
                "model": va.model,
                "start_year": va.start_year,
                "end_year": va.end_year,
            }

            if stored is None:
                if key in added_keys:
                    continue
                added_keys.add(key)
                entity.added.append(DiffEntry(
                    table=VEHICLE_APPLICATIONS_TABLE,
                    key=key,
                    after=values,
                    sheet=va.sheet,
                    row_number=va.row_number,
                    part_key=ref.key if ref.is_new else None,
                ))
                continue

            if not self._claim(VEHICLE_APPLICATIONS_TABLE, stored["id"]):
                continue
            changes = diff_fields(stored, values, VEHICLE_APPLICATION_FIELDS)
            if changes:
                entity.updated.append(DiffEntry(
                    table=VEHICLE_APPLICATIONS_TABLE,
                    key=key,
                    id=stored["id"],
                    before=dict(stored),
                    after={c.field: c.now for c in changes},
                    changes=changes,
                    sheet=va.sheet,
                    row_number=va.row_number,
                    part_key=ref.key if ref.is_new else None,
                ))

    # -------------------------------------------------------------------------
    # Cross references
    # -------------------------------------------------------------------------

    def diff_cross_references(self):
        entity = self.diff.cross_references
        part_rows = {(p.sheet, p.row_number): p for p in self.workbook.parts}
        added: Dict[Tuple, DiffEntry] = {}
        delete_keys: Set[Tuple] = set()

        for xref in self.workbook.cross_references:
            part = part_rows.get((xref.sheet, xref.row_number))
            if part is None or part.is_delete:
                continue
            ref = self.resolver.ref_for_part_row(part)
            if ref is None:
                raise ValueError(f"Cross reference on row {xref.row_number} has no resolvable part")

            key = cross_reference_key(ref.identity, xref.competitor_brand, xref.competitor_sku)
            stored = None
            if ref.part_id:
                stored = self.state.cross_reference_by_key(
                    cross_reference_key(ref.part_id, xref.competitor_brand, xref.competitor_sku)
                )

            if xref.delete:
                delete_keys.add(key)
                if stored is not None:
                    self._delete(entity, CROSS_REFERENCES_TABLE, stored, key, REASON_DELETE_MARKER, xref)
                continue

            if key in added:
                continue

            values = {
                "acr_part_id": ref.part_id,
                "competitor_brand": xref.competitor_brand,
                "competitor_sku": xref.competitor_sku,
            }
            if stored is None:
                added[key] = DiffEntry(
                    table=CROSS_REFERENCES_TABLE,
                    key=key,
                    after=values,
                    sheet=xref.sheet,
                    row_number=xref.row_number,
                    part_key=ref.key if ref.is_new else None,
                )
                continue

            if not self._claim(CROSS_REFERENCES_TABLE, stored["id"]):
                continue
            # Same normalized SKU, different spelling (e.g. "abc-1" -> "ABC1")
            changes = diff_fields(stored, values, CROSS_REFERENCE_FIELDS)
            if changes:
                entity.updated.append(DiffEntry(
                    table=CROSS_REFERENCES_TABLE,
                    key=key,
                    id=stored["id"],
                    before=dict(stored),
                    after={c.field: c.now for c in changes},
                    changes=changes,
                    sheet=xref.sheet,
                    row_number=xref.row_number,
                ))

        # A [DELETE] marker beats a plain occurrence of the same SKU
        entity.added.extend(e for k, e in added.items() if k not in delete_keys)

    # -------------------------------------------------------------------------
    # Aliases
    # -------------------------------------------------------------------------

    def diff_aliases(self):
        entity = self.diff.aliases
        added_keys: Set[Tuple] = set()

        for alias in self.workbook.aliases:
            key = alias_key(alias.alias, alias.alias_type)
            stored = self.state.alias_by_key(key)

            if alias.is_delete:
                if stored is not None:
                    self._delete(entity, ALIASES_TABLE, stored, key, REASON_ROW_ACTION, alias)
                continue

            values = {
                "alias": alias.alias,
                "canonical_name": alias.canonical_name,
                "alias_type": alias.alias_type,
            }
            if stored is None:
                if key in added_keys:
                    continue
                added_keys.add(key)
                entity.added.append(DiffEntry(
                    table=ALIASES_TABLE,
                    key=key,
                    after=values,
                    sheet=alias.sheet,
                    row_number=alias.row_number,
                ))
                continue

            if not self._claim(ALIASES_TABLE, stored["id"]):
                continue
            changes = diff_fields(stored, values, ALIAS_FIELDS)
            if changes:
                entity.updated.append(DiffEntry(
                    table=ALIASES_TABLE,
                    key=key,
                    id=stored["id"],
                    before=dict(stored),
                    after={c.field: c.now for c in changes},
                    changes=changes,
                    sheet=alias.sheet,
                    row_number=alias.row_number,
                ))

    # -------------------------------------------------------------------------
    # Cascade
    # -------------------------------------------------------------------------

    def cascade_part_deletes(self):
        """Add stored dependents of deleted parts to Deleted and warn (W13)."""
        for stored_part, part_row in self.deleted_parts:
            part_id = stored_part["id"]
            vas = [va for va in self.state.vehicle_applications_for_part(part_id)
                   if va["id"] not in self.claimed[VEHICLE_APPLICATIONS_TABLE]]
            refs = [ref for ref in self.state.cross_references_for_part(part_id)
                    if ref["id"] not in self.claimed[CROSS_REFERENCES_TABLE]]

            for va in vas:
                key = vehicle_application_key(part_id, va.get("make"), va.get("model"),
                                              va.get("start_year"), va.get("end_year"))
                self._delete(self.diff.vehicle_applications, VEHICLE_APPLICATIONS_TABLE, va, key, REASON_CASCADE)
            for ref in refs:
                key = cross_reference_key(part_id, ref.get("competitor_brand"), ref.get("competitor_sku"))
                self._delete(self.diff.cross_references, CROSS_REFERENCES_TABLE, ref, key, REASON_CASCADE)

            # Counts include dependents deleted explicitly by other rows
            total_vas = len(self.state.vehicle_applications_for_part(part_id))
            total_refs = len(self.state.cross_references_for_part(part_id))
            if total_vas or total_refs:
                self.diff.warnings.append(ValidationIssue(
                    code=IssueCode.W13_PART_DELETE_CASCADE,
                    sheet=part_row.sheet,
                    row=part_row.row_number,
                    column=PARTS_SHEET.column("action").header,
                    message=f"Deleting part {stored_part.get('acr_sku')} also deletes "
                            f"{total_vas} vehicle application(s) and {total_refs} cross reference(s)",
                    value={"vehicleApplications": total_vas, "crossReferences": total_refs},
                ))

    # -------------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------------

    def check_references(self):
        """Every added or updated dependent points at a surviving or new part."""
        deleted_ids = {e.id for e in self.diff.parts.deleted}
        for table, entity in ((VEHICLE_APPLICATIONS_TABLE, self.diff.vehicle_applications),
                              (CROSS_REFERENCES_TABLE, self.diff.cross_references)):
            parent_field = "part_id" if table == VEHICLE_APPLICATIONS_TABLE else "acr_part_id"
            for entry in entity.added + entity.updated:
                if entry.part_key is not None:
                    if entry.part_key not in self.added_part_keys:
                        raise ValueError(f"{table} row {entry.row_number} references unknown new part {entry.part_key}")
                    continue
                parent = (entry.after or {}).get(parent_field) or (entry.before or {}).get(parent_field)
                if parent not in self.state.parts or parent in deleted_ids:
                    raise ValueError(f"{table} row {entry.row_number} references missing or deleted part {parent}")

        deleted_entry_ids = {e.id for _, entity in self.diff.entities() for e in entity.deleted}
        for _, entity in self.diff.entities():
            for entry in entity.updated:
                if entry.id in deleted_entry_ids:
                    raise ValueError(f"{entry.table} {entry.id} is both updated and deleted")


def diff_catalog(
    workbook: ExtractedWorkbook,
    state: CatalogState,
    validation: ValidationResult
) -> CatalogDiff:
    """
    Classify every workbook entity against the stored catalog.

    Args:
        workbook: Extracted rows
        state: Current stored catalog
        validation: Result of validating the same workbook against the same state

    Returns:
        CatalogDiff

    Raises:
        ValidationFailedError: If validation reported any error
        ValueError: If the rows violate a diff invariant validation should have caught
    """
    if not validation.valid:
        raise ValidationFailedError(validation)

    builder = _DiffBuilder(workbook, state)
    builder.diff.warnings.extend(validation.warnings)

    builder.diff_parts()
    builder.order_part_renames()
    builder.diff_vehicle_applications()
    builder.diff_cross_references()
    builder.diff_aliases()
    builder.cascade_part_deletes()
    builder.check_references()

    logger.info(f"Diff computed: {builder.diff.summary()}")
    return builder.diff
