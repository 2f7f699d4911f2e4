"""
Validation rules.

Each rule is a plain function `rule(workbook, state, context)` yielding
ValidationIssue objects. Rules never touch the store and never depend on
each other, so every rule is independently testable. The engine runs them
in the fixed order of RULES.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlparse

from ..config import Settings
from ..normalizer import normalize_sku, normalize_text
from ..rows import ExtractedWorkbook, PartRow, VehicleApplicationRow
from ..schema import (
    MAX_LENGTHS,
    ALIAS_TYPES,
    SPECIFICATIONS_SHRINK_RATIO,
    PARTS_SHEET,
    VEHICLE_APPLICATIONS_SHEET,
    ALIASES_SHEET,
    SHEETS,
)
from ..state import CatalogState, PartResolver, cross_reference_key, vehicle_application_key, alias_key
from .issues import IssueCode, ValidationIssue

UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

PART_LENGTH_FIELDS = ["acr_sku", "part_type", "position_type", "abs_type", "bolt_pattern", "drive_type"]


@dataclass
class ValidationContext:
    """Per-run inputs shared by the rules."""
    settings: Settings
    resolver: PartResolver
    diagnostic_cells: Set[Tuple[str, int, str]]


def _header(sheet, field: str) -> str:
    column = sheet.column(field)
    return column.header if column else field


def _sheet_title(workbook: ExtractedWorkbook, sheet) -> str:
    info = workbook.sheets.get(sheet.key)
    return info.title if info else sheet.title


def _differs(stored, new) -> bool:
    """Compare optional text values, treating None and "" alike."""
    return normalize_text(stored) != normalize_text(new)


def _is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _too_long(field: str, value: Optional[str]) -> bool:
    limit = MAX_LENGTHS.get(field)
    return limit is not None and value is not None and len(value) > limit


# =============================================================================
# STRUCTURE
# =============================================================================

def check_sheet_structure(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """E10 missing sheets, E1 missing hidden columns, E12 missing columns, E11 duplicate headers."""
    for title in workbook.missing_sheets:
        yield ValidationIssue(
            code=IssueCode.E10_MISSING_SHEET,
            sheet=title,
            row=None,
            column=None,
            message=f"Required sheet '{title}' is missing",
        )

    for sheet in SHEETS:
        info = workbook.sheets.get(sheet.key)
        if info is None:
            continue

        if info.missing_hidden:
            headers = [_header(sheet, f) for f in info.missing_hidden]
            yield ValidationIssue(
                code=IssueCode.E1_MISSING_HIDDEN_COLUMNS,
                sheet=info.title,
                row=None,
                column=", ".join(headers),
                message=f"Sheet is missing hidden column(s) {', '.join(headers)}; export a fresh template",
            )

        if info.missing_required:
            headers = [_header(sheet, f) for f in info.missing_required]
            yield ValidationIssue(
                code=IssueCode.E12_MISSING_REQUIRED_COLUMNS,
                sheet=info.title,
                row=None,
                column=", ".join(headers),
                message=f"Sheet is missing required column(s) {', '.join(headers)}",
            )

        for field in info.duplicate_fields:
            yield ValidationIssue(
                code=IssueCode.E11_DUPLICATE_HEADERS,
                sheet=info.title,
                row=None,
                column=_header(sheet, field),
                message=f"More than one column maps to {_header(sheet, field)}",
            )


def check_cell_diagnostics(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """E9 for cells the extractor could not type."""
    for diagnostic in workbook.diagnostics:
        yield ValidationIssue(
            code=IssueCode.E9_INVALID_NUMBER_FORMAT,
            sheet=diagnostic.sheet,
            row=diagnostic.row,
            column=diagnostic.column,
            message=diagnostic.message,
            value=diagnostic.value,
        )


# =============================================================================
# PARTS
# =============================================================================

def check_part_rows(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """Row-local part checks: E3, E20, E7, E4, E19, E21, E22."""
    prefix = context.settings.sku_prefix.upper()

    for part in workbook.parts:
        def issue(code, field, message, value=None):
            return ValidationIssue(
                code=code,
                sheet=part.sheet,
                row=part.row_number,
                column=_header(PARTS_SHEET, field),
                message=message,
                value=value,
            )

        # Deleting an existing part needs only its identity
        needs_content = not (part.is_delete and part.id)

        if part.acr_sku is None:
            yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, "acr_sku", "ACR_SKU is required")
        elif not normalize_sku(part.acr_sku).startswith(prefix):
            yield issue(IssueCode.E20_INVALID_SKU_FORMAT, "acr_sku",
                        f"ACR_SKU must start with '{prefix}'", part.acr_sku)

        if needs_content and part.part_type is None:
            yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, "part_type", "Part_Type is required")

        for field in PART_LENGTH_FIELDS:
            value = getattr(part, field)
            if _too_long(field, value):
                yield issue(IssueCode.E7_STRING_TOO_LONG, field,
                            f"{_header(PARTS_SHEET, field)} exceeds {MAX_LENGTHS[field]} characters ({len(value)})",
                            value)

        if part.id is not None:
            if not UUID_RE.match(part.id):
                yield issue(IssueCode.E4_INVALID_ID, "id", "Hidden _id is not a valid identifier", part.id)
            elif part.id not in state.parts:
                yield issue(IssueCode.E19_ID_NOT_IN_STORE, "id",
                            "Hidden _id does not match any stored part", part.id)

        if part.action is None:
            yield issue(IssueCode.E21_INVALID_ROW_ACTION, "action",
                        f"Unrecognized status '{part.raw_action}' (use Activo, Inactivo or Eliminar)",
                        part.raw_action)

        for url_field, url in part.image_urls.items():
            if not _is_valid_url(url):
                yield issue(IssueCode.E22_INVALID_URL, url_field,
                            "Image URL must start with http:// or https://", url)


def check_duplicate_skus(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """
    E2: one issue per ACR_SKU that appears on more than one row, then one
    per row that moves a stored part onto a SKU another stored part keeps.
    """
    rows_by_sku: Dict[str, List[PartRow]] = {}
    for part in workbook.parts:
        if part.acr_sku:
            rows_by_sku.setdefault(normalize_sku(part.acr_sku), []).append(part)

    for parts in rows_by_sku.values():
        if len(parts) < 2:
            continue
        row_numbers = [p.row_number for p in parts]
        yield ValidationIssue(
            code=IssueCode.E2_DUPLICATE_SKU,
            sheet=parts[0].sheet,
            row=row_numbers[1],
            column=_header(PARTS_SHEET, "acr_sku"),
            message=f"Duplicate ACR_SKU '{parts[1].acr_sku}' on rows {', '.join(str(n) for n in row_numbers)}",
            value=parts[1].acr_sku,
            rows=row_numbers,
        )

    file_skus = _file_skus_by_id(workbook)
    for part in workbook.parts:
        if part.is_delete or not part.acr_sku or part.id not in state.parts:
            continue
        sku = normalize_sku(part.acr_sku)
        if len(rows_by_sku[sku]) > 1:
            continue
        holder = state.part_by_sku(sku)
        if holder is None or holder["id"] == part.id:
            continue
        if _sku_released(holder, file_skus, state, {part.id}):
            continue
        yield ValidationIssue(
            code=IssueCode.E2_DUPLICATE_SKU,
            sheet=part.sheet,
            row=part.row_number,
            column=_header(PARTS_SHEET, "acr_sku"),
            message=f"ACR_SKU '{part.acr_sku}' already belongs to stored part {holder['id']}",
            value=part.acr_sku,
            rows=[part.row_number],
        )


def _file_skus_by_id(workbook: ExtractedWorkbook) -> Dict[str, Optional[str]]:
    """Stored part id -> normalized SKU its Parts row gives it; None when the row deletes it."""
    skus: Dict[str, Optional[str]] = {}
    for part in workbook.parts:
        if part.id and part.id not in skus:
            skus[part.id] = None if part.is_delete else normalize_sku(part.acr_sku)
    return skus


def _sku_released(holder: Dict[str, Any], file_skus: Dict[str, Optional[str]],
                  state: CatalogState, taking: Set[str]) -> bool:
    """
    True when the same file frees the SKU a stored part holds: it deletes
    that part, or renames it onto a SKU that is free in turn. A chain that
    loops back to a part already taking a SKU is a swap and frees nothing.
    """
    if holder["id"] in taking or holder["id"] not in file_skus:
        return False
    new_sku = file_skus[holder["id"]]
    if new_sku is None:
        return True
    if new_sku == normalize_sku(holder.get("acr_sku")):
        return False
    next_holder = state.part_by_sku(new_sku)
    if next_holder is None:
        return True
    return _sku_released(next_holder, file_skus, state, taking | {holder["id"]})


def check_part_matches(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """E25: more than one Parts row resolves to the same stored part."""
    rows_by_part: Dict[str, List[PartRow]] = {}
    for part in workbook.parts:
        stored = context.resolver.stored_part(part)
        if stored is not None:
            rows_by_part.setdefault(stored["id"], []).append(part)

    for part_id, parts in rows_by_part.items():
        if len(parts) < 2:
            continue
        # Same SKU on every row is already an E2
        if len({normalize_sku(p.acr_sku) for p in parts}) == 1:
            continue
        row_numbers = [p.row_number for p in parts]
        yield ValidationIssue(
            code=IssueCode.E25_PART_MATCHED_TWICE,
            sheet=parts[0].sheet,
            row=row_numbers[1],
            column=_header(PARTS_SHEET, "id"),
            message=f"Rows {', '.join(str(n) for n in row_numbers)} all refer to stored part {part_id}",
            value=part_id,
            rows=row_numbers,
        )


def check_part_changes(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """W1, W3, W4, W7: identity-adjacent fields changed against the stored part."""
    for part in workbook.parts:
        if part.is_delete:
            continue
        stored = context.resolver.stored_part(part)
        if stored is None:
            continue

        def issue(code, field, message, was, now):
            return ValidationIssue(
                code=code,
                sheet=part.sheet,
                row=part.row_number,
                column=_header(PARTS_SHEET, field),
                message=message,
                value={"was": was, "now": now},
            )

        if part.acr_sku and _differs(stored.get("acr_sku"), part.acr_sku):
            yield issue(IssueCode.W1_SKU_CHANGED, "acr_sku",
                        f"ACR_SKU changes from '{stored.get('acr_sku')}' to '{part.acr_sku}'",
                        stored.get("acr_sku"), part.acr_sku)

        if part.part_type and _differs(stored.get("part_type"), part.part_type):
            yield issue(IssueCode.W3_PART_TYPE_CHANGED, "part_type",
                        f"Part_Type changes from '{stored.get('part_type')}' to '{part.part_type}'",
                        stored.get("part_type"), part.part_type)

        if _differs(stored.get("position_type"), part.position_type):
            yield issue(IssueCode.W4_POSITION_CHANGED, "position_type",
                        f"Position_Type changes from '{stored.get('position_type')}' to '{part.position_type}'",
                        stored.get("position_type"), part.position_type)

        old_specs = normalize_text(stored.get("specifications")) or ""
        new_specs = part.specifications or ""
        if old_specs and len(new_specs) < len(old_specs) * SPECIFICATIONS_SHRINK_RATIO:
            yield issue(IssueCode.W7_SPECIFICATIONS_SHORTENED, "specifications",
                        f"Specifications shortened from {len(old_specs)} to {len(new_specs)} characters",
                        old_specs, new_specs)


def check_cross_reference_cells(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """W12 space-delimited lists, W11 repeated SKUs, E7 long SKUs, W5 deletions."""
    for part in workbook.parts:
        if part.is_delete:
            continue
        ref = context.resolver.ref_for_part_row(part)

        for cell in part.brand_cells:
            def issue(code, message, value=None):
                return ValidationIssue(
                    code=code,
                    sheet=part.sheet,
                    row=part.row_number,
                    column=cell.column,
                    message=message,
                    value=value,
                )

            if cell.space_delimited:
                yield issue(IssueCode.W12_SPACE_DELIMITED_SKUS,
                            f"{cell.column} SKUs look space-delimited; use ';' between SKUs", cell.raw)

            if cell.duplicates:
                yield issue(IssueCode.W11_DUPLICATE_COMPETITOR_SKU,
                            f"Duplicate {cell.column} SKU(s) {', '.join(cell.duplicates)} will be imported once",
                            cell.raw)

            for sku, is_delete in zip(cell.skus, cell.deletes):
                if _too_long("competitor_sku", sku):
                    yield issue(IssueCode.E7_STRING_TOO_LONG,
                                f"{cell.column} SKU exceeds {MAX_LENGTHS['competitor_sku']} characters", sku)
                if is_delete and ref is not None and ref.part_id:
                    if state.cross_reference_by_key(cross_reference_key(ref.part_id, cell.brand, sku)):
                        yield issue(IssueCode.W5_CROSS_REFERENCE_DELETED,
                                    f"{cell.column} cross reference {sku} will be deleted", sku)


# =============================================================================
# VEHICLE APPLICATIONS
# =============================================================================

def _stored_vehicle_application(va: VehicleApplicationRow, state: CatalogState, context: ValidationContext):
    if va.id:
        return state.vehicle_applications.get(va.id)
    ref = context.resolver.resolve(va.part_id, va.acr_sku)
    if ref is None or ref.part_id is None:
        return None
    return state.vehicle_application_by_key(
        vehicle_application_key(ref.part_id, va.make, va.model, va.start_year, va.end_year)
    )


def check_vehicle_applications(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """E21, E4, E19, E3, E7, E8, E6, E5 and W6, W2, W8, W9."""
    min_year = context.settings.min_year
    max_year = context.settings.max_year
    sheet = VEHICLE_APPLICATIONS_SHEET

    for va in workbook.vehicle_applications:
        def issue(code, field, message, value=None):
            return ValidationIssue(
                code=code,
                sheet=va.sheet,
                row=va.row_number,
                column=_header(sheet, field),
                message=message,
                value=value,
            )

        if va.action is None:
            yield issue(IssueCode.E21_INVALID_ROW_ACTION, "action",
                        f"Unrecognized status '{va.raw_action}' (use Activo or Eliminar)", va.raw_action)

        id_ok = True
        if va.id is not None:
            if not UUID_RE.match(va.id):
                id_ok = False
                yield issue(IssueCode.E4_INVALID_ID, "id", "Hidden _id is not a valid identifier", va.id)
            elif va.id not in state.vehicle_applications:
                id_ok = False
                yield issue(IssueCode.E19_ID_NOT_IN_STORE, "id",
                            "Hidden _id does not match any stored vehicle application", va.id)
        if va.part_id is not None and not UUID_RE.match(va.part_id):
            yield issue(IssueCode.E4_INVALID_ID, "part_id", "Hidden _part_id is not a valid identifier", va.part_id)

        if va.is_delete:
            stored = _stored_vehicle_application(va, state, context) if id_ok else None
            if stored is not None:
                yield issue(IssueCode.W6_VEHICLE_APPLICATION_DELETED, "action",
                            f"Vehicle application {stored.get('make')} {stored.get('model')} "
                            f"{stored.get('start_year')}-{stored.get('end_year')} will be deleted")
            continue

        if va.acr_sku is None and va.part_id is None:
            yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, "acr_sku", "ACR_SKU is required")
        for field in ("make", "model", "start_year", "end_year"):
            if getattr(va, field) is None and (va.sheet, va.row_number, _header(sheet, field)) not in context.diagnostic_cells:
                yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, field, f"{_header(sheet, field)} is required")

        for field in ("make", "model"):
            value = getattr(va, field)
            if _too_long(field, value):
                yield issue(IssueCode.E7_STRING_TOO_LONG, field,
                            f"{_header(sheet, field)} exceeds {MAX_LENGTHS[field]} characters ({len(value)})", value)

        for field in ("start_year", "end_year"):
            year = getattr(va, field)
            if year is not None and not (min_year <= year <= max_year):
                yield issue(IssueCode.E8_YEAR_OUT_OF_RANGE, field,
                            f"{_header(sheet, field)} must be between {min_year} and {max_year}", year)

        if va.start_year is not None and va.end_year is not None and va.start_year > va.end_year:
            yield issue(IssueCode.E6_INVALID_YEAR_RANGE, "start_year",
                        f"Start_Year {va.start_year} is after End_Year {va.end_year}",
                        {"start_year": va.start_year, "end_year": va.end_year})

        if va.acr_sku is not None or va.part_id is not None:
            ref = context.resolver.resolve(va.part_id, va.acr_sku)
            stored_by_id = va.id is not None and va.id in state.vehicle_applications
            if ref is None or (ref.deleted and not stored_by_id):
                reference = va.part_id or va.acr_sku
                yield issue(IssueCode.E5_ORPHANED_PART_REFERENCE, "part_id" if va.part_id else "acr_sku",
                            f"Part '{reference}' is not in the Parts sheet or the catalog", reference)

        stored = state.vehicle_applications.get(va.id) if va.id and id_ok else None
        if stored is None:
            continue

        if va.start_year is not None and va.end_year is not None \
                and stored.get("start_year") is not None and stored.get("end_year") is not None \
                and (va.start_year > stored["start_year"] or va.end_year < stored["end_year"]):
            yield issue(IssueCode.W2_YEAR_RANGE_NARROWED, "start_year",
                        f"Year range narrows from {stored['start_year']}-{stored['end_year']} "
                        f"to {va.start_year}-{va.end_year}")
        if va.make and _differs(stored.get("make"), va.make):
            yield issue(IssueCode.W8_MAKE_CHANGED, "make",
                        f"Make changes from '{stored.get('make')}' to '{va.make}'", va.make)
        if va.model and _differs(stored.get("model"), va.model):
            yield issue(IssueCode.W9_MODEL_CHANGED, "model",
                        f"Model changes from '{stored.get('model')}' to '{va.model}'", va.model)


# =============================================================================
# ALIASES
# =============================================================================

def check_aliases(workbook: ExtractedWorkbook, state: CatalogState, context: ValidationContext) -> Iterator[ValidationIssue]:
    """E21, E3, E23, E7 per row, then E24 for repeated (alias, type) pairs."""
    sheet = ALIASES_SHEET
    rows_by_key: Dict[Tuple, List] = {}

    for alias in workbook.aliases:
        def issue(code, field, message, value=None, rows=None):
            return ValidationIssue(
                code=code,
                sheet=alias.sheet,
                row=alias.row_number,
                column=_header(sheet, field),
                message=message,
                value=value,
                rows=rows or [],
            )

        if alias.action is None:
            yield issue(IssueCode.E21_INVALID_ROW_ACTION, "action",
                        f"Unrecognized status '{alias.raw_action}' (use Activo or Eliminar)", alias.raw_action)

        if alias.alias is None:
            yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, "alias", "Alias is required")
        if alias.canonical_name is None and not alias.is_delete:
            yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, "canonical_name", "Canonical_Name is required")
        if alias.alias_type is None:
            yield issue(IssueCode.E3_EMPTY_REQUIRED_FIELD, "alias_type", "Alias_Type is required")
        elif alias.alias_type not in ALIAS_TYPES:
            yield issue(IssueCode.E23_INVALID_ALIAS_TYPE, "alias_type",
                        f"Alias_Type must be one of {', '.join(ALIAS_TYPES)}", alias.alias_type)

        for field in ("alias", "canonical_name"):
            value = getattr(alias, field)
            if _too_long(field, value):
                yield issue(IssueCode.E7_STRING_TOO_LONG, field,
                            f"{_header(sheet, field)} exceeds {MAX_LENGTHS[field]} characters ({len(value)})", value)

        if alias.alias and alias.alias_type:
            rows_by_key.setdefault(alias_key(alias.alias, alias.alias_type), []).append(alias)

    for rows in rows_by_key.values():
        if len(rows) < 2:
            continue
        row_numbers = [r.row_number for r in rows]
        yield ValidationIssue(
            code=IssueCode.E24_DUPLICATE_ALIAS,
            sheet=rows[0].sheet,
            row=row_numbers[1],
            column=_header(sheet, "alias"),
            message=f"Alias '{rows[1].alias}' ({rows[1].alias_type}) appears on rows "
                    f"{', '.join(str(n) for n in row_numbers)}",
            value=rows[1].alias,
            rows=row_numbers,
        )


# Fixed evaluation order; issue lists are reproducible for golden-file tests
RULES = [
    check_sheet_structure,
    check_cell_diagnostics,
    check_part_rows,
    check_duplicate_skus,
    check_part_matches,
    check_part_changes,
    check_cross_reference_cells,
    check_vehicle_applications,
    check_aliases,
]
