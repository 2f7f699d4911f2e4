from .normalizer import CatalogNormalizer, normalize_text, parse_row_action, split_competitor_skus
from .rows import (
    AliasRow,
    BrandCell,
    CellDiagnostic,
    CrossReferenceRow,
    ExtractedWorkbook,
    PartRow,
    SheetInfo,
    VehicleApplicationRow,
)
from .schema import (
    SHEETS,
    IMAGE_URL_FIELDS,
    PARTS_SHEET,
    VEHICLE_APPLICATIONS_SHEET,
    ALIASES_SHEET,
    BRAND_COLUMNS,
    WORKFLOW_STATUS_DISPLAY,
    SheetDefinition,
)
from .errors import FileTooLargeError
from typing import List, Dict, Any, Optional, Tuple
from datetime import date, datetime
from pathlib import Path
import logging
import os

logger = logging.getLogger(__name__)

# Row 3 instruction text written by export()
INSTRUCTIONS = {
    "id": "Do not edit",
    "part_id": "Do not edit",
    "action": "Activo / Inactivo / Eliminar",
    "acr_sku": "Required, starts with ACR",
    "part_type": "Required",
    "make": "Required",
    "model": "Required",
    "start_year": "YYYY",
    "end_year": "YYYY",
    "alias_type": "make / model",
}


def _cell_text(value: Any) -> Optional[str]:
    """Convert a raw cell value to trimmed text, None when empty."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return normalize_text(value)


def _join_competitor_skus(skus: List[str]) -> str:
    """Brand cell text for stored SKUs.

    A single SKU holding whitespace gets a trailing ';' so it is not read
    back as a space-delimited list.
    """
    text = ";".join(skus)
    if len(skus) == 1 and len(text.split()) > 1:
        text += ";"
    return text


def _cell_year(value: Any) -> Tuple[Optional[int], bool]:
    """Convert a raw cell value to a year.

    Returns:
        (year, ok). ok is False when the cell held something that is not
        an integral number.
    """
    if value is None:
        return None, True
    if isinstance(value, bool):
        return None, False
    if isinstance(value, int):
        return value, True
    if isinstance(value, float):
        return (int(value), True) if value.is_integer() else (None, False)
    text = normalize_text(value)
    if text is None:
        return None, True
    try:
        number = float(text)
    except ValueError:
        return None, False
    if not number.is_integer():
        return None, False
    return int(number), True


class CatalogParser:
    """Row extractor for catalog workbooks.

    Turns an uploaded workbook into typed per-entity rows, driven by the
    header-text column definitions in the schema, and writes the same
    layout back out for export.
    """

    def __init__(self, max_file_size_mb: Optional[int] = None):
        """Initialize the catalog parser.

        Args:
            max_file_size_mb: Reject sources larger than this (None = no limit)
        """
        self.adapters = []
        self.normalizer = CatalogNormalizer()
        self.max_file_size_mb = max_file_size_mb

    def register_adapter(self, adapter):
        """Register a file adapter for parsing.

        Args:
            adapter: Adapter instance with can_handle(), read() and write() methods
        """
        self.adapters.append(adapter)

    def _find_adapter(self, source):
        for a in self.adapters:
            if a.can_handle(source):
                return a
        raise ValueError(f"No adapter found for {source if isinstance(source, (str, Path)) else type(source).__name__}")

    def _source_size(self, source) -> Optional[int]:
        if isinstance(source, (bytes, bytearray)):
            return len(source)
        if isinstance(source, (str, Path)):
            return os.path.getsize(source)
        if hasattr(source, "getbuffer"):
            return source.getbuffer().nbytes
        return None

    def parse(self, source) -> ExtractedWorkbook:
        """Extract typed rows from a catalog workbook.

        Args:
            source: Raw workbook bytes, a file path, or a binary file object

        Returns:
            ExtractedWorkbook with part, vehicle application, cross-reference
            and alias rows plus cell diagnostics and per-sheet header info

        Raises:
            ValueError: If no adapter is found for the source
            FileTooLargeError: If the source exceeds max_file_size_mb
        """
        adapter = self._find_adapter(source)

        size = self._source_size(source)
        if self.max_file_size_mb is not None and size is not None:
            if size > self.max_file_size_mb * 1024 * 1024:
                raise FileTooLargeError(
                    f"File is {size / (1024 * 1024):.1f}MB, limit is {self.max_file_size_mb}MB"
                )

        raw_sheets = adapter.read(source)
        workbook = ExtractedWorkbook(file_size_bytes=size)

        found = {}
        for raw in raw_sheets:
            sheet = self.normalizer.resolve_sheet(raw["title"])
            if sheet is None:
                logger.debug(f"Ignoring unknown sheet '{raw['title']}'")
                continue
            if sheet.key in found:
                logger.warning(f"Sheet '{raw['title']}' duplicates '{found[sheet.key]['title']}', ignoring it")
                continue
            found[sheet.key] = raw

        for sheet in SHEETS:
            raw = found.get(sheet.key)
            if raw is None:
                if sheet.required:
                    workbook.missing_sheets.append(sheet.title)
                continue
            self._extract_sheet(sheet, raw, workbook)

        logger.info(
            f"Extracted {len(workbook.parts)} parts, {len(workbook.vehicle_applications)} vehicle applications, "
            f"{len(workbook.cross_references)} cross references, {len(workbook.aliases)} aliases"
        )
        return workbook

    def _extract_sheet(self, sheet: SheetDefinition, raw: Dict[str, Any], workbook: ExtractedWorkbook) -> None:
        report = self.normalizer.map_headers(sheet, raw["headers"])
        columns = report["columns"]
        fields = [c.field for c in columns.values()]

        workbook.sheets[sheet.key] = SheetInfo(
            key=sheet.key,
            title=raw["title"],
            fields=fields,
            missing_hidden=[f for f in sheet.hidden_required_fields if f not in fields],
            missing_required=[f for f in sheet.visible_required_fields if f not in fields],
            duplicate_fields=report["duplicates"],
            unmapped_headers=report["unmapped"],
        )

        for row_number, cells in raw["rows"]:
            values = {}
            for index, column in columns.items():
                values[column.field] = cells.get(index)

            if all(_cell_text(v) is None for v in values.values()):
                continue

            if sheet.key == PARTS_SHEET.key:
                self._extract_part(sheet, raw["title"], row_number, values, workbook)
            elif sheet.key == VEHICLE_APPLICATIONS_SHEET.key:
                self._extract_vehicle_application(sheet, raw["title"], row_number, values, workbook)
            elif sheet.key == ALIASES_SHEET.key:
                self._extract_alias(raw["title"], row_number, values, workbook)

    def _extract_part(self, sheet, title, row_number, values, workbook):
        raw_action = _cell_text(values.get("action"))
        part = PartRow(
            sheet=title,
            row_number=row_number,
            id=_cell_text(values.get("id")),
            acr_sku=_cell_text(values.get("acr_sku")),
            part_type=_cell_text(values.get("part_type")),
            position_type=_cell_text(values.get("position_type")),
            abs_type=_cell_text(values.get("abs_type")),
            bolt_pattern=_cell_text(values.get("bolt_pattern")),
            drive_type=_cell_text(values.get("drive_type")),
            specifications=_cell_text(values.get("specifications")),
            action=parse_row_action(raw_action),
            raw_action=raw_action,
        )

        for url_field in IMAGE_URL_FIELDS:
            url = _cell_text(values.get(url_field))
            if url is not None:
                part.image_urls[url_field] = url

        # Explode brand columns into individual cross-reference rows
        for brand in BRAND_COLUMNS:
            column = sheet.column(f"brand:{brand}")
            text = _cell_text(values.get(column.field))
            if text is None:
                continue
            sku_list = split_competitor_skus(text)
            part.brand_cells.append(BrandCell(
                brand=brand,
                column=column.header,
                raw=text,
                skus=sku_list.skus,
                deletes=sku_list.deletes,
                space_delimited=sku_list.space_delimited,
                duplicates=sku_list.duplicates,
            ))
            for sku, is_delete in sku_list:
                workbook.cross_references.append(CrossReferenceRow(
                    sheet=title,
                    row_number=row_number,
                    column=column.header,
                    part_id=part.id,
                    acr_sku=part.acr_sku,
                    competitor_brand=brand,
                    competitor_sku=sku,
                    delete=is_delete,
                ))

        workbook.parts.append(part)

    def _extract_vehicle_application(self, sheet, title, row_number, values, workbook):
        years = {}
        for year_field in ("start_year", "end_year"):
            year, ok = _cell_year(values.get(year_field))
            if not ok:
                workbook.diagnostics.append(CellDiagnostic(
                    sheet=title,
                    row=row_number,
                    column=sheet.column(year_field).header,
                    value=values.get(year_field),
                    message=f"{sheet.column(year_field).header} must be a whole number",
                ))
            years[year_field] = year

        raw_action = _cell_text(values.get("action"))
        workbook.vehicle_applications.append(VehicleApplicationRow(
            sheet=title,
            row_number=row_number,
            id=_cell_text(values.get("id")),
            part_id=_cell_text(values.get("part_id")),
            acr_sku=_cell_text(values.get("acr_sku")),
            make=_cell_text(values.get("make")),
            model=_cell_text(values.get("model")),
            start_year=years["start_year"],
            end_year=years["end_year"],
            action=parse_row_action(raw_action),
            raw_action=raw_action,
        ))

    def _extract_alias(self, title, row_number, values, workbook):
        raw_action = _cell_text(values.get("action"))
        alias_type = _cell_text(values.get("alias_type"))
        workbook.aliases.append(AliasRow(
            sheet=title,
            row_number=row_number,
            alias=_cell_text(values.get("alias")),
            canonical_name=_cell_text(values.get("canonical_name")),
            alias_type=alias_type.lower() if alias_type else None,
            action=parse_row_action(raw_action),
            raw_action=raw_action,
        ))

    # =========================================================================
    # EXPORT
    # =========================================================================

    def export(self, state, destination):
        """Write the current catalog state as an importable workbook.

        Re-importing an unmodified export diffs to zero changes.

        Args:
            state: CatalogState loaded from the store
            destination: Path or binary file object

        Returns:
            The destination
        """
        adapter = self._find_adapter(destination)
        return adapter.write(self.build_export_sheets(state), destination)

    def build_export_sheets(self, state) -> List[Dict[str, Any]]:
        """Lay out the catalog state as sheets for an adapter to write."""
        sheets = []

        # Parts, with cross references folded back into brand columns
        part_columns = [c for c in PARTS_SHEET.columns if c.kind != "url"]
        part_rows = []
        for part in state.parts.values():
            refs_by_brand: Dict[str, List[str]] = {}
            for ref in state.cross_references_for_part(part["id"]):
                refs_by_brand.setdefault(str(ref["competitor_brand"]).upper(), []).append(ref["competitor_sku"])

            row = []
            for column in part_columns:
                if column.kind == "brand":
                    row.append(_join_competitor_skus(refs_by_brand.get(column.brand, [])))
                elif column.field == "action":
                    row.append(WORKFLOW_STATUS_DISPLAY.get(part.get("workflow_status"), "Activo"))
                else:
                    row.append(part.get(column.field))
            part_rows.append(row)
        sheets.append(self._sheet_layout(PARTS_SHEET, part_columns, part_rows))

        va_columns = list(VEHICLE_APPLICATIONS_SHEET.columns)
        va_rows = []
        for va in state.vehicle_applications.values():
            part = state.parts.get(va["part_id"], {})
            row = []
            for column in va_columns:
                if column.field == "action":
                    row.append("Activo")
                elif column.field == "acr_sku":
                    row.append(part.get("acr_sku"))
                else:
                    row.append(va.get(column.field))
            va_rows.append(row)
        sheets.append(self._sheet_layout(VEHICLE_APPLICATIONS_SHEET, va_columns, va_rows))

        alias_columns = list(ALIASES_SHEET.columns)
        alias_rows = []
        for alias in state.aliases.values():
            alias_rows.append([
                "Activo" if column.field == "action" else alias.get(column.field)
                for column in alias_columns
            ])
        sheets.append(self._sheet_layout(ALIASES_SHEET, alias_columns, alias_rows))

        return sheets

    def _sheet_layout(self, sheet, columns, rows):
        group_headers = []
        remaining = len(columns)
        for label, span in sheet.group_headers:
            span = min(span, remaining)
            if span <= 0:
                break
            group_headers.append((label, span))
            remaining -= span
        return {
            "title": sheet.title,
            "group_headers": group_headers,
            "headers": [c.header for c in columns],
            "instructions": [INSTRUCTIONS.get(c.field, "") for c in columns],
            "hidden": [c.header for c in columns if c.hidden],
            "rows": rows,
        }
