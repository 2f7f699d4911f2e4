from dataclasses import dataclass
from typing import List, Dict, Any, Optional
import re

from .schema import (
    SHEETS,
    SheetDefinition,
    ColumnDefinition,
    DELETE_MARKER,
    ROW_ACTIONS,
)


def normalize_header(name: str) -> str:
    """Lowercase, strip, and collapse spaces/underscores/hyphens to one space."""
    return re.sub(r'[\s_\-]+', ' ', str(name).lower()).strip()


def normalize_sku(sku: Optional[str]) -> str:
    """Normalize a SKU for comparison: uppercase, alphanumerics only.

    "acr-001 " and "ACR001" compare equal. Used for acr_sku uniqueness,
    natural-key matching and cross-reference identity.
    """
    if sku is None:
        return ""
    return re.sub(r'[^A-Za-z0-9]', '', str(sku)).upper()


def normalize_text(value: Optional[str]) -> Optional[str]:
    """Treat None, empty and whitespace-only strings as missing."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_row_action(value: Optional[str]) -> Optional[str]:
    """Map a row action cell to a workflow status.

    Empty cells default to ACTIVE. Unrecognized text returns None.
    """
    text = normalize_text(value)
    if text is None:
        return "ACTIVE"
    return ROW_ACTIONS.get(text.lower())


@dataclass
class SkuList:
    """Competitor SKUs split out of one brand cell."""
    skus: List[str]
    deletes: List[bool]
    space_delimited: bool = False

    def __iter__(self):
        return iter(zip(self.skus, self.deletes))

    @property
    def duplicates(self) -> List[str]:
        """Normalized SKUs that appear more than once, in first-seen order."""
        seen = set()
        repeated = []
        for sku in self.skus:
            key = normalize_sku(sku)
            if key in seen and key not in repeated:
                repeated.append(key)
            seen.add(key)
        return repeated


_DELETE_MARKER_RE = re.compile(re.escape(DELETE_MARKER) + r'\s*', re.IGNORECASE)


def split_competitor_skus(value: Optional[str]) -> SkuList:
    """Split a brand column cell into individual competitor SKUs.

    Semicolon is the delimiter. A cell without semicolons that still holds
    whitespace-separated tokens is a legacy space-delimited list: it is split
    on whitespace and flagged. A token prefixed with [DELETE] marks that one
    cross-reference for removal.
    """
    text = normalize_text(value)
    if text is None:
        return SkuList(skus=[], deletes=[])

    # Glue "[DELETE] SKU" together before any whitespace split
    text = _DELETE_MARKER_RE.sub(DELETE_MARKER, text)

    space_delimited = False
    if ';' in text:
        tokens = text.split(';')
    elif len(text.split()) > 1:
        tokens = text.split()
        space_delimited = True
    else:
        tokens = [text]

    skus = []
    deletes = []
    for token in tokens:
        token = token.strip()
        is_delete = token.upper().startswith(DELETE_MARKER)
        if is_delete:
            token = token[len(DELETE_MARKER):].strip()
        if not token:
            continue
        skus.append(token)
        deletes.append(is_delete)

    return SkuList(skus=skus, deletes=deletes, space_delimited=space_delimited)


class CatalogNormalizer:
    """Resolves sheet titles and header text against the catalog schema.

    Maps the header variations listed in the schema to column definitions,
    and sheet title variations to sheet definitions.
    """

    def __init__(self, sheets: Optional[List[SheetDefinition]] = None):
        self.sheets = sheets or SHEETS

        # Forward lookup: normalized title -> sheet definition
        self._title_to_sheet: Dict[str, SheetDefinition] = {}
        for sheet in self.sheets:
            for title in sheet.titles:
                self._title_to_sheet[normalize_header(title)] = sheet

        # Per sheet: normalized header variation -> column definition
        self._variation_to_column: Dict[str, Dict[str, ColumnDefinition]] = {}
        for sheet in self.sheets:
            lookup = {}
            for column in sheet.columns:
                for variation in column.variations:
                    lookup[normalize_header(variation)] = column
            self._variation_to_column[sheet.key] = lookup

    def resolve_sheet(self, title: str) -> Optional[SheetDefinition]:
        """Find the sheet definition for a workbook sheet title."""
        if not title:
            return None
        return self._title_to_sheet.get(normalize_header(title))

    def normalize_column_name(self, sheet: SheetDefinition, column_name: Any) -> Optional[ColumnDefinition]:
        """Map a header cell to its column definition.

        Only exact matches after normalization count. Brand headers such as
        "OEM" and "OEM_2" differ by one token, so partial matching is not used.

        Args:
            sheet: Sheet the header belongs to
            column_name: Header cell text from row 2

        Returns:
            ColumnDefinition if the header is known, None otherwise
        """
        if column_name is None or not str(column_name).strip():
            return None
        return self._variation_to_column[sheet.key].get(normalize_header(column_name))

    def map_headers(self, sheet: SheetDefinition, headers: Dict[int, Any]) -> Dict[str, Any]:
        """Build the column mapping report for one sheet.

        Args:
            sheet: Sheet definition
            headers: Column index -> header cell text

        Returns:
            Dictionary with:
              'columns': column index -> ColumnDefinition for mapped headers
              'unmapped': header texts with no definition
              'duplicates': fields claimed by more than one header
        """
        columns: Dict[int, ColumnDefinition] = {}
        unmapped = []
        seen: Dict[str, int] = {}
        duplicates = []

        for index in sorted(headers):
            header = headers[index]
            column = self.normalize_column_name(sheet, header)
            if column is None:
                if header is not None and str(header).strip():
                    unmapped.append(str(header))
                continue
            if column.field in seen:
                if column.field not in duplicates:
                    duplicates.append(column.field)
                continue
            seen[column.field] = index
            columns[index] = column

        return {
            "columns": columns,
            "unmapped": unmapped,
            "duplicates": duplicates,
        }
