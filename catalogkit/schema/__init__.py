"""Catalog workbook schema: sheet definitions, column mappings and field limits.

Column mapping is header-text driven. Each ColumnDefinition lists the header
text written by the export template plus the variations accepted on import,
so reordering columns in the template never corrupts data.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# Fixed 3-row header convention
GROUP_HEADER_ROW = 1
COLUMN_HEADER_ROW = 2
INSTRUCTION_ROW = 3
DATA_START_ROW = 4

# Store tables
PARTS_TABLE = "parts"
VEHICLE_APPLICATIONS_TABLE = "vehicle_applications"
CROSS_REFERENCES_TABLE = "cross_references"
ALIASES_TABLE = "vehicle_aliases"
IMPORT_HISTORY_TABLE = "import_history"

ENTITY_TABLES = [
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
]

# Workflow status stored on parts
WORKFLOW_ACTIVE = "ACTIVE"
WORKFLOW_INACTIVE = "INACTIVE"
WORKFLOW_DELETE = "DELETE"

# Row action marker vocabulary (lowercased cell text -> workflow status)
ROW_ACTIONS = {
    "activo": WORKFLOW_ACTIVE,
    "active": WORKFLOW_ACTIVE,
    "inactivo": WORKFLOW_INACTIVE,
    "inactive": WORKFLOW_INACTIVE,
    "eliminar": WORKFLOW_DELETE,
    "delete": WORKFLOW_DELETE,
}

# Display text written back on export
WORKFLOW_STATUS_DISPLAY = {
    WORKFLOW_ACTIVE: "Activo",
    WORKFLOW_INACTIVE: "Inactivo",
    WORKFLOW_DELETE: "Eliminar",
}

DELETE_MARKER = "[DELETE]"

ALIAS_TYPES = ("make", "model")

# Maximum stored lengths (VARCHAR limits)
MAX_LENGTHS = {
    "acr_sku": 50,
    "part_type": 100,
    "position_type": 50,
    "abs_type": 20,
    "bolt_pattern": 50,
    "drive_type": 50,
    "make": 50,
    "model": 100,
    "competitor_brand": 50,
    "competitor_sku": 50,
    "alias": 50,
    "canonical_name": 100,
}

DEFAULT_SKU_PREFIX = "ACR"
DEFAULT_MIN_YEAR = 1900
DEFAULT_MAX_YEAR_AHEAD = 2
DEFAULT_MAX_FILE_SIZE_MB = 50
DEFAULT_SNAPSHOT_RETENTION = 3

# W7 fires when new specifications are shorter than this share of the old text
SPECIFICATIONS_SHRINK_RATIO = 0.5

# Competitor brand columns on the Parts sheet: brand -> accepted headers
BRAND_COLUMNS: Dict[str, List[str]] = {
    "NATIONAL": ["National", "national skus", "nacional"],
    "ATV": ["ATV", "atv skus"],
    "SYD": ["SYD", "syd skus"],
    "TMK": ["TMK", "tmk skus"],
    "GROB": ["GROB", "grob skus"],
    "RACE": ["RACE", "race skus"],
    "OEM": ["OEM", "oem skus"],
    "OEM_2": ["OEM_2", "oem 2 skus", "oem2"],
    "GMB": ["GMB", "gmb skus"],
    "GSP": ["GSP", "gsp skus"],
    "FAG": ["FAG", "fag skus"],
}

IMAGE_URL_FIELDS = [
    "image_url_front",
    "image_url_back",
    "image_url_top",
    "image_url_other",
]


@dataclass(frozen=True)
class ColumnDefinition:
    """
    One spreadsheet column.

    kind is one of: "id", "action", "text", "year", "brand", "url".
    hidden columns carry surrogate ids and row actions; a sheet missing
    a required hidden column is an E1 error.
    """
    field: str
    header: str
    aliases: Tuple[str, ...] = ()
    kind: str = "text"
    hidden: bool = False
    required: bool = False
    brand: Optional[str] = None

    @property
    def variations(self) -> List[str]:
        return [self.header, *self.aliases]


@dataclass(frozen=True)
class SheetDefinition:
    """A workbook sheet and the columns it carries."""
    key: str
    title: str
    aliases: Tuple[str, ...]
    columns: Tuple[ColumnDefinition, ...]
    required: bool = True
    group_headers: Tuple[Tuple[str, int], ...] = ()

    @property
    def titles(self) -> List[str]:
        return [self.title, *self.aliases]

    def column(self, field: str) -> Optional[ColumnDefinition]:
        for column in self.columns:
            if column.field == field:
                return column
        return None

    @property
    def hidden_required_fields(self) -> List[str]:
        return [c.field for c in self.columns if c.hidden and c.required]

    @property
    def visible_required_fields(self) -> List[str]:
        return [c.field for c in self.columns if not c.hidden and c.required]


PARTS_COLUMNS = (
    ColumnDefinition("id", "_id", ("id", "part id", "uuid"), kind="id", hidden=True, required=True),
    ColumnDefinition("action", "_action", ("status", "estado", "action", "accion"), kind="action", hidden=True, required=True),
    ColumnDefinition("acr_sku", "ACR_SKU", ("acr sku", "sku"), required=True),
    ColumnDefinition("part_type", "Part_Type", ("part type", "tipo", "tipo de parte"), required=True),
    ColumnDefinition("position_type", "Position_Type", ("position", "posicion")),
    ColumnDefinition("abs_type", "ABS_Type", ("abs",)),
    ColumnDefinition("bolt_pattern", "Bolt_Pattern", ("bolt pattern", "birlos")),
    ColumnDefinition("drive_type", "Drive_Type", ("drive type", "traccion")),
    ColumnDefinition("specifications", "Specifications", ("specs", "especificaciones")),
) + tuple(
    ColumnDefinition(f"brand:{brand}", headers[0], tuple(headers[1:]), kind="brand", brand=brand)
    for brand, headers in BRAND_COLUMNS.items()
) + (
    ColumnDefinition("image_url_front", "Image_URL_Front", ("image front", "imagen frontal"), kind="url"),
    ColumnDefinition("image_url_back", "Image_URL_Back", ("image back", "imagen trasera"), kind="url"),
    ColumnDefinition("image_url_top", "Image_URL_Top", ("image top", "imagen superior"), kind="url"),
    ColumnDefinition("image_url_other", "Image_URL_Other", ("image other", "imagen otra"), kind="url"),
)

VEHICLE_APPLICATION_COLUMNS = (
    ColumnDefinition("id", "_id", ("id", "vehicle id", "uuid"), kind="id", hidden=True, required=True),
    ColumnDefinition("part_id", "_part_id", ("part id",), kind="id", hidden=True),
    ColumnDefinition("action", "_action", ("status", "estado", "action", "accion"), kind="action", hidden=True, required=True),
    ColumnDefinition("acr_sku", "ACR_SKU", ("acr sku", "sku"), required=True),
    ColumnDefinition("make", "Make", ("marca",), required=True),
    ColumnDefinition("model", "Model", ("modelo",), required=True),
    ColumnDefinition("start_year", "Start_Year", ("start year", "year from", "desde"), kind="year", required=True),
    ColumnDefinition("end_year", "End_Year", ("end year", "year to", "hasta"), kind="year", required=True),
)

ALIAS_COLUMNS = (
    ColumnDefinition("action", "_action", ("status", "estado", "action", "accion"), kind="action", hidden=True, required=True),
    ColumnDefinition("alias", "Alias", (), required=True),
    ColumnDefinition("canonical_name", "Canonical_Name", ("canonical name", "canonical", "nombre canonico"), required=True),
    ColumnDefinition("alias_type", "Alias_Type", ("alias type", "type", "tipo"), required=True),
)

PARTS_SHEET = SheetDefinition(
    key="parts",
    title="Parts",
    aliases=("Partes",),
    columns=PARTS_COLUMNS,
    group_headers=(("Part Information", 9), ("Competitor Cross-References", 11), ("Images", 4)),
)

VEHICLE_APPLICATIONS_SHEET = SheetDefinition(
    key="vehicle_applications",
    title="Vehicle Applications",
    aliases=("Aplicaciones", "Applications"),
    columns=VEHICLE_APPLICATION_COLUMNS,
    group_headers=(("Part", 4), ("Vehicle", 4)),
)

ALIASES_SHEET = SheetDefinition(
    key="aliases",
    title="Aliases",
    aliases=("Vehicle Aliases", "Alias"),
    columns=ALIAS_COLUMNS,
    required=False,
    group_headers=(("Vehicle Aliases", 4),),
)

SHEETS = [PARTS_SHEET, VEHICLE_APPLICATIONS_SHEET, ALIASES_SHEET]

# Fields compared field-by-field by the diff engine
PART_FIELDS = [
    "acr_sku",
    "part_type",
    "position_type",
    "abs_type",
    "bolt_pattern",
    "drive_type",
    "specifications",
    "workflow_status",
]

OPTIONAL_PART_FIELDS = [
    "position_type",
    "abs_type",
    "bolt_pattern",
    "drive_type",
    "specifications",
]

VEHICLE_APPLICATION_FIELDS = ["part_id", "make", "model", "start_year", "end_year"]

CROSS_REFERENCE_FIELDS = ["competitor_sku"]

ALIAS_FIELDS = ["canonical_name"]
