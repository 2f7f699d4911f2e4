"""
Typed row records produced by the row extractor.

Every downstream component (validation, diff, executor) operates on these
records, never on raw cell values. Each record keeps its sheet name and
1-based row number for error reporting.

A row without a surrogate id is an insert candidate. Intent to delete is
carried only by the row action marker (workflow status DELETE), never
inferred from empty columns.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .schema import WORKFLOW_DELETE


@dataclass
class BrandCell:
    """One competitor brand cell on the Parts sheet, before explosion."""
    brand: str
    column: str
    raw: str
    skus: List[str]
    deletes: List[bool]
    space_delimited: bool = False
    duplicates: List[str] = field(default_factory=list)


@dataclass
class PartRow:
    sheet: str
    row_number: int
    id: Optional[str]
    acr_sku: Optional[str]
    part_type: Optional[str]
    position_type: Optional[str] = None
    abs_type: Optional[str] = None
    bolt_pattern: Optional[str] = None
    drive_type: Optional[str] = None
    specifications: Optional[str] = None
    action: Optional[str] = "ACTIVE"  # workflow status, None if unrecognized
    raw_action: Optional[str] = None
    image_urls: Dict[str, str] = field(default_factory=dict)
    brand_cells: List[BrandCell] = field(default_factory=list)

    @property
    def is_insert_candidate(self) -> bool:
        return self.id is None

    @property
    def is_delete(self) -> bool:
        return self.action == WORKFLOW_DELETE

    def values(self) -> Dict[str, Any]:
        """Stored part fields described by this row."""
        return {
            "acr_sku": self.acr_sku,
            "part_type": self.part_type,
            "position_type": self.position_type,
            "abs_type": self.abs_type,
            "bolt_pattern": self.bolt_pattern,
            "drive_type": self.drive_type,
            "specifications": self.specifications,
            "workflow_status": self.action,
        }


@dataclass
class VehicleApplicationRow:
    sheet: str
    row_number: int
    id: Optional[str]
    part_id: Optional[str]
    acr_sku: Optional[str]
    make: Optional[str]
    model: Optional[str]
    start_year: Optional[int]
    end_year: Optional[int]
    action: Optional[str] = "ACTIVE"
    raw_action: Optional[str] = None

    @property
    def is_insert_candidate(self) -> bool:
        return self.id is None

    @property
    def is_delete(self) -> bool:
        return self.action == WORKFLOW_DELETE


@dataclass
class CrossReferenceRow:
    """
    A single competitor SKU exploded out of a Parts sheet brand cell.

    Inherits the parent part's identity (part_id when the part row carries
    one, acr_sku otherwise).
    """
    sheet: str
    row_number: int
    column: str
    part_id: Optional[str]
    acr_sku: Optional[str]
    competitor_brand: str
    competitor_sku: str
    delete: bool = False


@dataclass
class AliasRow:
    sheet: str
    row_number: int
    alias: Optional[str]
    canonical_name: Optional[str]
    alias_type: Optional[str]
    action: Optional[str] = "ACTIVE"
    raw_action: Optional[str] = None

    @property
    def is_delete(self) -> bool:
        return self.action == WORKFLOW_DELETE


@dataclass
class CellDiagnostic:
    """A cell whose value could not be typed (e.g. non-numeric year)."""
    sheet: str
    row: int
    column: str
    value: Any
    message: str


@dataclass
class SheetInfo:
    """What the extractor found in one sheet's header row."""
    key: str
    title: str
    fields: List[str]
    missing_hidden: List[str] = field(default_factory=list)
    missing_required: List[str] = field(default_factory=list)
    duplicate_fields: List[str] = field(default_factory=list)
    unmapped_headers: List[str] = field(default_factory=list)


@dataclass
class ExtractedWorkbook:
    """Per-entity typed rows plus diagnostics for one uploaded file."""
    parts: List[PartRow] = field(default_factory=list)
    vehicle_applications: List[VehicleApplicationRow] = field(default_factory=list)
    cross_references: List[CrossReferenceRow] = field(default_factory=list)
    aliases: List[AliasRow] = field(default_factory=list)
    diagnostics: List[CellDiagnostic] = field(default_factory=list)
    sheets: Dict[str, SheetInfo] = field(default_factory=dict)
    missing_sheets: List[str] = field(default_factory=list)
    file_size_bytes: Optional[int] = None

    @property
    def total_rows(self) -> int:
        return len(self.parts) + len(self.vehicle_applications) + len(self.aliases)
