"""
Shared fixtures: in-memory workbooks built with openpyxl and a seeded
MemoryClient catalog.
"""

import io

import openpyxl
import pytest

from catalogkit.adapters.excel_adapter import ExcelAdapter
from catalogkit.config import Settings
from catalogkit.diff import diff_catalog
from catalogkit.errors import StoreConnectionError
from catalogkit.ingest.memory_client import MemoryClient
from catalogkit.parser import CatalogParser
from catalogkit.pipeline import ImportPipeline
from catalogkit.state import load_catalog_state
from catalogkit.validation import ValidationEngine
from catalogkit.schema import (
    PARTS_SHEET,
    VEHICLE_APPLICATIONS_SHEET,
    ALIASES_SHEET,
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
)

# Stored ids used throughout the suite
PART_ROTOR = "11111111-1111-4111-8111-111111111111"
PART_PAD = "22222222-2222-4222-8222-222222222222"
VA_COROLLA = "33333333-3333-4333-8333-333333333333"
VA_CIVIC = "44444444-4444-4444-8444-444444444444"
XREF_NATIONAL = "55555555-5555-4555-8555-555555555555"
XREF_ATV = "66666666-6666-4666-8666-666666666666"
XREF_PAD_NATIONAL = "77777777-7777-4777-8777-777777777777"
ALIAS_CHEVY = "88888888-8888-4888-8888-888888888888"

UNKNOWN_ID = "99999999-9999-4999-8999-999999999999"


# =============================================================================
# WORKBOOK BUILDERS
# =============================================================================

def make_part_row(acr_sku, part_type="Brake Rotor", id=None, action=None, brands=None, **fields):
    """Parts sheet row keyed by field name; brands maps brand -> cell text."""
    row = {"id": id, "action": action, "acr_sku": acr_sku, "part_type": part_type}
    row.update(fields)
    for brand, text in (brands or {}).items():
        row[f"brand:{brand}"] = text
    return row


def make_va_row(acr_sku, make="Toyota", model="Corolla", start_year=2010, end_year=2015,
                id=None, part_id=None, action=None):
    return {
        "id": id,
        "part_id": part_id,
        "action": action,
        "acr_sku": acr_sku,
        "make": make,
        "model": model,
        "start_year": start_year,
        "end_year": end_year,
    }


def make_alias_row(alias, canonical_name, alias_type="make", action=None):
    return {"action": action, "alias": alias, "canonical_name": canonical_name, "alias_type": alias_type}


def _write_sheet(wb, sheet, rows, drop=(), title=None):
    columns = [c for c in sheet.columns if c.field not in drop]
    ws = wb.create_sheet(title=title or sheet.title)
    ws.cell(row=1, column=1, value=sheet.title)
    for col_idx, column in enumerate(columns, start=1):
        ws.cell(row=2, column=col_idx, value=column.header)
        ws.cell(row=3, column=col_idx, value="instructions")
    for row_idx, row in enumerate(rows, start=4):
        for col_idx, column in enumerate(columns, start=1):
            value = row.get(column.field)
            if value is not None:
                ws.cell(row=row_idx, column=col_idx, value=value)


def build_workbook(parts=(), vehicle_applications=(), aliases=None,
                   drop_columns=None, omit_sheets=()) -> bytes:
    """
    Build an .xlsx in the 3-row header layout and return its bytes.

    Args:
        parts: Parts sheet rows (make_part_row)
        vehicle_applications: Vehicle Applications sheet rows (make_va_row)
        aliases: Aliases sheet rows; None leaves the optional sheet out
        drop_columns: sheet key -> fields whose columns are left out
        omit_sheets: sheet keys to leave out entirely
    """
    drop_columns = drop_columns or {}
    wb = openpyxl.Workbook()
    wb.remove(wb.active)

    if "parts" not in omit_sheets:
        _write_sheet(wb, PARTS_SHEET, parts, drop_columns.get("parts", ()))
    if "vehicle_applications" not in omit_sheets:
        _write_sheet(wb, VEHICLE_APPLICATIONS_SHEET, vehicle_applications,
                     drop_columns.get("vehicle_applications", ()))
    if aliases is not None and "aliases" not in omit_sheets:
        _write_sheet(wb, ALIASES_SHEET, aliases, drop_columns.get("aliases", ()))

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


# =============================================================================
# STORE
# =============================================================================

def _part(id, acr_sku, part_type, position_type=None, specifications=None, workflow_status="ACTIVE"):
    return {
        "id": id,
        "tenant_id": None,
        "acr_sku": acr_sku,
        "part_type": part_type,
        "position_type": position_type,
        "abs_type": None,
        "bolt_pattern": None,
        "drive_type": None,
        "specifications": specifications,
        "workflow_status": workflow_status,
        "updated_by": None,
    }


def _va(id, part_id, make, model, start_year, end_year):
    return {
        "id": id,
        "tenant_id": None,
        "part_id": part_id,
        "make": make,
        "model": model,
        "start_year": start_year,
        "end_year": end_year,
        "updated_by": None,
    }


def _xref(id, part_id, brand, sku):
    return {
        "id": id,
        "tenant_id": None,
        "acr_part_id": part_id,
        "competitor_brand": brand,
        "competitor_sku": sku,
        "updated_by": None,
    }


def seed_catalog(db):
    """Two parts, two vehicle applications, three cross references, one alias."""
    db.begin_transaction()
    db.insert_row(PARTS_TABLE, _part(PART_ROTOR, "ACR-001", "Brake Rotor", "Front",
                                     "Vented rotor, 300mm diameter, 28mm thick"))
    db.insert_row(PARTS_TABLE, _part(PART_PAD, "ACR-002", "Brake Pad", "Rear"))
    db.insert_row(VEHICLE_APPLICATIONS_TABLE, _va(VA_COROLLA, PART_ROTOR, "Toyota", "Corolla", 2010, 2015))
    db.insert_row(VEHICLE_APPLICATIONS_TABLE, _va(VA_CIVIC, PART_PAD, "Honda", "Civic", 2012, 2016))
    db.insert_row(CROSS_REFERENCES_TABLE, _xref(XREF_NATIONAL, PART_ROTOR, "NATIONAL", "N-100"))
    db.insert_row(CROSS_REFERENCES_TABLE, _xref(XREF_ATV, PART_ROTOR, "ATV", "A-200"))
    db.insert_row(CROSS_REFERENCES_TABLE, _xref(XREF_PAD_NATIONAL, PART_PAD, "NATIONAL", "N-300"))
    db.insert_row(ALIASES_TABLE, {
        "id": ALIAS_CHEVY,
        "tenant_id": None,
        "alias": "Chevy",
        "canonical_name": "Chevrolet",
        "alias_type": "make",
    })
    db.commit_transaction()
    return db


class UnreachableClient(MemoryClient):
    """MemoryClient that cannot open a transaction once unreachable is set."""

    unreachable = False

    def begin_transaction(self):
        if self.unreachable:
            raise StoreConnectionError("connection pool exhausted")
        super().begin_transaction()


def compute_diff(db, data, tenant_id=None):
    """Extract, validate and diff workbook bytes against the store."""
    parser = CatalogParser()
    parser.register_adapter(ExcelAdapter())
    workbook = parser.parse(data)
    state = load_catalog_state(db, tenant_id=tenant_id)
    validation = ValidationEngine().validate(workbook, state)
    return diff_catalog(workbook, state, validation)


def store_contents(db):
    """Committed rows of every entity table, keyed by id, for equality checks."""
    return {
        table: {row["id"]: row for row in db.fetch_rows(table)}
        for table in (PARTS_TABLE, VEHICLE_APPLICATIONS_TABLE, CROSS_REFERENCES_TABLE, ALIASES_TABLE)
    }


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def empty_db():
    return MemoryClient()


@pytest.fixture
def db():
    return seed_catalog(MemoryClient())


@pytest.fixture
def pipeline(db, settings):
    return ImportPipeline(db, settings=settings)


@pytest.fixture
def exported(pipeline):
    """The seeded catalog exported as workbook bytes."""
    buffer = io.BytesIO()
    pipeline.export(buffer)
    return buffer.getvalue()
