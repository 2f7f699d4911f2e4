"""
Diff engine: identity-first classification of workbook rows into
Added, Updated and Deleted sets per entity.
"""

from .catalog_diff import (
    FieldChange,
    DiffEntry,
    EntityDiff,
    CatalogDiff,
    ENTITY_LABELS,
    REASON_ROW_ACTION,
    REASON_DELETE_MARKER,
    REASON_CASCADE,
    diff_catalog,
    diff_fields,
)

__all__ = [
    "FieldChange",
    "DiffEntry",
    "EntityDiff",
    "CatalogDiff",
    "ENTITY_LABELS",
    "REASON_ROW_ACTION",
    "REASON_DELETE_MARKER",
    "REASON_CASCADE",
    "diff_catalog",
    "diff_fields",
]
