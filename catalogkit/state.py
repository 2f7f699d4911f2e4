"""
Read-only snapshot of the catalog as currently stored.

The validation engine and diff engine both consume a CatalogState instead of
talking to the store, which keeps them pure functions of (rows, state).
Stored rows are plain dicts keyed by column name, exactly as the store
returns them.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

from .normalizer import normalize_sku

logger = logging.getLogger(__name__)


def vehicle_application_key(part_id: Optional[str], make: Optional[str], model: Optional[str],
                            start_year: Optional[int], end_year: Optional[int]) -> Tuple:
    """Composite identity of a vehicle application when no surrogate id is supplied."""
    return (
        part_id,
        (make or "").strip().casefold(),
        (model or "").strip().casefold(),
        start_year,
        end_year,
    )


def cross_reference_key(part_id: Optional[str], brand: Optional[str], sku: Optional[str]) -> Tuple:
    """Identity of a cross reference: (part, brand, normalized competitor SKU)."""
    return (part_id, (brand or "").strip().upper(), normalize_sku(sku))


def alias_key(alias: Optional[str], alias_type: Optional[str]) -> Tuple:
    return ((alias or "").strip().casefold(), (alias_type or "").strip().lower())


@dataclass
class CatalogState:
    """
    Current stored rows for every entity, with lookups by surrogate id and
    by natural/composite key.
    """
    parts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    vehicle_applications: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cross_references: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    aliases: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tenant_id: Optional[str] = None

    def __post_init__(self):
        self._part_id_by_sku: Dict[str, str] = {}
        for part_id, part in self.parts.items():
            self._part_id_by_sku[normalize_sku(part.get("acr_sku"))] = part_id

        self._va_by_key: Dict[Tuple, str] = {}
        self._vas_by_part: Dict[str, List[str]] = {}
        for va_id, va in self.vehicle_applications.items():
            key = vehicle_application_key(va.get("part_id"), va.get("make"), va.get("model"),
                                          va.get("start_year"), va.get("end_year"))
            self._va_by_key.setdefault(key, va_id)
            self._vas_by_part.setdefault(va.get("part_id"), []).append(va_id)

        self._ref_by_key: Dict[Tuple, str] = {}
        self._refs_by_part: Dict[str, List[str]] = {}
        for ref_id, ref in self.cross_references.items():
            key = cross_reference_key(ref.get("acr_part_id"), ref.get("competitor_brand"), ref.get("competitor_sku"))
            self._ref_by_key.setdefault(key, ref_id)
            self._refs_by_part.setdefault(ref.get("acr_part_id"), []).append(ref_id)

        self._alias_by_key: Dict[Tuple, str] = {}
        for alias_id, alias in self.aliases.items():
            self._alias_by_key.setdefault(alias_key(alias.get("alias"), alias.get("alias_type")), alias_id)

    @classmethod
    def from_rows(
        cls,
        parts: List[Dict[str, Any]],
        vehicle_applications: List[Dict[str, Any]],
        cross_references: List[Dict[str, Any]],
        aliases: List[Dict[str, Any]],
        tenant_id: Optional[str] = None
    ) -> "CatalogState":
        return cls(
            parts={str(r["id"]): dict(r) for r in parts},
            vehicle_applications={str(r["id"]): dict(r) for r in vehicle_applications},
            cross_references={str(r["id"]): dict(r) for r in cross_references},
            aliases={str(r["id"]): dict(r) for r in aliases},
            tenant_id=tenant_id,
        )

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def part_by_sku(self, sku: Optional[str]) -> Optional[Dict[str, Any]]:
        part_id = self._part_id_by_sku.get(normalize_sku(sku))
        return self.parts.get(part_id) if part_id else None

    def vehicle_application_by_key(self, key: Tuple) -> Optional[Dict[str, Any]]:
        va_id = self._va_by_key.get(key)
        return self.vehicle_applications.get(va_id) if va_id else None

    def cross_reference_by_key(self, key: Tuple) -> Optional[Dict[str, Any]]:
        ref_id = self._ref_by_key.get(key)
        return self.cross_references.get(ref_id) if ref_id else None

    def alias_by_key(self, key: Tuple) -> Optional[Dict[str, Any]]:
        alias_id = self._alias_by_key.get(key)
        return self.aliases.get(alias_id) if alias_id else None

    def vehicle_applications_for_part(self, part_id: str) -> List[Dict[str, Any]]:
        return [self.vehicle_applications[i] for i in self._vas_by_part.get(part_id, [])]

    def cross_references_for_part(self, part_id: str) -> List[Dict[str, Any]]:
        return [self.cross_references[i] for i in self._refs_by_part.get(part_id, [])]

    def counts(self) -> Dict[str, int]:
        return {
            "parts": len(self.parts),
            "vehicle_applications": len(self.vehicle_applications),
            "cross_references": len(self.cross_references),
            "vehicle_aliases": len(self.aliases),
        }


def load_catalog_state(db, tenant_id: Optional[str] = None) -> CatalogState:
    """
    Load the current catalog from a store.

    Uses read-only store calls outside any transaction.

    Args:
        db: CatalogStore implementation
        tenant_id: Scope rows to one tenant (None = untenanted rows)

    Returns:
        CatalogState
    """
    state = CatalogState.from_rows(
        parts=db.fetch_rows("parts", tenant_id=tenant_id),
        vehicle_applications=db.fetch_rows("vehicle_applications", tenant_id=tenant_id),
        cross_references=db.fetch_rows("cross_references", tenant_id=tenant_id),
        aliases=db.fetch_rows("vehicle_aliases", tenant_id=tenant_id),
        tenant_id=tenant_id,
    )
    logger.info(f"Loaded catalog state: {state.counts()}")
    return state


@dataclass
class PartRef:
    """
    A vehicle application's or cross reference's resolved part.

    part_id is None when the part is being added by the same import; key is
    then the new part's normalized SKU, which the executor maps to the id
    generated on insert.
    """
    part_id: Optional[str]
    key: str
    deleted: bool = False

    @property
    def is_new(self) -> bool:
        return self.part_id is None

    @property
    def identity(self) -> str:
        return self.part_id if self.part_id else f"new:{self.key}"


class PartResolver:
    """
    Resolves part references against the uploaded Parts sheet first, then
    the store.

    Args:
        parts: PartRow records from the uploaded workbook
        state: Current stored catalog
    """

    def __init__(self, parts, state: CatalogState):
        self.state = state
        self._file_by_sku = {}
        self._file_by_id = {}
        for part in parts:
            if part.acr_sku:
                self._file_by_sku.setdefault(normalize_sku(part.acr_sku), part)
            if part.id:
                self._file_by_id.setdefault(part.id, part)

    def stored_part(self, part_row) -> Optional[Dict[str, Any]]:
        """Stored part a Parts sheet row refers to: by id, else by natural key."""
        if part_row.id:
            return self.state.parts.get(part_row.id)
        if part_row.acr_sku:
            return self.state.part_by_sku(part_row.acr_sku)
        return None

    def ref_for_part_row(self, part_row) -> Optional[PartRef]:
        """PartRef for a Parts sheet row (used by its exploded cross references)."""
        stored = self.stored_part(part_row)
        if stored is not None:
            return PartRef(part_id=stored["id"], key=normalize_sku(part_row.acr_sku or stored.get("acr_sku")),
                           deleted=part_row.is_delete)
        if part_row.id or not part_row.acr_sku:
            return None
        return PartRef(part_id=None, key=normalize_sku(part_row.acr_sku), deleted=part_row.is_delete)

    def resolve(self, part_id: Optional[str], acr_sku: Optional[str]) -> Optional[PartRef]:
        """
        Resolve a reference given by hidden part id and/or ACR SKU.

        Returns:
            PartRef, or None when the part is absent from both file and store
        """
        if part_id:
            stored = self.state.parts.get(part_id)
            if stored is None:
                return None
            file_row = self._file_by_id.get(part_id)
            return PartRef(
                part_id=part_id,
                key=normalize_sku(file_row.acr_sku if file_row and file_row.acr_sku else stored.get("acr_sku")),
                deleted=bool(file_row and file_row.is_delete),
            )

        if not acr_sku:
            return None

        key = normalize_sku(acr_sku)
        file_row = self._file_by_sku.get(key)
        if file_row is not None:
            return self.ref_for_part_row(file_row)

        stored = self.state.part_by_sku(acr_sku)
        if stored is None:
            return None
        file_row = self._file_by_id.get(stored["id"])
        return PartRef(part_id=stored["id"], key=key, deleted=bool(file_row and file_row.is_delete))
