"""
Unit tests for the import executor.

These tests verify that:
1. A failed import leaves the store exactly as it was
2. Warnings must be acknowledged and empty diffs are refused before any write
3. New parts' generated ids flow into their dependents
4. Each import records a snapshot and old snapshots are pruned
"""

import pytest

from catalogkit.config import Settings
from catalogkit.diff import CatalogDiff, DiffEntry
from catalogkit.errors import (
    CONNECTION,
    CONSTRAINT_VIOLATION,
    STALE_DIFF,
    NoChangesError,
    StoreConnectionError,
    TransactionFailedError,
    UnacknowledgedWarningsError,
)
from catalogkit.ingest import ImportExecutor, MemoryClient, import_summary
from catalogkit.schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
)

from conftest import (
    PART_ROTOR,
    PART_PAD,
    VA_CIVIC,
    XREF_PAD_NATIONAL,
    build_workbook,
    compute_diff,
    make_alias_row,
    make_part_row,
    make_va_row,
    seed_catalog,
    store_contents,
    UnreachableClient,
)

ROTOR_SPECS = "Vented rotor, 300mm diameter, 28mm thick"


class FlakyClient(MemoryClient):
    """Drops the connection on the first history insert(s)."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def insert_history(self, record):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise StoreConnectionError("server closed the connection unexpectedly")
        return super().insert_history(record)


def new_part_workbook(*skus):
    return build_workbook(
        parts=[make_part_row(sku, brands={"NATIONAL": f"N-{sku}"}) for sku in skus],
        vehicle_applications=[make_va_row(sku, make="Ford", model="Focus") for sku in skus],
    )


def history(db):
    return db.list_history(limit=100)


# =============================================================================
# PRECONDITIONS
# =============================================================================

class TestPreconditions:

    def test_unacknowledged_warnings(self, db):
        diff = compute_diff(db, build_workbook(parts=[
            make_part_row("ACR-001", id=PART_ROTOR, part_type="Brake Drum", position_type="Front",
                          specifications="Vented rotor, 300mm diameter, 28mm thick"),
        ]))
        executor = ImportExecutor(db)

        with pytest.raises(UnacknowledgedWarningsError) as exc_info:
            executor.execute(diff)
        assert exc_info.value.codes == ["W3"]
        assert history(db) == []

        result = executor.execute(diff, acknowledged_warnings=["w3"])
        assert result.summary["partsUpdated"] == 1

    def test_no_changes(self, db, exported):
        diff = compute_diff(db, exported)
        with pytest.raises(NoChangesError):
            ImportExecutor(db).execute(diff)
        assert history(db) == []


# =============================================================================
# WRITES
# =============================================================================

class TestWrites:

    def test_new_part_ids_flow_to_dependents(self, db):
        result = ImportExecutor(db).execute(compute_diff(db, new_part_workbook("ACR-100")))

        parts = {row["acr_sku"]: row for row in db.fetch_rows(PARTS_TABLE)}
        new_id = parts["ACR-100"]["id"]
        assert parts["ACR-100"]["updated_by"] == "import"
        assert parts["ACR-100"]["workflow_status"] == "ACTIVE"

        vas = [va for va in db.fetch_rows(VEHICLE_APPLICATIONS_TABLE) if va["part_id"] == new_id]
        assert [(va["make"], va["model"]) for va in vas] == [("Ford", "Focus")]
        refs = [r for r in db.fetch_rows(CROSS_REFERENCES_TABLE) if r["acr_part_id"] == new_id]
        assert [(r["competitor_brand"], r["competitor_sku"]) for r in refs] == [("NATIONAL", "N-ACR-100")]

        assert result.summary["partsAdded"] == 1
        assert result.summary["vehicleApplicationsAdded"] == 1
        assert result.summary["crossReferencesAdded"] == 1
        assert result.summary["totalChanges"] == 3

    def test_updates_are_stamped(self, db):
        diff = compute_diff(db, build_workbook(
            vehicle_applications=[make_va_row("ACR-002", id=VA_CIVIC, part_id=PART_PAD,
                                              make="Honda", model="Civic", start_year=2012, end_year=2017)],
            aliases=[make_alias_row("Chevy", "Chevrolet Motor Co")],
        ))
        ImportExecutor(db).execute(diff)

        contents = store_contents(db)
        assert contents[VEHICLE_APPLICATIONS_TABLE][VA_CIVIC]["end_year"] == 2017
        assert contents[VEHICLE_APPLICATIONS_TABLE][VA_CIVIC]["updated_by"] == "import"
        alias = next(iter(contents[ALIASES_TABLE].values()))
        assert alias["canonical_name"] == "Chevrolet Motor Co"
        assert "updated_by" not in alias

    def test_part_delete_removes_dependents(self, db):
        diff = compute_diff(db, build_workbook(parts=[
            make_part_row("ACR-002", id=PART_PAD, part_type=None, action="Eliminar"),
        ]))
        ImportExecutor(db).execute(diff, acknowledged_warnings=["W13"])

        contents = store_contents(db)
        assert PART_PAD not in contents[PARTS_TABLE]
        assert VA_CIVIC not in contents[VEHICLE_APPLICATIONS_TABLE]
        assert XREF_PAD_NATIONAL not in contents[CROSS_REFERENCES_TABLE]
        assert PART_ROTOR in contents[PARTS_TABLE]

    def test_tenant_scoping(self):
        db = MemoryClient()
        settings = Settings(tenant_id="tenant-a")
        diff = compute_diff(db, new_part_workbook("ACR-100"), tenant_id="tenant-a")
        ImportExecutor(db, settings=settings).execute(diff)

        assert db.fetch_rows(PARTS_TABLE) == []
        assert [p["acr_sku"] for p in db.fetch_rows(PARTS_TABLE, tenant_id="tenant-a")] == ["ACR-100"]
        assert len(db.list_history(tenant_id="tenant-a")) == 1

    def test_chained_sku_renames(self, db):
        # Rows are in the order that would collide if applied top to bottom
        data = build_workbook(parts=[
            make_part_row("ACR-001", id=PART_PAD, part_type="Brake Pad", position_type="Rear"),
            make_part_row("ACR-009", id=PART_ROTOR, position_type="Front", specifications=ROTOR_SPECS),
        ])
        ImportExecutor(db).execute(compute_diff(db, data), acknowledged_warnings=["W1"])

        skus = {row["id"]: row["acr_sku"] for row in db.fetch_rows(PARTS_TABLE)}
        assert skus == {PART_PAD: "ACR-001", PART_ROTOR: "ACR-009"}


# =============================================================================
# ATOMICITY
# =============================================================================

class TestAtomicity:

    def test_connection_lost_mid_batch(self, db):
        before = store_contents(db)
        diff = compute_diff(db, new_part_workbook("ACR-100", "ACR-101", "ACR-102"))
        db.fail_after_writes = 4

        with pytest.raises(TransactionFailedError) as exc_info:
            ImportExecutor(db).execute(diff)

        assert exc_info.value.kind == CONNECTION
        assert store_contents(db) == before
        assert history(db) == []
        assert not db.in_transaction

    def test_constraint_violation(self, db):
        before = store_contents(db)
        row = {"acr_sku": "ACR-100", "part_type": "Caliper", "workflow_status": "ACTIVE"}
        diff = CatalogDiff()
        diff.parts.added = [
            DiffEntry(table=PARTS_TABLE, key=("ACR100",), after=dict(row), row_number=4),
            DiffEntry(table=PARTS_TABLE, key=("ACR100",), after=dict(row), row_number=5),
        ]

        with pytest.raises(TransactionFailedError) as exc_info:
            ImportExecutor(db).execute(diff)

        assert exc_info.value.kind == CONSTRAINT_VIOLATION
        assert store_contents(db) == before
        assert history(db) == []

    def test_stale_diff(self, db):
        diff = compute_diff(db, build_workbook(parts=[
            make_part_row("ACR-002", id=PART_PAD, part_type="Brake Pad", position_type="Rear",
                          bolt_pattern="5x114.3"),
        ]))

        db.begin_transaction()
        db.delete_rows(CROSS_REFERENCES_TABLE, [XREF_PAD_NATIONAL])
        db.delete_rows(VEHICLE_APPLICATIONS_TABLE, [VA_CIVIC])
        db.delete_rows(PARTS_TABLE, [PART_PAD])
        db.commit_transaction()

        with pytest.raises(TransactionFailedError) as exc_info:
            ImportExecutor(db).execute(diff)
        assert exc_info.value.kind == STALE_DIFF

    def test_connection_errors_are_retried(self):
        db = seed_catalog(FlakyClient(failures=1))
        diff = compute_diff(db, new_part_workbook("ACR-100"))

        result = ImportExecutor(db).execute(diff, max_retries=1)

        assert db.attempts == 2
        assert result.summary["partsAdded"] == 1
        assert len([p for p in db.fetch_rows(PARTS_TABLE) if p["acr_sku"] == "ACR-100"]) == 1

    def test_no_retry_by_default(self):
        db = seed_catalog(FlakyClient(failures=1))
        before = store_contents(db)
        diff = compute_diff(db, new_part_workbook("ACR-100"))

        with pytest.raises(TransactionFailedError):
            ImportExecutor(db).execute(diff)
        assert db.attempts == 1
        assert store_contents(db) == before

    def test_transaction_cannot_open(self):
        db = seed_catalog(UnreachableClient())
        diff = compute_diff(db, new_part_workbook("ACR-100"))
        db.unreachable = True

        with pytest.raises(TransactionFailedError) as exc_info:
            ImportExecutor(db).execute(diff)

        assert exc_info.value.kind == CONNECTION
        assert history(db) == []


# =============================================================================
# HISTORY
# =============================================================================

class TestHistory:

    def test_history_record(self, db):
        diff = compute_diff(db, new_part_workbook("ACR-100"))
        result = ImportExecutor(db).execute(diff, file_name="catalog.xlsx", imported_by="ops@example.com",
                                            file_size_bytes=2048)

        record = history(db)[0]
        assert record["id"] == result.import_id
        assert record["file_name"] == "catalog.xlsx"
        assert record["imported_by"] == "ops@example.com"
        assert record["rows_imported"] == 3
        assert record["import_summary"] == import_summary(diff)
        assert "snapshot_data" not in record

        db.begin_transaction()
        snapshot = db.get_history(result.import_id)["snapshot_data"]
        db.rollback_transaction()
        assert len(snapshot[PARTS_TABLE]["added"]) == 1
        assert snapshot[PARTS_TABLE]["updated"] == []
        assert "timestamp" in snapshot

    def test_snapshot_holds_pre_images(self, db):
        diff = compute_diff(db, build_workbook(parts=[
            make_part_row("ACR-002", id=PART_PAD, part_type="Brake Pad", position_type="Rear",
                          drive_type="AWD"),
        ]))
        result = ImportExecutor(db).execute(diff)

        db.begin_transaction()
        snapshot = db.get_history(result.import_id)["snapshot_data"]
        db.rollback_transaction()
        pre_image = snapshot[PARTS_TABLE]["updated"][0]
        assert pre_image["id"] == PART_PAD
        assert pre_image["drive_type"] is None
        assert pre_image["updated_by"] is None

    def test_old_snapshots_are_pruned(self, db):
        executor = ImportExecutor(db, settings=Settings(snapshot_retention=2))
        ids = []
        for sku in ("ACR-100", "ACR-101", "ACR-102"):
            ids.append(executor.execute(compute_diff(db, new_part_workbook(sku))).import_id)

        assert [record["id"] for record in history(db)] == [ids[2], ids[1]]

    def test_summary_counts(self, db):
        diff = compute_diff(db, build_workbook(
            parts=[make_part_row("ACR-100")],
            aliases=[make_alias_row("VW", "Volkswagen")],
        ))
        summary = import_summary(diff)
        assert summary["adds"] == 2
        assert summary["partsAdded"] == 1
        assert summary["aliasesAdded"] == 1
        assert summary["crossReferencesDeleted"] == 0
        assert summary["totalChanges"] == 2
