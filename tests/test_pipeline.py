"""
End-to-end tests for ImportPipeline on an in-memory store.

These tests verify that:
1. Export followed by re-import is a no-op
2. Validation errors and unacknowledged warnings block execution
3. Execution and rollback results come back as plain dicts
4. Failed transactions are reported by failure type, never raised
"""

import io

from catalogkit.config import Settings
from catalogkit.pipeline import ImportPipeline
from catalogkit.schema import PARTS_TABLE, CROSS_REFERENCES_TABLE

from conftest import (
    PART_ROTOR,
    PART_PAD,
    build_workbook,
    make_part_row,
    make_va_row,
    seed_catalog,
    store_contents,
    UnreachableClient,
)

ROTOR_SPECS = "Vented rotor, 300mm diameter, 28mm thick"


def drum_workbook():
    """Changes the rotor's part type (W3)."""
    return build_workbook(parts=[
        make_part_row("ACR-001", id=PART_ROTOR, part_type="Brake Drum", position_type="Front",
                      specifications=ROTOR_SPECS),
    ])


# =============================================================================
# VALIDATE / PREVIEW
# =============================================================================

class TestPreview:

    def test_validate(self, pipeline):
        result = pipeline.validate(build_workbook(parts=[make_part_row("ACR-100", part_type=None)]))
        assert result["valid"] is False
        assert [e["code"] for e in result["errors"]] == ["E3"]
        assert result["summary"]["totalErrors"] == 1

    def test_preview_includes_diff(self, pipeline, db):
        result = pipeline.preview(drum_workbook())
        assert result["valid"] is True
        assert [w["code"] for w in result["warnings"]] == ["W3"]
        assert result["diff"]["summary"]["parts"] == {"adds": 0, "updates": 1, "deletes": 0}
        assert db.list_history() == []

    def test_preview_reports_cascade(self, pipeline):
        result = pipeline.preview(build_workbook(parts=[
            make_part_row("ACR-002", id=PART_PAD, part_type=None, action="Eliminar"),
        ]))
        assert [w["code"] for w in result["warnings"]] == ["W13"]
        assert result["diff"]["summary"]["totalDeletes"] == 3

    def test_preview_of_invalid_file(self, pipeline):
        result = pipeline.preview(build_workbook(
            parts=[make_part_row("ACR-100")],
            vehicle_applications=[make_va_row("ACR-100", start_year=2020, end_year=2010)],
        ))
        assert result["valid"] is False
        assert result["diff"] is None
        assert [e["code"] for e in result["errors"]] == ["E6"]


# =============================================================================
# EXECUTE
# =============================================================================

class TestExecute:

    def test_reimporting_an_export_changes_nothing(self, pipeline, db, exported):
        before = store_contents(db)
        result = pipeline.execute(exported)

        assert result["success"] is False
        assert result["error"]["type"] == "no_changes"
        assert store_contents(db) == before
        assert db.list_history() == []

    def test_export_to_file_and_reimport(self, pipeline, tmp_path):
        path = tmp_path / "catalog.xlsx"
        pipeline.export(str(path))
        result = pipeline.execute(str(path))
        assert result["error"]["type"] == "no_changes"

    def test_warning_gate(self, pipeline, db):
        result = pipeline.execute(drum_workbook())
        assert result["success"] is False
        assert result["error"]["type"] == "warnings_unacknowledged"
        assert result["error"]["codes"] == ["W3"]
        assert db.fetch_rows(PARTS_TABLE)[0]["part_type"] == "Brake Rotor"

        result = pipeline.execute(drum_workbook(), acknowledged_warnings=["W3"], file_name="drums.xlsx")
        assert result["success"] is True
        assert result["summary"]["partsUpdated"] == 1
        parts = {row["id"]: row for row in db.fetch_rows(PARTS_TABLE)}
        assert parts[PART_ROTOR]["part_type"] == "Brake Drum"

    def test_duplicate_skus_fail_validation(self, pipeline, db):
        before = store_contents(db)
        result = pipeline.execute(build_workbook(parts=[make_part_row("ACR-100"), make_part_row("acr 100")]))

        assert result["error"]["type"] == "validation_failed"
        assert [e["code"] for e in result["errors"]] == ["E2"]
        assert result["errors"][0]["rows"] == [4, 5]
        assert store_contents(db) == before

    def test_inverted_year_range_fails_validation(self, pipeline):
        result = pipeline.execute(build_workbook(
            parts=[make_part_row("ACR-100")],
            vehicle_applications=[make_va_row("ACR-100", start_year=2020, end_year=2010)],
        ))
        assert result["error"]["type"] == "validation_failed"
        assert [e["code"] for e in result["errors"]] == ["E6"]

    def test_brand_cell_becomes_cross_references(self, pipeline, db):
        result = pipeline.execute(build_workbook(parts=[
            make_part_row("ACR-100", brands={"NATIONAL": "N-1;N-2;N-3"}),
        ]))
        assert result["success"] is True

        new_id = next(p["id"] for p in db.fetch_rows(PARTS_TABLE) if p["acr_sku"] == "ACR-100")
        refs = sorted(r["competitor_sku"] for r in db.fetch_rows(CROSS_REFERENCES_TABLE)
                      if r["acr_part_id"] == new_id)
        assert refs == ["N-1", "N-2", "N-3"]

    def test_reimport_after_import_changes_nothing(self, pipeline):
        pipeline.execute(build_workbook(
            parts=[make_part_row("ACR-100", brands={"GMB": "G-1"})],
            vehicle_applications=[make_va_row("ACR-100", make="Ford", model="Focus")],
        ))
        exported = pipeline.export(io.BytesIO()).getvalue()
        assert pipeline.execute(exported)["error"]["type"] == "no_changes"

    def test_connection_failure_is_reported(self, pipeline, db):
        before = store_contents(db)
        db.fail_after_writes = 0
        result = pipeline.execute(build_workbook(parts=[make_part_row("ACR-100")]))

        assert result["success"] is False
        assert result["error"]["type"] == "connection"
        assert store_contents(db) == before

    def test_unreachable_store_is_reported(self):
        db = seed_catalog(UnreachableClient())
        db.unreachable = True
        result = ImportPipeline(db).execute(build_workbook(parts=[make_part_row("ACR-100")]))

        assert result["success"] is False
        assert result["error"]["type"] == "connection"

    def test_competitor_sku_with_space_survives_export(self, empty_db):
        empty_db.begin_transaction()
        part_id = empty_db.insert_row(PARTS_TABLE, {"acr_sku": "ACR-500", "part_type": "Caliper",
                                                    "workflow_status": "ACTIVE", "tenant_id": None})
        empty_db.insert_row(CROSS_REFERENCES_TABLE, {"acr_part_id": part_id, "competitor_brand": "GMB",
                                                     "competitor_sku": "GM 5512", "tenant_id": None})
        empty_db.commit_transaction()
        pipeline = ImportPipeline(empty_db)

        exported = pipeline.export(io.BytesIO()).getvalue()

        assert pipeline.validate(exported)["warnings"] == []
        assert pipeline.execute(exported)["error"]["type"] == "no_changes"

    def test_tenant_from_settings(self, empty_db):
        pipeline = ImportPipeline(empty_db, settings=Settings(tenant_id="tenant-a"))
        result = pipeline.execute(build_workbook(parts=[make_part_row("ACR-100")]))

        assert result["success"] is True
        assert empty_db.fetch_rows(PARTS_TABLE) == []
        assert len(empty_db.fetch_rows(PARTS_TABLE, tenant_id="tenant-a")) == 1
        assert [r["id"] for r in pipeline.list_snapshots()] == [result["importId"]]


# =============================================================================
# ROLLBACK
# =============================================================================

class TestRollback:

    def test_rollback_round_trip(self, pipeline, db):
        before = store_contents(db)
        executed = pipeline.execute(drum_workbook(), acknowledged_warnings=["W3"])
        assert [r["id"] for r in pipeline.list_snapshots()] == [executed["importId"]]

        result = pipeline.rollback(executed["importId"])

        assert result["success"] is True
        assert result["importId"] == executed["importId"]
        assert result["restored"]["parts"]["reverted"] == 1
        assert store_contents(db) == before
        assert pipeline.list_snapshots() == []

    def test_second_rollback_is_rejected(self, pipeline):
        executed = pipeline.execute(drum_workbook(), acknowledged_warnings=["W3"])
        pipeline.rollback(executed["importId"])

        result = pipeline.rollback(executed["importId"])
        assert result["success"] is False
        assert result["error"]["type"] == "rollback_rejected"
        assert result["error"]["reason"] == "already_consumed"

    def test_older_import_is_rejected(self, pipeline):
        first = pipeline.execute(build_workbook(parts=[make_part_row("ACR-100")]))
        pipeline.execute(build_workbook(parts=[make_part_row("ACR-101")]))

        result = pipeline.rollback(first["importId"])
        assert result["error"]["reason"] == "not_latest"

    def test_snapshot_listing(self, pipeline):
        for sku in ("ACR-100", "ACR-101"):
            pipeline.execute(build_workbook(parts=[make_part_row(sku)]))
        records = pipeline.list_snapshots()
        assert len(records) == 2
        assert records[0]["rows_imported"] == 1
        assert "snapshot_data" not in records[0]
        assert len(pipeline.list_snapshots(limit=1)) == 1
