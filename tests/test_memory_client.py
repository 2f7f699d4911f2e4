"""
Unit tests for the in-memory catalog store.

These tests verify that:
1. The store enforces the same constraints as the Postgres schema
2. Rollback restores the tables as of begin_transaction()
3. Readers outside a transaction only see committed rows
"""

import pytest

from catalogkit.errors import StoreConnectionError, StoreConstraintError
from catalogkit.ingest import MemoryClient
from catalogkit.schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
)

from conftest import PART_ROTOR, PART_PAD, UNKNOWN_ID, XREF_NATIONAL, store_contents


@pytest.fixture
def tx(db):
    """Seeded store with an open transaction."""
    db.begin_transaction()
    yield db
    if db.in_transaction:
        db.rollback_transaction()


# =============================================================================
# CONSTRAINTS
# =============================================================================

class TestConstraints:

    def test_acr_sku_unique_after_normalization(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.insert_row(PARTS_TABLE, {"acr_sku": "acr 001", "part_type": "Caliper", "tenant_id": None})

    def test_acr_sku_unique_per_tenant(self, tx):
        tx.insert_row(PARTS_TABLE, {"acr_sku": "ACR-001", "part_type": "Caliper", "tenant_id": "tenant-a"})
        assert len(tx.get_rows(PARTS_TABLE, [PART_ROTOR])) == 1

    def test_vehicle_application_foreign_key(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.insert_row(VEHICLE_APPLICATIONS_TABLE, {
                "part_id": UNKNOWN_ID, "make": "Ford", "model": "Focus",
                "start_year": 2010, "end_year": 2012, "tenant_id": None,
            })

    def test_year_order(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.insert_row(VEHICLE_APPLICATIONS_TABLE, {
                "part_id": PART_ROTOR, "make": "Ford", "model": "Focus",
                "start_year": 2012, "end_year": 2010, "tenant_id": None,
            })

    def test_cross_reference_identity(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.insert_row(CROSS_REFERENCES_TABLE, {
                "acr_part_id": PART_ROTOR, "competitor_brand": "national", "competitor_sku": "n100",
                "tenant_id": None,
            })

    def test_alias_type_check(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.insert_row(ALIASES_TABLE, {"alias": "Merc", "canonical_name": "Mercedes-Benz",
                                          "alias_type": "brand", "tenant_id": None})

    def test_part_delete_does_not_cascade(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.delete_rows(PARTS_TABLE, [PART_ROTOR])

    def test_update_checks_constraints(self, tx):
        with pytest.raises(StoreConstraintError):
            tx.update_row(PARTS_TABLE, PART_PAD, {"acr_sku": "ACR-001"})

    def test_update_of_missing_row(self, tx):
        assert tx.update_row(PARTS_TABLE, UNKNOWN_ID, {"part_type": "Caliper"}) == 0
        assert tx.delete_rows(PARTS_TABLE, [UNKNOWN_ID]) == 0


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TestTransactions:

    def test_rollback_restores_tables(self, db):
        before = store_contents(db)
        db.begin_transaction()
        db.delete_rows(CROSS_REFERENCES_TABLE, [XREF_NATIONAL])
        db.update_row(PARTS_TABLE, PART_PAD, {"part_type": "Caliper"})
        db.rollback_transaction()

        assert store_contents(db) == before

    def test_uncommitted_writes_are_invisible(self, db):
        db.begin_transaction()
        db.update_row(PARTS_TABLE, PART_PAD, {"part_type": "Caliper"})

        assert {r["id"]: r for r in db.fetch_rows(PARTS_TABLE)}[PART_PAD]["part_type"] == "Brake Pad"
        assert db.get_rows(PARTS_TABLE, [PART_PAD])[0]["part_type"] == "Caliper"

        db.commit_transaction()
        assert {r["id"]: r for r in db.fetch_rows(PARTS_TABLE)}[PART_PAD]["part_type"] == "Caliper"

    def test_writes_require_transaction(self, db):
        with pytest.raises(RuntimeError):
            db.insert_row(PARTS_TABLE, {"acr_sku": "ACR-100", "part_type": "Caliper"})

    def test_nested_transaction_is_rejected(self, tx):
        with pytest.raises(RuntimeError):
            tx.begin_transaction()

    def test_simulated_connection_loss(self):
        db = MemoryClient(fail_after_writes=1)
        db.begin_transaction()
        db.insert_row(PARTS_TABLE, {"acr_sku": "ACR-100", "part_type": "Caliper"})
        with pytest.raises(StoreConnectionError):
            db.insert_row(PARTS_TABLE, {"acr_sku": "ACR-101", "part_type": "Caliper"})
        db.rollback_transaction()
        assert db.row_counts()[PARTS_TABLE] == 0


# =============================================================================
# IMPORT HISTORY
# =============================================================================

class TestHistory:

    def test_consume_once(self, tx):
        import_id = tx.insert_history({"tenant_id": None, "snapshot_data": {}, "rows_imported": 0})
        assert tx.latest_history_id() == import_id
        assert tx.mark_history_consumed(import_id) is True
        assert tx.mark_history_consumed(import_id) is False
        assert tx.latest_history_id() is None

    def test_prune_keeps_newest(self, tx):
        ids = [tx.insert_history({"tenant_id": None, "snapshot_data": {}}) for _ in range(4)]
        assert tx.prune_history(keep=2) == 2
        tx.commit_transaction()
        assert [r["id"] for r in tx.list_history(limit=10)] == [ids[3], ids[2]]
