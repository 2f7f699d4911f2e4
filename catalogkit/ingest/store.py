"""
Store-access interface for the catalog import pipeline.

Components never hold a global client: a CatalogStore is injected into the
state loader, the import executor and the rollback service. The store is a
plain transactional relational backend with no business logic of its own;
the import executor is the single owner of transactional atomicity.

Implementations:
- SupabaseClient: Postgres via psycopg2
- MemoryClient: in-process, for previews and tests

Implementations must raise StoreConstraintError for unique, foreign-key and
check violations, and StoreConnectionError for connectivity failures.
"""

from typing import Optional, Dict, Any, List


class CatalogStore:
    """
    Abstract store client interface.

    Write methods run inside the transaction opened by begin_transaction().
    fetch_rows() and list_history() are read-only and do not require one.
    """

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def begin_transaction(self) -> None:
        """Begin a transaction. Raises RuntimeError if one is in progress."""
        raise NotImplementedError

    def commit_transaction(self) -> None:
        """Commit the current transaction."""
        raise NotImplementedError

    def rollback_transaction(self) -> None:
        """Abort the current transaction, discarding every write since begin."""
        raise NotImplementedError

    # =========================================================================
    # ENTITY ROWS
    # =========================================================================

    def fetch_rows(
        self,
        table: str,
        tenant_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Read every row of an entity table for a tenant.

        Args:
            table: One of parts, vehicle_applications, cross_references, vehicle_aliases
            tenant_id: Tenant scope (None matches untenanted rows)

        Returns:
            List of row dicts keyed by column name
        """
        raise NotImplementedError

    def get_rows(
        self,
        table: str,
        ids: List[str]
    ) -> List[Dict[str, Any]]:
        """
        Read full rows by surrogate id inside the current transaction,
        locking them against concurrent writers.

        Returns:
            Row dicts for the ids that exist (missing ids are omitted)
        """
        raise NotImplementedError

    def insert_row(
        self,
        table: str,
        record: Dict[str, Any]
    ) -> str:
        """
        Insert a row. If record carries an 'id' it is used as-is
        (rollback re-creates deleted rows with their original identity);
        otherwise the store generates one.

        Returns:
            Surrogate id of the inserted row
        """
        raise NotImplementedError

    def update_row(
        self,
        table: str,
        row_id: str,
        values: Dict[str, Any]
    ) -> int:
        """
        Update columns of one row.

        Returns:
            Number of rows updated (0 if the row no longer exists)
        """
        raise NotImplementedError

    def delete_rows(
        self,
        table: str,
        ids: List[str]
    ) -> int:
        """
        Delete rows by surrogate id. Never cascades: deleting a part that
        still has dependents is a constraint violation.

        Returns:
            Number of rows deleted
        """
        raise NotImplementedError

    # =========================================================================
    # IMPORT HISTORY
    # =========================================================================

    def insert_history(
        self,
        record: Dict[str, Any]
    ) -> str:
        """
        Insert an import_history record (immutable once written).

        Returns:
            History record id
        """
        raise NotImplementedError

    def get_history(
        self,
        import_id: str,
        for_update: bool = True
    ) -> Optional[Dict[str, Any]]:
        """
        Read one history record inside the current transaction.

        Args:
            import_id: History record id
            for_update: Lock the record until the transaction ends

        Returns:
            Record dict or None if it does not exist
        """
        raise NotImplementedError

    def latest_history_id(
        self,
        tenant_id: Optional[str] = None
    ) -> Optional[str]:
        """Id of the newest unconsumed history record for a tenant."""
        raise NotImplementedError

    def mark_history_consumed(
        self,
        import_id: str
    ) -> bool:
        """
        Mark a history record consumed, only if it is not already.

        Returns:
            True if this call consumed it, False if it was already consumed
        """
        raise NotImplementedError

    def list_history(
        self,
        tenant_id: Optional[str] = None,
        limit: int = 3
    ) -> List[Dict[str, Any]]:
        """
        Newest unconsumed history records first, without snapshot_data.
        """
        raise NotImplementedError

    def prune_history(
        self,
        tenant_id: Optional[str] = None,
        keep: int = 3
    ) -> int:
        """
        Mark unconsumed history records beyond the newest `keep` as consumed.

        Returns:
            Number of records pruned
        """
        raise NotImplementedError
