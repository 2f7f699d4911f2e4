"""
Supabase Postgres implementation of CatalogStore.

Connects directly to the Supabase Postgres instance (not the REST API) using
a psycopg2 connection pool. One pooled connection is held for the whole
import or rollback transaction; concurrent readers never see its
uncommitted rows.

The DSN comes from an explicit URL, SUPABASE_DB_URL, or the individual
SUPABASE_DB_HOST / _PORT / _NAME / _USER / _PASSWORD variables (resolve_dsn).

psycopg2 errors are translated into the store error taxonomy:
IntegrityError / DataError -> StoreConstraintError,
OperationalError / InterfaceError / PoolError -> StoreConnectionError.
"""

import json
import logging
import os
from contextlib import contextmanager
from functools import partial
from typing import Optional, Dict, Any, List
from uuid import UUID

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import make_dsn
from psycopg2.extras import RealDictCursor, Json
from psycopg2.pool import PoolError, SimpleConnectionPool

from .store import CatalogStore
from ..errors import StoreConstraintError, StoreConnectionError
from ..schema import ENTITY_TABLES, IMPORT_HISTORY_TABLE

logger = logging.getLogger(__name__)

_json_dumps = partial(json.dumps, default=str)


def _plain(row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a RealDictRow into a plain dict with string ids."""
    return {
        key: str(value) if isinstance(value, UUID) else value
        for key, value in row.items()
    }


def _check_table(table: str) -> str:
    if table not in ENTITY_TABLES:
        raise ValueError(f"Unknown catalog table: {table}")
    return table


@contextmanager
def _translate_errors():
    try:
        yield
    except (psycopg2.IntegrityError, psycopg2.DataError) as e:
        raise StoreConstraintError(str(e).strip()) from e
    except (psycopg2.OperationalError, psycopg2.InterfaceError, PoolError) as e:
        raise StoreConnectionError(str(e).strip()) from e

# Connection parameters read when no URL is configured
CONNECTION_ENV = {
    "host": "SUPABASE_DB_HOST",
    "port": "SUPABASE_DB_PORT",
    "dbname": "SUPABASE_DB_NAME",
    "user": "SUPABASE_DB_USER",
    "password": "SUPABASE_DB_PASSWORD",
}


def resolve_dsn(db_url: Optional[str] = None, **params) -> str:
    """
    Connection string for the catalog database.

    An explicit db_url wins, then SUPABASE_DB_URL, then a DSN assembled from
    keyword params (host, port, dbname, user, password) with SUPABASE_DB_*
    variables filling the gaps.

    Raises:
        ValueError: If no URL is configured and a parameter is missing
    """
    url = db_url or os.getenv("SUPABASE_DB_URL")
    if url:
        return url

    values = {key: params.get(key) or os.getenv(env) for key, env in CONNECTION_ENV.items()}
    values["port"] = values["port"] or 5432
    missing = [CONNECTION_ENV[key] for key in ("host", "dbname", "user", "password") if not values[key]]
    if missing:
        raise ValueError(f"No database URL configured; set SUPABASE_DB_URL or {', '.join(missing)}")
    return make_dsn(**values)


class SupabaseClient(CatalogStore):
    """
    Supabase Postgres catalog store.

    Expects the tables laid out in sql/schema.sql. The connection pool is
    created on first use.

    Args:
        db_url: Full database URL (see resolve_dsn for fallbacks)
        minconn: Connections kept open by the pool
        maxconn: Pool size limit
        **params: host, port, dbname, user, password
    """

    def __init__(self, db_url: Optional[str] = None, minconn: int = 1, maxconn: int = 10, **params):
        self.dsn = resolve_dsn(db_url, **params)
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[SimpleConnectionPool] = None
        self._tx = None

    @classmethod
    def from_settings(cls, settings) -> "SupabaseClient":
        return cls(db_url=settings.db_url)

    @property
    def pool(self) -> SimpleConnectionPool:
        if self._pool is None:
            with _translate_errors():
                self._pool = SimpleConnectionPool(self.minconn, self.maxconn, dsn=self.dsn)
        return self._pool

    @contextmanager
    def _pooled_connection(self):
        """Borrow a connection for reads outside the transaction."""
        with _translate_errors():
            conn = self.pool.getconn()
        try:
            yield conn
        finally:
            conn.rollback()
            self.pool.putconn(conn)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def begin_transaction(self) -> None:
        if self._tx is not None:
            raise RuntimeError("Transaction already in progress")
        with _translate_errors():
            conn = self.pool.getconn()
        conn.autocommit = False
        self._tx = conn

    def _release(self) -> None:
        conn, self._tx = self._tx, None
        self.pool.putconn(conn)

    def commit_transaction(self) -> None:
        if self._tx is None:
            raise RuntimeError("No transaction in progress")
        try:
            with _translate_errors():
                self._tx.commit()
        finally:
            self._release()

    def rollback_transaction(self) -> None:
        if self._tx is None:
            raise RuntimeError("No transaction in progress")
        try:
            self._tx.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            # Server already dropped the transaction with the connection
            logger.warning("Rollback on a broken connection", exc_info=True)
        finally:
            self._release()

    def _cursor(self):
        """RealDictCursor on the transaction connection."""
        if self._tx is None:
            raise RuntimeError("No transaction in progress. Call begin_transaction() first.")
        return self._tx.cursor(cursor_factory=RealDictCursor)

    # =========================================================================
    # ENTITY ROWS
    # =========================================================================

    def fetch_rows(
        self,
        table: str,
        tenant_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Read every committed row of an entity table for a tenant."""
        query = sql.SQL("""
            SELECT * FROM {}
            WHERE tenant_id IS NOT DISTINCT FROM %s
            ORDER BY created_at, id
        """).format(sql.Identifier(_check_table(table)))

        with self._pooled_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
            with _translate_errors():
                cursor.execute(query, (tenant_id,))
                return [_plain(row) for row in cursor.fetchall()]

    def get_rows(
        self,
        table: str,
        ids: List[str]
    ) -> List[Dict[str, Any]]:
        """Read and lock full rows by id inside the current transaction."""
        if not ids:
            return []

        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute(
                    sql.SQL("""
                        SELECT * FROM {}
                        WHERE id = ANY(%s::uuid[])
                        FOR UPDATE
                    """).format(sql.Identifier(_check_table(table))),
                    ([str(i) for i in ids],)
                )
                return [_plain(row) for row in cursor.fetchall()]

        finally:
            cursor.close()

    def insert_row(
        self,
        table: str,
        record: Dict[str, Any]
    ) -> str:
        """Insert a row; the database generates the id when record has none."""
        columns = [c for c in record if not (c == "id" and record[c] is None)]
        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute(
                    sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id").format(
                        sql.Identifier(_check_table(table)),
                        sql.SQL(", ").join(map(sql.Identifier, columns)),
                        sql.SQL(", ").join(sql.Placeholder() * len(columns))
                    ),
                    [record[c] for c in columns]
                )
                return str(cursor.fetchone()["id"])

        finally:
            cursor.close()

    def update_row(
        self,
        table: str,
        row_id: str,
        values: Dict[str, Any]
    ) -> int:
        """Update columns of one row; updated_at is set by the database."""
        columns = [c for c in values if c != "id"]
        if not columns:
            return 0

        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute(
                    sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
                        sql.Identifier(_check_table(table)),
                        sql.SQL(", ").join(
                            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
                        )
                    ),
                    [values[c] for c in columns] + [str(row_id)]
                )
                return cursor.rowcount

        finally:
            cursor.close()

    def delete_rows(
        self,
        table: str,
        ids: List[str]
    ) -> int:
        """Delete rows by id (foreign keys do not cascade)."""
        if not ids:
            return 0

        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute(
                    sql.SQL("DELETE FROM {} WHERE id = ANY(%s::uuid[])").format(
                        sql.Identifier(_check_table(table))
                    ),
                    ([str(i) for i in ids],)
                )
                return cursor.rowcount

        finally:
            cursor.close()

    # =========================================================================
    # IMPORT HISTORY
    # =========================================================================

    def insert_history(
        self,
        record: Dict[str, Any]
    ) -> str:
        """Insert an immutable import_history record."""
        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute("""
                    INSERT INTO import_history (
                        tenant_id, imported_by, file_name, file_size_bytes,
                        rows_imported, snapshot_data, import_summary, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, NOW())
                    RETURNING id
                """, (
                    record.get("tenant_id"),
                    record.get("imported_by"),
                    record.get("file_name"),
                    record.get("file_size_bytes"),
                    record.get("rows_imported"),
                    Json(record.get("snapshot_data"), dumps=_json_dumps),
                    Json(record.get("import_summary"), dumps=_json_dumps),
                ))
                return str(cursor.fetchone()["id"])

        finally:
            cursor.close()

    def get_history(
        self,
        import_id: str,
        for_update: bool = True
    ) -> Optional[Dict[str, Any]]:
        """Read one history record, locking it for the transaction."""
        try:
            UUID(str(import_id))
        except ValueError:
            # Malformed id text would abort the transaction server-side
            return None

        cursor = self._cursor()

        try:
            with _translate_errors():
                query = "SELECT * FROM import_history WHERE id = %s"
                if for_update:
                    query += " FOR UPDATE"
                cursor.execute(query, (str(import_id),))
                result = cursor.fetchone()
                return _plain(result) if result else None

        finally:
            cursor.close()

    def latest_history_id(
        self,
        tenant_id: Optional[str] = None
    ) -> Optional[str]:
        """Id of the newest unconsumed history record."""
        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute("""
                    SELECT id FROM import_history
                    WHERE tenant_id IS NOT DISTINCT FROM %s AND consumed_at IS NULL
                    ORDER BY created_at DESC
                    LIMIT 1
                """, (tenant_id,))
                result = cursor.fetchone()
                return str(result["id"]) if result else None

        finally:
            cursor.close()

    def mark_history_consumed(
        self,
        import_id: str
    ) -> bool:
        """Conditionally mark a record consumed (False if already consumed)."""
        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute("""
                    UPDATE import_history
                    SET consumed_at = NOW()
                    WHERE id = %s AND consumed_at IS NULL
                """, (str(import_id),))
                return cursor.rowcount == 1

        finally:
            cursor.close()

    def list_history(
        self,
        tenant_id: Optional[str] = None,
        limit: int = 3
    ) -> List[Dict[str, Any]]:
        """Newest unconsumed history records, without snapshot_data."""
        with self._pooled_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
            with _translate_errors():
                cursor.execute("""
                    SELECT id, tenant_id, imported_by, file_name, file_size_bytes,
                           rows_imported, import_summary, created_at, consumed_at
                    FROM import_history
                    WHERE tenant_id IS NOT DISTINCT FROM %s AND consumed_at IS NULL
                    ORDER BY created_at DESC
                    LIMIT %s
                """, (tenant_id, limit))
                return [_plain(row) for row in cursor.fetchall()]

    def prune_history(
        self,
        tenant_id: Optional[str] = None,
        keep: int = 3
    ) -> int:
        """Consume unconsumed history records beyond the newest `keep`."""
        cursor = self._cursor()

        try:
            with _translate_errors():
                cursor.execute("""
                    UPDATE import_history
                    SET consumed_at = NOW()
                    WHERE id IN (
                        SELECT id FROM import_history
                        WHERE tenant_id IS NOT DISTINCT FROM %s AND consumed_at IS NULL
                        ORDER BY created_at DESC
                        OFFSET %s
                    )
                """, (tenant_id, keep))
                return cursor.rowcount

        finally:
            cursor.close()

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
