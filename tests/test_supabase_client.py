"""
Offline tests for the Postgres catalog store.

These tests verify that:
1. Connection settings resolve from arguments first, then the environment
2. psycopg2 errors surface as store errors
3. Malformed ids and unknown tables are rejected before any query
"""

import psycopg2
import pytest
from psycopg2.extensions import parse_dsn
from psycopg2.pool import PoolError

from catalogkit.errors import StoreConnectionError, StoreConstraintError
from catalogkit.config import Settings
from catalogkit.ingest.supabase_client import SupabaseClient, _check_table, _translate_errors

CONNECTION_VARS = [
    "SUPABASE_DB_URL",
    "SUPABASE_DB_HOST",
    "SUPABASE_DB_PORT",
    "SUPABASE_DB_NAME",
    "SUPABASE_DB_USER",
    "SUPABASE_DB_PASSWORD",
    "CATALOG_TENANT_ID",
    "CATALOG_SNAPSHOT_RETENTION",
]


@pytest.fixture
def clean_env(monkeypatch):
    # setenv records each name, so teardown also clears values loaded from .env
    for name in CONNECTION_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


# =============================================================================
# CONNECTION SETTINGS
# =============================================================================

class TestConnectionSettings:

    def test_explicit_url_wins(self, clean_env):
        clean_env.setenv("SUPABASE_DB_URL", "postgresql://env@db:5432/env")
        client = SupabaseClient(db_url="postgresql://arg@db:5432/arg")
        assert client.dsn == "postgresql://arg@db:5432/arg"

    def test_url_from_environment(self, clean_env):
        clean_env.setenv("SUPABASE_DB_URL", "postgresql://env@db:5432/env")
        assert SupabaseClient().dsn == "postgresql://env@db:5432/env"

    def test_url_from_parts(self, clean_env):
        clean_env.setenv("SUPABASE_DB_HOST", "db.example.com")
        clean_env.setenv("SUPABASE_DB_NAME", "postgres")
        clean_env.setenv("SUPABASE_DB_USER", "catalog")
        clean_env.setenv("SUPABASE_DB_PASSWORD", "secret")
        assert parse_dsn(SupabaseClient(port=6543).dsn) == {
            "host": "db.example.com",
            "port": "6543",
            "dbname": "postgres",
            "user": "catalog",
            "password": "secret",
        }

    def test_from_settings(self, clean_env):
        client = SupabaseClient.from_settings(Settings(db_url="postgresql://catalog@db:5432/catalog"))
        assert client.dsn == "postgresql://catalog@db:5432/catalog"

    def test_missing_parts(self, clean_env):
        with pytest.raises(ValueError):
            SupabaseClient(host="db.example.com")

    def test_no_connection_until_used(self, clean_env):
        client = SupabaseClient(db_url="postgresql://catalog@localhost:1/none")
        assert client._pool is None
        client.close()


# =============================================================================
# GUARDS
# =============================================================================

class TestGuards:

    def test_integrity_errors_become_constraint_errors(self):
        with pytest.raises(StoreConstraintError):
            with _translate_errors():
                raise psycopg2.IntegrityError("duplicate key value violates unique constraint")

    def test_operational_errors_become_connection_errors(self):
        with pytest.raises(StoreConnectionError):
            with _translate_errors():
                raise psycopg2.OperationalError("server closed the connection unexpectedly")

    def test_exhausted_pool_becomes_connection_error(self):
        with pytest.raises(StoreConnectionError):
            with _translate_errors():
                raise PoolError("connection pool exhausted")

    def test_unknown_table(self):
        assert _check_table("parts") == "parts"
        with pytest.raises(ValueError):
            _check_table("import_history; DROP TABLE parts")

    def test_malformed_import_id(self, clean_env):
        client = SupabaseClient(db_url="postgresql://catalog@localhost:1/none")
        assert client.get_history("not-a-uuid") is None

    def test_writes_require_transaction(self, clean_env):
        client = SupabaseClient(db_url="postgresql://catalog@localhost:1/none")
        with pytest.raises(RuntimeError):
            client.commit_transaction()


# =============================================================================
# SETTINGS
# =============================================================================

class TestSettings:

    def test_from_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "SUPABASE_DB_URL=postgresql://catalog@db:5432/catalog\n"
            "CATALOG_TENANT_ID=tenant-a\n"
            "CATALOG_SNAPSHOT_RETENTION=5\n"
        )

        settings = Settings.from_env(str(env_file))

        assert settings.db_url == "postgresql://catalog@db:5432/catalog"
        assert settings.tenant_id == "tenant-a"
        assert settings.snapshot_retention == 5
        assert SupabaseClient.from_settings(settings).dsn == settings.db_url

    def test_environment_wins_over_env_file(self, clean_env, tmp_path):
        clean_env.setenv("CATALOG_TENANT_ID", "tenant-b")
        env_file = tmp_path / ".env"
        env_file.write_text("CATALOG_TENANT_ID=tenant-a\n")

        assert Settings.from_env(str(env_file)).tenant_id == "tenant-b"
