"""Catalog store clients and the transactional import executor."""

from .store import CatalogStore
from .memory_client import MemoryClient
from .supabase_client import SupabaseClient
from .executor import ImportExecutor, ExecuteResult, import_summary

# NOTE: diff types are NOT re-exported here to avoid circular imports.
# Import diff types from catalogkit.diff instead:
#   from catalogkit.diff import diff_catalog, CatalogDiff, ...

__all__ = [
    "CatalogStore",
    "MemoryClient",
    "SupabaseClient",
    "ImportExecutor",
    "ExecuteResult",
    "import_summary",
]
