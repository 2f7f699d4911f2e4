"""Runtime settings loaded from the environment (and a .env file if present)."""

import logging
import os
from dataclasses import dataclass
from datetime import date
from typing import Optional

from dotenv import load_dotenv

from .schema import (
    DEFAULT_SKU_PREFIX,
    DEFAULT_MIN_YEAR,
    DEFAULT_MAX_YEAR_AHEAD,
    DEFAULT_MAX_FILE_SIZE_MB,
    DEFAULT_SNAPSHOT_RETENTION,
)


@dataclass
class Settings:
    """
    Import pipeline settings.

    Every component takes an optional Settings; when omitted the defaults
    below apply, so tests never depend on the environment.
    """
    db_url: Optional[str] = None
    tenant_id: Optional[str] = None
    sku_prefix: str = DEFAULT_SKU_PREFIX
    min_year: int = DEFAULT_MIN_YEAR
    max_year_ahead: int = DEFAULT_MAX_YEAR_AHEAD
    max_file_size_mb: int = DEFAULT_MAX_FILE_SIZE_MB
    snapshot_retention: int = DEFAULT_SNAPSHOT_RETENTION
    log_level: str = "INFO"

    @property
    def max_year(self) -> int:
        return date.today().year + self.max_year_ahead

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Build settings from environment variables.

        Loads a .env file first (python-dotenv); variables already set in
        the environment take precedence.

        Args:
            env_file: Explicit .env path (defaults to searching upward from cwd)
        """
        load_dotenv(env_file)

        return cls(
            db_url=os.getenv("SUPABASE_DB_URL"),
            tenant_id=os.getenv("CATALOG_TENANT_ID") or None,
            sku_prefix=os.getenv("CATALOG_SKU_PREFIX", DEFAULT_SKU_PREFIX),
            min_year=int(os.getenv("CATALOG_MIN_YEAR", str(DEFAULT_MIN_YEAR))),
            max_year_ahead=int(os.getenv("CATALOG_MAX_YEAR_AHEAD", str(DEFAULT_MAX_YEAR_AHEAD))),
            max_file_size_mb=int(os.getenv("CATALOG_MAX_FILE_SIZE_MB", str(DEFAULT_MAX_FILE_SIZE_MB))),
            snapshot_retention=int(os.getenv("CATALOG_SNAPSHOT_RETENTION", str(DEFAULT_SNAPSHOT_RETENTION))),
            log_level=os.getenv("CATALOG_LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Basic console logging for scripts."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
