from .parser import CatalogParser
from .normalizer import CatalogNormalizer
from .config import Settings, configure_logging
from .pipeline import ImportPipeline
from .schema import SHEETS, BRAND_COLUMNS

__all__ = ["CatalogParser", "CatalogNormalizer", "Settings", "configure_logging", "ImportPipeline", "SHEETS", "BRAND_COLUMNS"]
