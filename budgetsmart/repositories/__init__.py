"""Repository helpers for database access."""

from budgetsmart.repositories.catalog_repository import (
    CatalogRepository,
    InvalidItemError,
    item_fingerprint,
    normalize_text,
    to_decimal_or_none,
)

__all__ = ["CatalogRepository", "InvalidItemError", "item_fingerprint", "normalize_text", "to_decimal_or_none"]
