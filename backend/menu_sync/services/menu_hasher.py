"""Canonical content hash over a catalog for cheap equality testing."""

import hashlib
import json
from typing import Any, Iterable

from menu_sync.connectors.base import Catalog, Product

# Fields deliberately left out of the canonical form. Copy edits to descriptions
# must not trigger a re-sync; the differ still reports them when a sync runs.
HASH_EXCLUDED_FIELDS = ("description",)


def _canonical_product(product: Product) -> str:
    parts = [f"{product.id}|{product.name}|{product.price}|{product.is_active}|{product.category_id}|"]
    for group in sorted(product.modifiers, key=lambda g: g.id):
        parts.append(f"M:{group.id}|")
        for option in sorted(group.options, key=lambda o: o.id):
            parts.append(f"O:{option.id},{option.price}|")
    parts.append(";")
    return "".join(parts)


def canonical_form(products: Iterable[Product]) -> str:
    return "".join(_canonical_product(p) for p in sorted(products, key=lambda p: p.id))


def compute_menu_hash(catalog: Catalog) -> str:
    """SHA-256 (lowercase hex) of the canonical catalog string, independent of input order."""
    return hashlib.sha256(canonical_form(catalog.products).encode("utf-8")).hexdigest()


def compute_hash(data: Any) -> str:
    """SHA-256 of the JSON serialization of arbitrary data."""
    return hashlib.sha256(json.dumps(data, default=str).encode("utf-8")).hexdigest()
