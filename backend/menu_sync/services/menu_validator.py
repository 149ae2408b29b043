"""Catalog sanity checks run before anything is sent downstream."""

import logging
from collections import Counter
from typing import List

from pydantic import BaseModel

from menu_sync.connectors.base import Catalog

log = logging.getLogger(__name__)


class MenuValidationResult(BaseModel):
    errors: List[str] = []
    warnings: List[str] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_catalog(catalog: Catalog) -> MenuValidationResult:
    """Duplicate ids and blank names are errors; loose category references are warnings."""
    result = MenuValidationResult()

    duplicates = sorted(pid for pid, count in Counter(p.id for p in catalog.products).items() if count > 1)
    for product_id in duplicates:
        result.errors.append(f"Duplicate product id {product_id}")

    category_ids = {c.id for c in catalog.categories}
    for product in catalog.products:
        if not product.id.strip():
            result.errors.append(f"Product {product.name!r} has an empty id")
            continue
        if not product.name.strip():
            result.errors.append(f"Product {product.id} has an empty name")
        if not product.category_id:
            result.warnings.append(f"Product {product.id} has no category")
        elif category_ids and product.category_id not in category_ids:
            result.warnings.append(f"Product {product.id} references unknown category {product.category_id}")
        for group in product.modifiers:
            option_ids = [o.id for o in group.options]
            if len(option_ids) != len(set(option_ids)):
                result.errors.append(f"Product {product.id} modifier group {group.id} has duplicate option ids")

    if result.errors:
        log.warning(f"Catalog validation found {len(result.errors)} errors, {len(result.warnings)} warnings")
    else:
        log.debug(f"Catalog validation passed with {len(result.warnings)} warnings")
    return result
