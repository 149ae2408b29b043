"""Pure construction of delta payloads sent to the delivery platform."""

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from menu_sync.connectors.base import Catalog, Product, ScopeKey
from menu_sync.constants.sync_enums import ChangeType, DeltaType
from menu_sync.services.change_differ import ChangeRecord
from menu_sync.utils.clock import utcnow

PayloadItem = Tuple[str, Any]


def product_payload(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "price": product.price,
        "is_active": product.is_active,
        "category_id": product.category_id,
        "description": product.description,
        "modifier_ids": [group.id for group in product.modifiers],
    }


def _referenced(catalog: Catalog, products: Iterable[Product]) -> Tuple[List[dict], List[dict]]:
    """Categories and modifier groups used by the given products, in first-seen order."""
    categories_by_id = {c.id: c for c in catalog.categories}
    categories: Dict[str, dict] = {}
    modifiers: Dict[str, dict] = {}
    for product in products:
        if product.category_id and product.category_id in categories_by_id and product.category_id not in categories:
            categories[product.category_id] = categories_by_id[product.category_id].model_dump()
        for group in product.modifiers:
            if group.id not in modifiers:
                modifiers[group.id] = group.model_dump()
    return list(categories.values()), list(modifiers.values())


def build_delta_payload(delta_id: int, scope: ScopeKey, delta_type: DeltaType,
                        source_version: Optional[int], target_version: int,
                        catalog: Catalog, changes: List[ChangeRecord]) -> Dict[str, Any]:
    """
    Build the minimal payload describing how the delivery menu must change.

    FirstSync and FullResync deltas send every product as an addition. An
    incremental delta sends only the products touched by `changes`, with the
    previous values of updated products and the ids of removed ones.
    """
    products_by_id = {p.id: p for p in catalog.products}
    added: List[dict] = []
    updated: List[dict] = []
    removed: List[str] = []
    touched: List[Product] = []

    if delta_type in (DeltaType.FIRST_SYNC, DeltaType.FULL_RESYNC):
        touched = sorted(catalog.products, key=lambda p: p.id)
        added = [product_payload(p) for p in touched]
        removed = [c.entity_id for c in changes if c.change_type == ChangeType.SOFT_DELETED]
    else:
        for change in changes:
            if change.change_type == ChangeType.SOFT_DELETED:
                removed.append(change.entity_id)
                continue
            product = products_by_id.get(change.entity_id)
            if product is None:
                continue
            touched.append(product)
            if change.change_type == ChangeType.ADDED:
                added.append(product_payload(product))
            else:
                updated.append({
                    "product": product_payload(product),
                    "change_type": change.change_type.value,
                    "changed_fields": list(change.changed_fields),
                    "previous_values": json.loads(change.old_value) if change.old_value else {},
                })

    categories, modifiers = _referenced(catalog, touched)
    return {
        "metadata": {
            "delta_id": delta_id,
            "account_id": scope.account_id,
            "branch_id": scope.branch_id,
            "menu_group_id": scope.menu_group_id,
            "delta_type": delta_type.value,
            "source_version": source_version,
            "target_version": target_version,
            "generated_at": utcnow().isoformat(),
        },
        "added": added,
        "updated": updated,
        "removed": removed,
        "categories": categories,
        "modifiers": modifiers,
    }


def payload_counts(payload: Dict[str, Any]) -> Tuple[int, int, int]:
    return len(payload.get("added", [])), len(payload.get("updated", [])), len(payload.get("removed", []))


def payload_items(payload: Dict[str, Any]) -> List[PayloadItem]:
    """Flatten a payload into (section, entry) pairs for batched submission."""
    items: List[PayloadItem] = []
    for section in ("added", "updated", "removed"):
        items.extend((section, entry) for entry in payload.get(section, []))
    return items


def sub_payload(payload: Dict[str, Any], items: List[PayloadItem], batch_number: int) -> Dict[str, Any]:
    """A payload carrying only `items`, with the same metadata and reference data."""
    part = {
        "metadata": {**payload["metadata"], "batch_number": batch_number},
        "added": [],
        "updated": [],
        "removed": [],
        "categories": payload.get("categories", []),
        "modifiers": payload.get("modifiers", []),
    }
    for section, entry in items:
        part[section].append(entry)
    return part
