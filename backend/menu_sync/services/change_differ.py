"""Entity-level diff between two catalogs."""

import json
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from menu_sync.connectors.base import Catalog, Product
from menu_sync.constants.sync_enums import ChangeType, EntityType
from menu_sync.utils.clock import utcnow

log = logging.getLogger(__name__)


class ChangeRecord(BaseModel):
    change_type: ChangeType
    entity_type: EntityType = EntityType.PRODUCT
    entity_id: str
    entity_name: Optional[str] = None
    changed_fields: List[str] = Field([], description="Fields that differ between the two versions")
    old_value: Optional[str] = Field(None, description="Serialized value before the change")
    new_value: Optional[str] = Field(None, description="Serialized value after the change")


def _summary(product: Product, with_category: bool = True) -> dict:
    value = {"name": product.name, "price": product.price, "is_active": product.is_active}
    if with_category:
        value["category_id"] = product.category_id
    return value


def _changed_fields(previous: Product, current: Product) -> List[str]:
    fields = []
    if previous.name != current.name:
        fields.append("name")
    if previous.price != current.price:
        fields.append("price")
    if previous.is_active != current.is_active:
        fields.append("is_active")
    if (previous.description or "") != (current.description or ""):
        fields.append("description")
    if previous.category_id != current.category_id:
        fields.append("category")
    if len(previous.modifiers) != len(current.modifiers):
        fields.append("modifiers")
    return fields


def diff_catalogs(previous: Optional[Catalog], current: Catalog) -> List[ChangeRecord]:
    """
    Compare two catalogs product by product.

    Added and SoftDeleted come from id set differences, Modified from field
    comparison. A product going from inactive to active is recorded as
    Restored instead of Modified. Without a previous catalog every current
    product is Added.
    """
    if previous is None:
        return [
            ChangeRecord(
                change_type=ChangeType.ADDED,
                entity_id=p.id,
                entity_name=p.name,
                new_value=json.dumps(_summary(p, with_category=False)),
            )
            for p in sorted(current.products, key=lambda p: p.id)
        ]

    previous_by_id = {p.id: p for p in previous.products}
    current_by_id = {p.id: p for p in current.products}
    changes: List[ChangeRecord] = []

    for product_id in sorted(current_by_id.keys() - previous_by_id.keys()):
        product = current_by_id[product_id]
        changes.append(ChangeRecord(
            change_type=ChangeType.ADDED,
            entity_id=product_id,
            entity_name=product.name,
            new_value=json.dumps(_summary(product)),
        ))

    for product_id in sorted(previous_by_id.keys() - current_by_id.keys()):
        product = previous_by_id[product_id]
        old_value = _summary(product)
        old_value["deleted_at"] = utcnow().isoformat()
        changes.append(ChangeRecord(
            change_type=ChangeType.SOFT_DELETED,
            entity_id=product_id,
            entity_name=product.name,
            old_value=json.dumps(old_value),
        ))

    for product_id in sorted(previous_by_id.keys() & current_by_id.keys()):
        before = previous_by_id[product_id]
        after = current_by_id[product_id]
        fields = _changed_fields(before, after)
        if not fields:
            continue

        if not before.is_active and after.is_active:
            new_value = _summary(after)
            new_value["restored_at"] = utcnow().isoformat()
            changes.append(ChangeRecord(
                change_type=ChangeType.RESTORED,
                entity_id=product_id,
                entity_name=after.name,
                changed_fields=fields,
                old_value=json.dumps(_summary(before)),
                new_value=json.dumps(new_value),
            ))
        else:
            changes.append(ChangeRecord(
                change_type=ChangeType.MODIFIED,
                entity_id=product_id,
                entity_name=after.name,
                changed_fields=fields,
                old_value=json.dumps(_summary(before)),
                new_value=json.dumps(_summary(after)),
            ))

    log.debug(f"Catalog diff: {len(changes)} changes ({len(current_by_id)} current, {len(previous_by_id)} previous)")
    return changes
