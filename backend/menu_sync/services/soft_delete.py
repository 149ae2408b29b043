"""Soft-delete tracking and propagation of removed items to the delivery platform."""

import json
import logging
from datetime import timedelta
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from menu_sync.connectors.base import DeliveryPlatform, ScopeKey
from menu_sync.constants.sync_enums import ChangeType, DeletionSyncStatus
from menu_sync.models.menu_item_deletion import MenuItemDeletion
from menu_sync.services.change_differ import ChangeRecord
from menu_sync.services.retry_policy import RetryPolicy
from menu_sync.utils.clock import utcnow
from menu_sync.utils.scope import scope_filters

log = logging.getLogger(__name__)

MAX_DELETION_RETRIES = 5
DELETION_REASON = "RemovedFromSource"


class DeletionSyncResult(BaseModel):
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    error_message: Optional[str] = None


class SoftDeleteService:
    def __init__(self, db: Session, delivery_platform: Optional[DeliveryPlatform] = None,
                 retry_policy: Optional[RetryPolicy] = None, retention_days: int = 90):
        self.db = db
        self.delivery_platform = delivery_platform
        self.retry_policy = retry_policy or RetryPolicy()
        self.retention_days = retention_days

    def _pending_query(self, scope: Optional[ScopeKey] = None):
        query = self.db.query(MenuItemDeletion).filter(
            or_(
                MenuItemDeletion.sync_status == DeletionSyncStatus.PENDING.value,
                and_(
                    MenuItemDeletion.sync_status == DeletionSyncStatus.FAILED.value,
                    MenuItemDeletion.retry_count < MAX_DELETION_RETRIES
                )
            )
        )
        if scope is not None:
            query = query.filter(*scope_filters(MenuItemDeletion, scope))
        return query

    def record_deletions(self, scope: ScopeKey, changes: List[ChangeRecord]) -> List[MenuItemDeletion]:
        """One deletion record per SoftDeleted change not already awaiting propagation."""
        removed = [c for c in changes if c.change_type == ChangeType.SOFT_DELETED]
        if not removed:
            return []

        already_pending = {
            d.entity_id
            for d in self._pending_query(scope).filter(
                MenuItemDeletion.entity_id.in_([c.entity_id for c in removed])
            ).all()
        }
        expires_at = utcnow() + timedelta(days=self.retention_days)
        records = [
            MenuItemDeletion(
                account_id=scope.account_id,
                branch_id=scope.branch_id,
                entity_type=change.entity_type.value,
                entity_id=change.entity_id,
                entity_name=change.entity_name,
                deletion_reason=DELETION_REASON,
                entity_snapshot=json.loads(change.old_value) if change.old_value else None,
                sync_status=DeletionSyncStatus.PENDING.value,
                expires_at=expires_at,
            )
            for change in removed
            if change.entity_id not in already_pending
        ]
        self.db.add_all(records)
        self.db.commit()
        log.info(f"Recorded {len(records)} soft deletions for {scope} ({len(already_pending)} already pending)")
        return records

    def get_pending_deletions(self, scope: Optional[ScopeKey] = None, limit: int = 500) -> List[MenuItemDeletion]:
        return self._pending_query(scope).order_by(MenuItemDeletion.processed_at.asc()).limit(limit).all()

    async def sync_deletions(self, scope: ScopeKey, vendor_code: str) -> DeletionSyncResult:
        """Send pending deletions for the scope in one delete request."""
        pending = self.get_pending_deletions(scope)
        result = DeletionSyncResult(attempted=len(pending))
        if not pending:
            return result
        if self.delivery_platform is None:
            raise ValueError("No delivery platform configured for deletion sync")

        entity_ids = [d.entity_id for d in pending]
        error = None
        try:
            response = await self.retry_policy.execute(
                lambda: self.delivery_platform.delete_items(entity_ids, vendor_code),
                operation_name=f"delete {len(entity_ids)} items for {vendor_code}"
            )
            if not response.success:
                error = response.error or "Delivery platform rejected the deletion"
        except Exception as e:
            log.error(f"Deletion sync for {scope} failed: {e}", exc_info=True)
            error = str(e)

        now = utcnow()
        for deletion in pending:
            deletion.vendor_code = vendor_code
            if error is None:
                deletion.sync_status = DeletionSyncStatus.COMPLETED.value
                deletion.synced_at = now
                deletion.sync_error = None
            else:
                deletion.sync_status = DeletionSyncStatus.FAILED.value
                deletion.sync_error = error
                deletion.retry_count += 1
        self.db.commit()

        if error is None:
            result.synced = len(pending)
            log.info(f"Propagated {result.synced} deletions for {scope} to {vendor_code}")
        else:
            result.failed = len(pending)
            result.error_message = error
        return result

    def cleanup_expired_deletions(self) -> int:
        deleted = self.db.query(MenuItemDeletion).filter(
            MenuItemDeletion.expires_at < utcnow()
        ).delete(synchronize_session=False)
        self.db.commit()
        log.info(f"Deletion cleanup: removed {deleted} expired deletion records")
        return deleted
