"""Database models."""

from menu_sync.models.menu_snapshot import MenuSnapshot
from menu_sync.models.menu_change_log import MenuChangeLog
from menu_sync.models.menu_delta import MenuDelta
from menu_sync.models.dlq_message import DlqMessage
from menu_sync.models.idempotency_record import IdempotencyRecord
from menu_sync.models.sync_run import MenuSyncRun
from menu_sync.models.menu_item_deletion import MenuItemDeletion
from menu_sync.models.audit_log import AuditLog

__all__ = [
    "MenuSnapshot",
    "MenuChangeLog",
    "MenuDelta",
    "DlqMessage",
    "IdempotencyRecord",
    "MenuSyncRun",
    "MenuItemDeletion",
    "AuditLog",
]
