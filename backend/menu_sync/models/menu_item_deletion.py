"""Soft-deletion record for catalog items removed at the source."""

from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from sqlalchemy.sql import func
from menu_sync.database import Base, JSONType


class MenuItemDeletion(Base):
    """Deletion awaiting (or done) propagation to the delivery platform."""

    __tablename__ = "menu_item_deletions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(100), nullable=False)
    branch_id = Column(String(100), nullable=True)

    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_name = Column(String(500), nullable=True)
    deletion_reason = Column(String(100), nullable=False, default='RemovedFromSource')
    entity_snapshot = Column(JSONType, nullable=True)

    sync_status = Column(String(20), nullable=False, default='Pending')  # Pending, Completed, Failed
    vendor_code = Column(String(100), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    sync_error = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_menu_item_deletions_scope_status', 'account_id', 'sync_status'),
    )

    def __repr__(self):
        return f"<MenuItemDeletion(id={self.id}, {self.entity_type}:{self.entity_id}, status='{self.sync_status}')>"
