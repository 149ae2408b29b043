"""Change log model: one typed change record per snapshot transition."""

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index
from sqlalchemy.sql import func
from menu_sync.database import Base


class MenuChangeLog(Base):
    """Entity-level change between two snapshot versions."""

    __tablename__ = "menu_change_logs"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_id = Column(Integer, ForeignKey("menu_snapshots.id", ondelete="CASCADE"), nullable=False)
    previous_version = Column(Integer, nullable=True)
    current_version = Column(Integer, nullable=False)

    change_type = Column(String(20), nullable=False)  # Added, Modified, SoftDeleted, Restored
    entity_type = Column(String(30), nullable=False)  # Product, Category, Modifier, ModifierOption
    entity_id = Column(String(100), nullable=False)
    entity_name = Column(String(500), nullable=True)
    changed_fields = Column(String(500), nullable=True)  # comma separated

    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_menu_change_logs_snapshot', 'snapshot_id'),
        Index('idx_menu_change_logs_entity', 'entity_type', 'entity_id'),
    )

    @property
    def changed_fields_list(self):
        return [f for f in (self.changed_fields or "").split(",") if f]

    def __repr__(self):
        return f"<MenuChangeLog(id={self.id}, {self.change_type} {self.entity_type}:{self.entity_id})>"
