"""Delta model: minimal payload between two snapshot versions, tracked through submission."""

from sqlalchemy import Column, Integer, String, DateTime, Text, LargeBinary, ForeignKey, Index
from sqlalchemy.sql import func
from menu_sync.database import Base
from menu_sync.utils.clock import utcnow


class MenuDelta(Base):
    """Generated delta and its downstream submission lifecycle."""

    __tablename__ = "menu_deltas"

    id = Column(Integer, primary_key=True, index=True)

    account_id = Column(String(100), nullable=False)
    branch_id = Column(String(100), nullable=True)
    menu_group_id = Column(String(100), nullable=True)
    correlation_id = Column(String(100), nullable=True)

    source_snapshot_id = Column(Integer, ForeignKey("menu_snapshots.id"), nullable=True)
    target_snapshot_id = Column(Integer, ForeignKey("menu_snapshots.id"), nullable=False)
    source_version = Column(Integer, nullable=True)
    target_version = Column(Integer, nullable=False)

    delta_type = Column(String(20), nullable=False)  # FirstSync, Incremental, FullResync
    generation_status = Column(String(20), nullable=False, default='Generated')
    submission_status = Column(String(20), nullable=False, default='Pending')

    added_count = Column(Integer, default=0, nullable=False)
    updated_count = Column(Integer, default=0, nullable=False)
    removed_count = Column(Integer, default=0, nullable=False)
    total_changes = Column(Integer, default=0, nullable=False)

    compressed_payload = Column(LargeBinary, nullable=True)

    # Submission details
    vendor_code = Column(String(100), nullable=True)
    import_id = Column(String(200), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_menu_deltas_scope_status', 'account_id', 'submission_status'),
    )

    def __repr__(self):
        return f"<MenuDelta(id={self.id}, type='{self.delta_type}', status='{self.submission_status}', changes={self.total_changes})>"
