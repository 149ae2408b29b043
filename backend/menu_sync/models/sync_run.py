"""Sync run model for tracking menu synchronization executions."""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Float, LargeBinary, ForeignKey, Index
from sqlalchemy.sql import func
from menu_sync.database import Base, JSONType


class MenuSyncRun(Base):
    """One orchestration attempt, mutated through each phase and finalized once."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)

    # Scope
    account_id = Column(String(100), nullable=False)
    branch_id = Column(String(100), nullable=True)
    menu_group_id = Column(String(100), nullable=True)
    correlation_id = Column(String(100), nullable=False, unique=True)

    # Execution details
    sync_type = Column(String(20), nullable=False, default='Manual')  # Manual, Scheduled, Webhook, Retry
    trigger_source = Column(String(100), nullable=True)
    initiated_by = Column(String(100), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    status = Column(String(20), nullable=False)  # Running, Completed, Failed
    result = Column(String(20), nullable=True)  # Success, Failed, NoChanges
    current_phase = Column(String(50), nullable=False, default='Initialization')
    progress_percentage = Column(Integer, default=0, nullable=False)

    # Statistics
    total_products_processed = Column(Integer, default=0, nullable=False)
    products_succeeded = Column(Integer, default=0, nullable=False)
    products_failed = Column(Integer, default=0, nullable=False)
    products_added = Column(Integer, default=0, nullable=False)
    products_updated = Column(Integer, default=0, nullable=False)
    products_deleted = Column(Integer, default=0, nullable=False)

    # Downstream submission
    vendor_code = Column(String(100), nullable=True)
    import_id = Column(String(200), nullable=True)
    submission_status = Column(String(20), nullable=True)

    # Diagnostics
    errors = Column(JSONType, nullable=True)
    warnings = Column(JSONType, nullable=True)
    metrics = Column(JSONType, nullable=True)
    configuration = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    compressed_trace = Column(LargeBinary, nullable=True)

    # Retry lineage
    parent_sync_run_id = Column(Integer, ForeignKey("sync_runs.id"), nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    can_retry = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_sync_runs_scope_started', 'account_id', 'branch_id', 'started_at'),
        Index('idx_sync_runs_status', 'status'),
    )

    @property
    def success_rate(self) -> float:
        if not self.total_products_processed:
            return 0.0
        return self.products_succeeded / self.total_products_processed * 100

    def __repr__(self):
        return f"<MenuSyncRun(id={self.id}, type='{self.sync_type}', status='{self.status}', phase='{self.current_phase}')>"
