"""Dead letter queue message model."""

import json
import traceback
from datetime import timedelta

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Index
from sqlalchemy.sql import func
from menu_sync.database import Base
from menu_sync.utils.clock import utcnow


class DlqMessage(Base):
    """One failed delta, generation or validation attempt awaiting replay."""

    __tablename__ = "dlq_messages"

    id = Column(Integer, primary_key=True, index=True)

    event_type = Column(String(50), nullable=False)  # DeltaSync, DeltaGeneration, DeltaValidation
    correlation_id = Column(String(100), nullable=False)
    scope_id = Column(String(100), nullable=True)
    original_message = Column(Text, nullable=False)

    # Failure details
    error_code = Column(String(200), nullable=False)
    error_message = Column(Text, nullable=True)
    stack_trace = Column(Text, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)
    failure_type = Column(String(20), nullable=False, default='Permanent')  # Transient, Permanent
    priority = Column(String(20), nullable=False, default='Normal')  # Critical, High, Normal, Low
    first_attempt_at = Column(DateTime(timezone=True), nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=False)

    # Replay state
    is_replayed = Column(Boolean, default=False, nullable=False)
    replayed_at = Column(DateTime(timezone=True), nullable=True)
    replayed_by = Column(String(100), nullable=True)
    replay_result = Column(String(20), nullable=True)  # Success, Failed
    replay_error_message = Column(Text, nullable=True)

    # Acknowledgement
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String(100), nullable=True)

    notes = Column(Text, nullable=True)  # JSON context for the replay handler

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_dlq_messages_pending', 'is_replayed', 'is_acknowledged', 'priority'),
        Index('idx_dlq_messages_event_type', 'event_type'),
        Index('idx_dlq_messages_created_at', 'created_at'),
    )

    @classmethod
    def for_failure(cls, event_type, correlation_id: str, scope_id, payload, error: Exception,
                    failure_type, priority, context=None, retention_days: int = 30, attempts: int = 1) -> "DlqMessage":
        """Build a message from a caught exception."""
        now = utcnow()
        return cls(
            event_type=event_type.value,
            correlation_id=correlation_id,
            scope_id=scope_id,
            original_message=payload if isinstance(payload, str) else json.dumps(payload, default=str),
            error_code=type(error).__name__,
            error_message=str(error),
            stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            attempts=attempts,
            failure_type=failure_type.value,
            priority=priority.value,
            first_attempt_at=now,
            last_attempt_at=now,
            notes=json.dumps(context, default=str) if context else None,
            created_at=now,
            expires_at=now + timedelta(days=retention_days),
        )

    @property
    def context(self) -> dict:
        return json.loads(self.notes) if self.notes else {}

    @property
    def is_pending(self) -> bool:
        return not self.is_replayed and not self.is_acknowledged

    def __repr__(self):
        return f"<DlqMessage(id={self.id}, event='{self.event_type}', priority='{self.priority}', failure='{self.failure_type}')>"
