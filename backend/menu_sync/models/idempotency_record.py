"""Idempotency record model: lock-and-result cache entry per (scope, key)."""

from datetime import timedelta

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from menu_sync.database import Base
from menu_sync.constants.sync_enums import IdempotencyStatus
from menu_sync.utils.clock import utcnow


class IdempotencyRecord(Base):
    """Tracks the state of one logical operation."""

    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True, index=True)
    scope_id = Column(String(100), nullable=False)
    idempotency_key = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False)  # Started, Succeeded, FailedPermanent
    result_hash = Column(String(64), nullable=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_processed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('scope_id', 'idempotency_key', name='uq_idempotency_scope_key'),
    )

    @classmethod
    def started(cls, scope_id: str, key: str, retention_days: int = 30) -> "IdempotencyRecord":
        return cls.with_status(scope_id, key, IdempotencyStatus.STARTED, retention_days)

    @classmethod
    def with_status(cls, scope_id: str, key: str, status: IdempotencyStatus,
                    retention_days: int = 30, result_hash=None) -> "IdempotencyRecord":
        now = utcnow()
        return cls(
            scope_id=scope_id,
            idempotency_key=key,
            status=status.value,
            result_hash=result_hash,
            first_seen_at=now,
            last_processed_at=now,
            expires_at=now + timedelta(days=retention_days),
        )

    def restart(self, retention_days: int):
        """Take over a stale Started record in place."""
        now = utcnow()
        self.status = IdempotencyStatus.STARTED.value
        self.first_seen_at = now
        self.last_processed_at = now
        self.expires_at = now + timedelta(days=retention_days)

    def mark(self, status: IdempotencyStatus, result_hash=None):
        self.status = status.value
        if result_hash is not None:
            self.result_hash = result_hash
        self.last_processed_at = utcnow()

    def __repr__(self):
        return f"<IdempotencyRecord(scope='{self.scope_id}', key='{self.idempotency_key}', status='{self.status}')>"
