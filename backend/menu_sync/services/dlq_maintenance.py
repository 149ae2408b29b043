"""Periodic DLQ upkeep: automatic retry of transient failures and retention cleanup."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel

from menu_sync.services.dlq_service import AutoRetryResult, CleanupResult, DlqService
from menu_sync.utils.clock import utcnow

log = logging.getLogger(__name__)


class MaintenanceReport(BaseModel):
    auto_retry: Optional[AutoRetryResult] = None
    cleanup: Optional[CleanupResult] = None
    errors: List[str] = []


class DlqMaintenanceCycle:
    """
    One instance lives for the lifetime of the scheduler.

    Auto-retry runs on every tick; cleanup runs at most once per
    `cleanup_interval`, tracked in memory.
    """

    def __init__(self, auto_retry_enabled: bool = True, max_retry_age: timedelta = timedelta(hours=24),
                 cleanup_interval: timedelta = timedelta(hours=6), retention_days: int = 30):
        self.auto_retry_enabled = auto_retry_enabled
        self.max_retry_age = max_retry_age
        self.cleanup_interval = cleanup_interval
        self.retention_days = retention_days
        self.last_cleanup_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings) -> "DlqMaintenanceCycle":
        return cls(
            auto_retry_enabled=settings.dlq_auto_retry_enabled,
            max_retry_age=timedelta(hours=settings.dlq_max_retry_age_hours),
            cleanup_interval=timedelta(hours=settings.dlq_cleanup_interval_hours),
            retention_days=settings.dlq_retention_days,
        )

    def cleanup_due(self, now: datetime) -> bool:
        return self.last_cleanup_at is None or now - self.last_cleanup_at >= self.cleanup_interval

    async def run(self, dlq_service: DlqService, now: Optional[datetime] = None) -> MaintenanceReport:
        now = now or utcnow()
        report = MaintenanceReport()

        if self.auto_retry_enabled:
            try:
                report.auto_retry = await dlq_service.auto_retry_transient_failures(self.max_retry_age)
            except Exception as e:
                log.error(f"DLQ auto-retry failed: {e}", exc_info=True)
                dlq_service.db.rollback()
                report.errors.append(f"auto_retry: {e}")

        if self.cleanup_due(now):
            try:
                report.cleanup = dlq_service.cleanup_old_messages(self.retention_days)
                self.last_cleanup_at = now
            except Exception as e:
                log.error(f"DLQ cleanup failed: {e}", exc_info=True)
                dlq_service.db.rollback()
                report.errors.append(f"cleanup: {e}")

        return report
