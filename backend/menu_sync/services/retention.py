"""Retention cleanup for idempotency records, deltas, deletion records and audit logs."""

from datetime import timedelta
from sqlalchemy.orm import Session
from sqlalchemy import and_
import logging

from menu_sync.models.audit_log import AuditLog
from menu_sync.services.delta_sync import MenuDeltaService
from menu_sync.services.idempotency import IdempotencyGuard
from menu_sync.services.soft_delete import SoftDeleteService
from menu_sync.utils.clock import utcnow

log = logging.getLogger(__name__)


def cleanup_old_audit_logs(db: Session, days_to_keep: int = 90) -> int:
    """
    Delete operator audit entries older than specified days.
    Sync trigger entries (action starts with 'sync_') are never deleted.

    Args:
        db: Database session
        days_to_keep: Number of days to retain audit entries (default: 90)

    Returns:
        Number of audit log entries deleted
    """
    cutoff_date = utcnow() - timedelta(days=days_to_keep)

    deleted = db.query(AuditLog).filter(
        and_(
            AuditLog.created_at < cutoff_date,
            ~AuditLog.action.like('sync%')
        )
    ).delete(synchronize_session=False)

    db.commit()

    log.info(f"Audit cleanup: Deleted {deleted} audit entries older than {days_to_keep} days (cutoff: {cutoff_date.isoformat()})")

    return deleted


def run_retention_cleanup(db: Session, delta_service: MenuDeltaService, settings) -> dict:
    """
    Apply every retention policy once. A failing step is logged and the
    remaining steps still run.

    Returns:
        Dictionary of deleted row counts per policy (None when the step failed)
    """
    steps = {
        "idempotency_records": lambda: IdempotencyGuard(db).cleanup_expired_records(),
        "deltas": lambda: delta_service.cleanup_old_deltas(settings.delta_retention_days),
        "deletions": lambda: SoftDeleteService(db).cleanup_expired_deletions(),
        "audit_logs": lambda: cleanup_old_audit_logs(db, settings.audit_retention_days),
    }

    summary = {}
    for name, step in steps.items():
        try:
            summary[name] = step()
        except Exception as e:
            db.rollback()
            log.error(f"Retention cleanup step '{name}' failed: {e}", exc_info=True)
            summary[name] = None

    log.info(f"Retention cleanup finished: {summary}")
    return summary
