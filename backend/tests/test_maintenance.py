from datetime import timedelta
from types import SimpleNamespace

import pytest

from menu_sync.models.audit_log import AuditLog
from menu_sync.services.dlq_maintenance import DlqMaintenanceCycle
from menu_sync.services.retention import cleanup_old_audit_logs, run_retention_cleanup
from menu_sync.utils.clock import utcnow


@pytest.mark.asyncio
class TestDlqMaintenanceCycle:
    async def test_first_tick_cleans_up(self, services):
        cycle = DlqMaintenanceCycle()
        now = utcnow()

        report = await cycle.run(services.dlq, now=now)

        assert report.auto_retry.processed == 0
        assert report.cleanup.deleted_count == 0
        assert report.errors == []
        assert cycle.last_cleanup_at == now

    async def test_cleanup_waits_for_interval(self, services):
        cycle = DlqMaintenanceCycle(cleanup_interval=timedelta(hours=6))
        now = utcnow()
        await cycle.run(services.dlq, now=now)

        report = await cycle.run(services.dlq, now=now + timedelta(hours=1))
        assert report.cleanup is None

        report = await cycle.run(services.dlq, now=now + timedelta(hours=6))
        assert report.cleanup is not None

    async def test_auto_retry_disabled(self, services):
        cycle = DlqMaintenanceCycle(auto_retry_enabled=False)
        report = await cycle.run(services.dlq)
        assert report.auto_retry is None

    def test_from_settings(self):
        settings = SimpleNamespace(dlq_auto_retry_enabled=False, dlq_max_retry_age_hours=12,
                                   dlq_cleanup_interval_hours=2, dlq_retention_days=7)
        cycle = DlqMaintenanceCycle.from_settings(settings)
        assert cycle.auto_retry_enabled is False
        assert cycle.max_retry_age == timedelta(hours=12)
        assert cycle.cleanup_interval == timedelta(hours=2)
        assert cycle.retention_days == 7


def add_audit_entry(db, action, age_days):
    db.add(AuditLog(action=action, user="admin", created_at=utcnow() - timedelta(days=age_days)))
    db.commit()


class TestRetention:
    def test_old_operator_entries_removed(self, db):
        add_audit_entry(db, "dlq_replayed", 120)
        add_audit_entry(db, "dlq_acknowledged", 10)
        add_audit_entry(db, "sync_triggered", 120)

        assert cleanup_old_audit_logs(db, days_to_keep=90) == 1
        assert sorted(entry.action for entry in db.query(AuditLog).all()) == ["dlq_acknowledged", "sync_triggered"]

    def test_run_retention_cleanup(self, db, services):
        add_audit_entry(db, "dlq_cleanup", 200)
        settings = SimpleNamespace(delta_retention_days=90, audit_retention_days=90)

        summary = run_retention_cleanup(db, services.delta, settings)

        assert summary == {"idempotency_records": 0, "deltas": 0, "deletions": 0, "audit_logs": 1}
