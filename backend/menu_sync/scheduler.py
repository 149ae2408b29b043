"""APScheduler integration for scheduled menu syncs, DLQ maintenance and retention."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from menu_sync.config import settings
from menu_sync.connectors import create_catalog_source, create_delivery_platform
from menu_sync.constants.sync_enums import SyncType
from menu_sync.database import SessionLocal
from menu_sync.exceptions import OperationInProgressError
from menu_sync.schemas.sync import SyncRequest
from menu_sync.services.batch_optimizer import BatchProcessor, ParallelRunResult
from menu_sync.services.dlq_maintenance import DlqMaintenanceCycle, MaintenanceReport
from menu_sync.services.retention import run_retention_cleanup
from menu_sync.services.sync_orchestrator import build_sync_services

log = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()

# Lives as long as the scheduler so the cleanup interval is honoured between ticks
dlq_maintenance = DlqMaintenanceCycle.from_settings(settings)

SYNC_JOB_ID = "scheduled_menu_sync"
DLQ_JOB_ID = "dlq_maintenance"
RETENTION_JOB_ID = "retention_cleanup"


async def sync_scope(scope) -> None:
    """Run one scheduled sync with its own session and connectors."""
    account_id, branch_id, vendor_code = scope
    request = SyncRequest(
        account_id=account_id,
        branch_id=branch_id,
        vendor_code=vendor_code,
        sync_type=SyncType.SCHEDULED,
        trigger_source="scheduler",
        initiated_by="scheduler",
    )

    db = SessionLocal()
    catalog_source = create_catalog_source()
    delivery_platform = create_delivery_platform()
    try:
        services = build_sync_services(db, catalog_source=catalog_source, delivery_platform=delivery_platform)
        result = await services.orchestrator.execute_sync(request)
        log.info(
            f"Scheduled sync of {request.scope()} finished: {result.status}/{result.result}, "
            f"{result.products_processed} products processed"
        )
    except OperationInProgressError as e:
        log.warning(f"Scheduled sync of {request.scope()} skipped: {e}")
    finally:
        await catalog_source.close()
        await delivery_platform.close()
        db.close()


async def scheduled_sync_job() -> ParallelRunResult:
    """Sync every configured scope, at most `sync_max_concurrency` at a time."""
    scopes = settings.sync_scopes_list
    if not scopes:
        log.info("Scheduled sync skipped: no sync scopes configured")
        return ParallelRunResult()

    log.info(f"Starting scheduled sync for {len(scopes)} scopes")
    processor = BatchProcessor(max_concurrency=settings.sync_max_concurrency)
    result = await processor.run_parallel(scopes, sync_scope)
    if result.failed:
        log.warning(f"Scheduled sync: {result.failed}/{result.total} scopes failed")
    return result


async def dlq_maintenance_job() -> MaintenanceReport:
    db = SessionLocal()
    catalog_source = create_catalog_source()
    delivery_platform = create_delivery_platform()
    try:
        services = build_sync_services(db, catalog_source=catalog_source, delivery_platform=delivery_platform)
        report = await dlq_maintenance.run(services.dlq)
        log.debug(f"DLQ maintenance finished: {report.model_dump()}")
        return report
    finally:
        await catalog_source.close()
        await delivery_platform.close()
        db.close()


async def retention_job() -> dict:
    db = SessionLocal()
    try:
        services = build_sync_services(db)
        return run_retention_cleanup(db, services.delta, settings)
    finally:
        db.close()


def schedule_jobs():
    """Register every periodic job, replacing existing ones."""
    try:
        scheduler.add_job(
            scheduled_sync_job,
            trigger=CronTrigger.from_crontab(settings.sync_schedule_cron),
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        log.info(f"Scheduled sync job registered: cron='{settings.sync_schedule_cron}'")
    except ValueError as e:
        log.error(f"Failed to schedule sync job with cron '{settings.sync_schedule_cron}': {e}")
        raise

    scheduler.add_job(
        dlq_maintenance_job,
        trigger=IntervalTrigger(minutes=settings.dlq_processing_interval_minutes),
        id=DLQ_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    scheduler.add_job(
        retention_job,
        trigger=CronTrigger(hour=3, minute=30),
        id=RETENTION_JOB_ID,
        replace_existing=True,
        max_instances=1
    )


def start_scheduler():
    """Start the APScheduler with the configured jobs."""
    schedule_jobs()
    if not scheduler.running:
        scheduler.start()
        log.info("APScheduler started successfully")


def shutdown_scheduler():
    """Shutdown the APScheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        log.info("APScheduler shut down successfully")
