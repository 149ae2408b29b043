"""Sync orchestrator: runs one scope through every phase under the idempotency guard."""

import asyncio
import logging
import traceback
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from menu_sync.config import settings
from menu_sync.connectors.base import Catalog, CatalogSource, DeliveryPlatform, ScopeKey
from menu_sync.constants.sync_enums import IdempotencyOutcome, SyncPhase, SyncResult, SyncRunStatus, SyncType
from menu_sync.exceptions import OperationInProgressError, SyncCancelledError, SyncRunNotFoundError
from menu_sync.models.sync_run import MenuSyncRun
from menu_sync.schemas.sync import SyncExecutionResult, SyncRequest, SyncStatusReport
from menu_sync.services.batch_optimizer import BatchProcessor
from menu_sync.services.delta_sync import MenuDeltaService
from menu_sync.services.dlq_service import DlqService
from menu_sync.services.idempotency import IdempotencyGuard, generate_menu_snapshot_key, generate_menu_sync_key
from menu_sync.services.menu_validator import validate_catalog
from menu_sync.services.menu_versioning import MenuVersioningService
from menu_sync.services.replay_handlers import ReplayContext
from menu_sync.services.retry_policy import CircuitBreaker, RetryPolicy, RetryPolicyOptions
from menu_sync.services.soft_delete import SoftDeleteService
from menu_sync.services.sync_run_manager import SyncRunManager, SyncTrace

log = logging.getLogger(__name__)

# Shared by every orchestrator in the process so failures from all scopes trip the same circuit
delivery_circuit_breaker = CircuitBreaker(
    failure_threshold=settings.circuit_failure_threshold,
    open_seconds=settings.circuit_open_seconds,
    sampling_seconds=settings.circuit_sampling_seconds,
)


class _RunContext:
    """Per-run state threaded through the phases."""

    def __init__(self, request: SyncRequest, run: MenuSyncRun, trace: SyncTrace, scope_id: str):
        self.request = request
        self.scope = request.scope()
        self.run = run
        self.trace = trace
        self.scope_id = scope_id
        self.content_key: Optional[str] = None
        self.warnings = []


class MenuSyncOrchestrator:
    """
    Runs the phases of one sync in strict order:

    Initialization -> ChangeDetection -> DeltaGeneration -> DataValidation ->
    SoftDeleteProcessing -> DownstreamSubmission -> Finalization.

    An hourly lock key keeps two runs of the same scope from overlapping; the
    lock is released however the run ends. A content key derived from the
    (base hash, new hash) pair keeps the same change from being delivered twice.
    """

    def __init__(self, db: Session, guard: IdempotencyGuard, versioning: MenuVersioningService,
                 delta_service: MenuDeltaService, soft_delete: SoftDeleteService, run_manager: SyncRunManager,
                 catalog_source: Optional[CatalogSource] = None,
                 lock_stale_after: timedelta = timedelta(minutes=30), retention_days: int = 30):
        self.db = db
        self.guard = guard
        self.versioning = versioning
        self.delta_service = delta_service
        self.soft_delete = soft_delete
        self.run_manager = run_manager
        self.catalog_source = catalog_source
        self.lock_stale_after = lock_stale_after
        self.retention_days = retention_days

    # ----- public operations -----

    async def execute_sync(self, request: SyncRequest, catalog: Optional[Catalog] = None,
                           cancel_event: Optional[asyncio.Event] = None) -> SyncExecutionResult:
        """
        Run one sync for the request's scope.

        Raises OperationInProgressError when another run of the same scope
        holds the lock (no run record is created), SyncCancelledError when
        `cancel_event` is set between phases, and re-raises any unexpected
        error after marking the run Failed.
        """
        return await self._execute(request, catalog, cancel_event)

    async def retry_failed_sync(self, run_id: int, initiated_by: str, vendor_code: Optional[str] = None,
                                catalog: Optional[Catalog] = None,
                                cancel_event: Optional[asyncio.Event] = None) -> SyncExecutionResult:
        """Start a new forced full sync for the scope of a failed run."""
        parent = self.run_manager.get_run(run_id)
        if parent is None:
            raise SyncRunNotFoundError(f"Sync run {run_id} not found")
        if parent.status != SyncRunStatus.FAILED.value:
            raise ValueError(f"Sync run {run_id} is {parent.status}, only failed runs can be retried")
        if not parent.can_retry:
            raise ValueError(f"Sync run {run_id} is marked as not retryable")

        vendor_code = vendor_code or parent.vendor_code or (parent.configuration or {}).get("vendor_code")
        if not vendor_code:
            raise ValueError(f"Sync run {run_id} has no vendor code to retry with")

        retry_count = parent.retry_count + 1
        parent.retry_count = retry_count
        self.db.commit()

        request = SyncRequest(
            account_id=parent.account_id,
            branch_id=parent.branch_id,
            menu_group_id=parent.menu_group_id,
            vendor_code=vendor_code,
            force_full_sync=True,
            sync_type=SyncType.RETRY,
            trigger_source=f"retry:{parent.id}",
            initiated_by=initiated_by,
        )
        log.info(f"Retrying failed sync run {run_id} (retry #{retry_count}) for {request.scope()}")
        return await self._execute(request, catalog, cancel_event, parent_sync_run_id=parent.id,
                                   retry_count=retry_count)

    def get_sync_status(self, scope: ScopeKey) -> SyncStatusReport:
        active = self.run_manager.get_active_runs(scope)
        latest = self.run_manager.get_latest_run(scope)
        report = SyncStatusReport(
            account_id=scope.account_id,
            branch_id=scope.branch_id,
            is_running=bool(active),
            active_run_ids=[r.id for r in active],
            pending_deletions=len(self.soft_delete.get_pending_deletions(scope)),
        )
        if latest is not None:
            report.latest_run_id = latest.id
            report.last_status = latest.status
            report.last_result = latest.result
            report.last_sync_at = latest.completed_at or latest.started_at
            report.last_duration_seconds = latest.duration_seconds
            report.last_products_processed = latest.total_products_processed
            report.last_success_rate = latest.success_rate
        return report

    # ----- run skeleton -----

    async def _execute(self, request: SyncRequest, catalog: Optional[Catalog],
                       cancel_event: Optional[asyncio.Event], parent_sync_run_id: Optional[int] = None,
                       retry_count: int = 0) -> SyncExecutionResult:
        scope = request.scope()
        scope_id = str(scope)
        lock_key = generate_menu_sync_key(scope.account_id, scope.branch_id)

        decision = await self.guard.check_and_mark_started(
            scope_id, lock_key, self.retention_days, stale_after=self.lock_stale_after
        )
        if not decision.can_proceed:
            log.info(f"Sync for {scope} skipped, another run holds lock {lock_key[:24]}...")
            raise OperationInProgressError(scope_id, lock_key)

        succeeded = False
        try:
            run, trace = self.run_manager.start_sync_run(
                scope,
                sync_type=request.sync_type,
                trigger_source=request.trigger_source,
                initiated_by=request.initiated_by,
                configuration={"vendor_code": request.vendor_code, "force_full_sync": request.force_full_sync},
                parent_sync_run_id=parent_sync_run_id,
                retry_count=retry_count,
            )
            ctx = _RunContext(request, run, trace, scope_id)
            try:
                result = await self._run_phases(ctx, catalog, cancel_event)
                succeeded = result.status == SyncRunStatus.COMPLETED.value
                return result
            except SyncCancelledError:
                self._fail(ctx, "Sync cancelled", can_retry=True)
                raise
            except asyncio.CancelledError:
                self._fail(ctx, "Sync task cancelled", can_retry=True)
                raise
            except OperationInProgressError as e:
                self._fail(ctx, str(e), can_retry=True, mark_content=False)
                raise
            except Exception as e:
                self.db.rollback()
                ctx.trace.add_event(SyncPhase(ctx.run.current_phase), "Unhandled exception",
                                    error=str(e), traceback=traceback.format_exc())
                self._fail(ctx, f"Unexpected error during sync: {e}", can_retry=True)
                log.error(f"Sync run {ctx.run.id} for {scope} crashed: {e}", exc_info=True)
                raise
        finally:
            if succeeded:
                self.guard.mark_succeeded(scope_id, lock_key)
            else:
                self.guard.mark_failed(scope_id, lock_key)

    def _checkpoint(self, ctx: _RunContext, cancel_event: Optional[asyncio.Event], phase: SyncPhase,
                    message: Optional[str] = None):
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError(f"Sync run {ctx.run.id} cancelled before {phase.value}")
        self.run_manager.update_progress(ctx.run, ctx.trace, phase, message)

    def _fail(self, ctx: _RunContext, message: str, can_retry: bool = True, mark_content: bool = True,
              **fields) -> SyncExecutionResult:
        if mark_content and ctx.content_key:
            self.guard.mark_failed(ctx.scope_id, ctx.content_key)
        self.run_manager.fail_sync_run(ctx.run, ctx.trace, message, can_retry=can_retry)
        return self._result(ctx, error_message=message, **fields)

    def _result(self, ctx: _RunContext, **fields) -> SyncExecutionResult:
        return SyncExecutionResult(
            run_id=ctx.run.id,
            correlation_id=ctx.run.correlation_id,
            status=ctx.run.status,
            result=ctx.run.result or SyncResult.FAILED.value,
            products_processed=ctx.run.total_products_processed,
            import_id=ctx.run.import_id,
            warnings=ctx.warnings,
            **fields,
        )

    def _warn(self, ctx: _RunContext, message: str, phase: SyncPhase):
        ctx.warnings.append(message)
        self.run_manager.add_warning(ctx.run, ctx.trace, message, phase)

    # ----- phases -----

    async def _run_phases(self, ctx: _RunContext, catalog: Optional[Catalog],
                          cancel_event: Optional[asyncio.Event]) -> SyncExecutionResult:
        request, scope, run, trace = ctx.request, ctx.scope, ctx.run, ctx.trace

        # Change detection
        self._checkpoint(ctx, cancel_event, SyncPhase.CHANGE_DETECTION)
        if catalog is None:
            if self.catalog_source is None:
                raise ValueError("No catalog supplied and no catalog source configured")
            catalog = await self.catalog_source.fetch_current_catalog(scope)
        detection = self.versioning.detect_changes(scope, catalog)
        trace.add_event(SyncPhase.CHANGE_DETECTION, f"Detection result: {detection.change_type.value}",
                        current_hash=detection.current_hash, previous_version=detection.previous_version)

        if not detection.has_changed and not request.force_full_sync:
            self.run_manager.complete_sync_run(run, trace, SyncResult.NO_CHANGES)
            return self._result(ctx, snapshot_version=detection.previous_version)

        if not request.force_full_sync:
            ctx.content_key = generate_menu_snapshot_key(
                scope.account_id, scope.branch_id,
                {"hash": detection.current_hash, "base": detection.previous_hash,
                 "menu_group_id": scope.menu_group_id, "vendor_code": request.vendor_code}
            )
            content = await self.guard.check_and_mark_started(
                ctx.scope_id, ctx.content_key, self.retention_days, stale_after=self.lock_stale_after
            )
            if content.outcome == IdempotencyOutcome.ALREADY_SUCCEEDED:
                trace.add_event(SyncPhase.CHANGE_DETECTION, "Identical change already delivered")
                ctx.content_key = None
                self.run_manager.complete_sync_run(run, trace, SyncResult.NO_CHANGES)
                return self._result(ctx, snapshot_version=detection.previous_version)
            if content.outcome == IdempotencyOutcome.ALREADY_FAILED_PERMANENT:
                ctx.content_key = None
                return self._fail(ctx, "This menu change previously failed permanently, use a forced retry",
                                  can_retry=True)
            content.raise_if_in_progress()

        # Delta generation
        self._checkpoint(ctx, cancel_event, SyncPhase.DELTA_GENERATION)
        generation = self.delta_service.generate_delta(
            scope, catalog, force_full_sync=request.force_full_sync,
            correlation_id=run.correlation_id, vendor_code=request.vendor_code
        )
        if not generation.success:
            # Nothing was persisted, the same change must be attempted again
            if ctx.content_key:
                self.guard.release(ctx.scope_id, ctx.content_key)
            return self._fail(ctx, f"Delta generation failed: {generation.error_message}", mark_content=False)
        if generation.delta is None:
            if ctx.content_key:
                self.guard.mark_succeeded(ctx.scope_id, ctx.content_key)
            self.run_manager.complete_sync_run(run, trace, SyncResult.NO_CHANGES)
            return self._result(ctx)

        delta = generation.delta
        self.run_manager.update_statistics(
            run, processed=delta.total_changes, added=delta.added_count,
            updated=delta.updated_count, deleted=delta.removed_count
        )
        trace.add_event(SyncPhase.DELTA_GENERATION, f"Delta {delta.id} generated",
                        delta_type=delta.delta_type, total_changes=delta.total_changes)

        # Data validation
        self._checkpoint(ctx, cancel_event, SyncPhase.DATA_VALIDATION)
        catalog_check = validate_catalog(catalog)
        delta_check = self.delta_service.validate_delta(delta.id)
        for warning in catalog_check.warnings + delta_check.warnings:
            self._warn(ctx, warning, SyncPhase.DATA_VALIDATION)
        errors = catalog_check.errors + delta_check.errors
        if errors:
            for error in errors:
                self.run_manager.add_error(run, trace, error, SyncPhase.DATA_VALIDATION)
            return self._fail(ctx, f"Validation failed with {len(errors)} error(s)", can_retry=False,
                              delta_id=delta.id, snapshot_version=delta.target_version)

        # Soft deletes
        self._checkpoint(ctx, cancel_event, SyncPhase.SOFT_DELETE_PROCESSING)
        recorded = self.soft_delete.record_deletions(scope, generation.changes)
        if self.soft_delete.delivery_platform is not None and self.soft_delete.get_pending_deletions(scope):
            try:
                deletions = await self.soft_delete.sync_deletions(scope, request.vendor_code)
                if deletions.error_message:
                    self._warn(ctx, f"Deletion propagation failed: {deletions.error_message}",
                               SyncPhase.SOFT_DELETE_PROCESSING)
            except Exception as e:
                log.error(f"Deletion propagation for {scope} failed: {e}", exc_info=True)
                self._warn(ctx, f"Deletion propagation failed: {e}", SyncPhase.SOFT_DELETE_PROCESSING)
        trace.add_event(SyncPhase.SOFT_DELETE_PROCESSING, f"{len(recorded)} deletions recorded")

        # Submission
        self._checkpoint(ctx, cancel_event, SyncPhase.DOWNSTREAM_SUBMISSION)
        submission = await self.delta_service.submit_delta(delta.id, request.vendor_code)
        self.db.refresh(delta)
        self.run_manager.set_submission_info(run, request.vendor_code, submission.import_id, delta.submission_status)
        if not submission.success:
            self.run_manager.update_statistics(run, succeeded=0, failed=delta.total_changes)
            return self._fail(ctx, f"Delta submission failed: {submission.error_message}",
                              delta_id=delta.id, snapshot_version=delta.target_version)
        self.run_manager.update_statistics(run, succeeded=delta.total_changes, failed=0)

        # Finalization
        self._checkpoint(ctx, cancel_event, SyncPhase.FINALIZATION)
        if ctx.content_key:
            self.guard.mark_succeeded(ctx.scope_id, ctx.content_key,
                                      {"delta_id": delta.id, "import_id": submission.import_id})
        metrics = {
            "delta_id": delta.id,
            "delta_type": delta.delta_type,
            "snapshot_version": delta.target_version,
            "total_changes": delta.total_changes,
            "submission_batches": submission.batches,
            "deletions_recorded": len(recorded),
            "warnings": len(ctx.warnings),
        }
        self.run_manager.complete_sync_run(run, trace, SyncResult.SUCCESS, metrics=metrics)
        return self._result(ctx, delta_id=delta.id, snapshot_version=delta.target_version)


class SyncServices(BaseModel):
    """Services sharing one database session, wired together."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    guard: IdempotencyGuard
    versioning: MenuVersioningService
    dlq: DlqService
    delta: MenuDeltaService
    soft_delete: SoftDeleteService
    run_manager: SyncRunManager
    orchestrator: MenuSyncOrchestrator


def build_sync_services(db: Session, catalog_source: Optional[CatalogSource] = None,
                        delivery_platform: Optional[DeliveryPlatform] = None,
                        retry_policy: Optional[RetryPolicy] = None) -> SyncServices:
    retry_policy = retry_policy or RetryPolicy(RetryPolicyOptions.from_settings(settings), delivery_circuit_breaker)
    batch_processor = BatchProcessor(settings.batch_size, settings.batch_max_concurrency)

    guard = IdempotencyGuard(db)
    versioning = MenuVersioningService(db)
    dlq = DlqService(db, retention_days=settings.dlq_retention_days)
    delta = MenuDeltaService(
        db, versioning, dlq,
        delivery_platform=delivery_platform,
        retry_policy=retry_policy,
        batch_processor=batch_processor,
        adaptive_threshold=settings.adaptive_batch_threshold,
    )
    dlq.replay_context = ReplayContext(delta_service=delta, catalog_source=catalog_source)
    soft_delete = SoftDeleteService(db, delivery_platform, retry_policy, retention_days=settings.delta_retention_days)
    run_manager = SyncRunManager(db)
    orchestrator = MenuSyncOrchestrator(
        db, guard, versioning, delta, soft_delete, run_manager,
        catalog_source=catalog_source,
        lock_stale_after=timedelta(minutes=settings.lock_stale_after_minutes),
        retention_days=settings.idempotency_retention_days,
    )
    return SyncServices(
        guard=guard, versioning=versioning, dlq=dlq, delta=delta,
        soft_delete=soft_delete, run_manager=run_manager, orchestrator=orchestrator,
    )
