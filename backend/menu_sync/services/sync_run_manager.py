"""Sync run lifecycle: creation, phase progress, statistics and finalization."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.orm import Session

from menu_sync.connectors.base import ScopeKey
from menu_sync.constants.sync_enums import PHASE_PROGRESS, SyncPhase, SyncResult, SyncRunStatus, SyncType
from menu_sync.models.sync_run import MenuSyncRun
from menu_sync.utils.clock import ensure_utc, generate_correlation_id, utcnow
from menu_sync.utils.compression import compress_json
from menu_sync.utils.scope import scope_filters

log = logging.getLogger(__name__)


class SyncTrace:
    """Ordered event log of one run, stored compressed on the run when it finishes."""

    def __init__(self, correlation_id: str, scope: ScopeKey):
        self.correlation_id = correlation_id
        self.scope = scope
        self.started_at = utcnow()
        self.events: List[Dict[str, Any]] = []

    def add_event(self, phase: SyncPhase, message: str, **data):
        event = {"timestamp": utcnow().isoformat(), "phase": phase.value, "message": message}
        if data:
            event["data"] = data
        self.events.append(event)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "scope": self.scope.model_dump(),
            "started_at": self.started_at.isoformat(),
            "events": self.events,
        }

    def compress(self) -> bytes:
        return compress_json(self.to_dict())


class SyncRunStatistics(BaseModel):
    total_runs: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    no_changes: int = 0
    total_products_processed: int = 0
    average_duration_seconds: Optional[float] = None
    success_rate: float = 0.0


class SyncRunManager:
    def __init__(self, db: Session):
        self.db = db

    def start_sync_run(self, scope: ScopeKey, sync_type: SyncType = SyncType.MANUAL,
                       trigger_source: Optional[str] = None, initiated_by: Optional[str] = None,
                       configuration: Optional[Dict[str, Any]] = None, parent_sync_run_id: Optional[int] = None,
                       retry_count: int = 0) -> Tuple[MenuSyncRun, SyncTrace]:
        correlation_id = generate_correlation_id()
        run = MenuSyncRun(
            account_id=scope.account_id,
            branch_id=scope.branch_id,
            menu_group_id=scope.menu_group_id,
            correlation_id=correlation_id,
            sync_type=sync_type.value,
            trigger_source=trigger_source,
            initiated_by=initiated_by,
            started_at=utcnow(),
            status=SyncRunStatus.RUNNING.value,
            current_phase=SyncPhase.INITIALIZATION.value,
            progress_percentage=0,
            errors=[],
            warnings=[],
            configuration=configuration or {},
            parent_sync_run_id=parent_sync_run_id,
            retry_count=retry_count,
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)

        trace = SyncTrace(correlation_id, scope)
        trace.add_event(SyncPhase.INITIALIZATION, "Sync run started", sync_type=sync_type.value, run_id=run.id)
        log.info(f"Sync run {run.id} ({correlation_id}) started for {scope}: type={sync_type.value}")
        return run, trace

    def update_progress(self, run: MenuSyncRun, trace: SyncTrace, phase: SyncPhase, message: Optional[str] = None):
        run.current_phase = phase.value
        run.progress_percentage = PHASE_PROGRESS.get(phase, run.progress_percentage)
        trace.add_event(phase, message or f"Entering {phase.value}")
        self.db.commit()
        log.debug(f"Sync run {run.id}: {phase.value} ({run.progress_percentage}%)")

    def _append(self, run: MenuSyncRun, column: str, message: str, phase: Optional[SyncPhase]):
        entries = list(getattr(run, column) or [])
        entries.append({
            "timestamp": utcnow().isoformat(),
            "message": message,
            "phase": (phase.value if phase else run.current_phase),
        })
        # JSON columns only persist on reassignment
        setattr(run, column, entries)
        self.db.commit()

    def add_error(self, run: MenuSyncRun, trace: SyncTrace, message: str, phase: Optional[SyncPhase] = None):
        self._append(run, "errors", message, phase)
        trace.add_event(phase or SyncPhase(run.current_phase), f"Error: {message}")
        log.error(f"Sync run {run.id}: {message}")

    def add_warning(self, run: MenuSyncRun, trace: SyncTrace, message: str, phase: Optional[SyncPhase] = None):
        self._append(run, "warnings", message, phase)
        trace.add_event(phase or SyncPhase(run.current_phase), f"Warning: {message}")
        log.warning(f"Sync run {run.id}: {message}")

    def update_statistics(self, run: MenuSyncRun, processed: Optional[int] = None, succeeded: Optional[int] = None,
                          failed: Optional[int] = None, added: Optional[int] = None, updated: Optional[int] = None,
                          deleted: Optional[int] = None):
        if processed is not None:
            run.total_products_processed = processed
        if succeeded is not None:
            run.products_succeeded = succeeded
        if failed is not None:
            run.products_failed = failed
        if added is not None:
            run.products_added = added
        if updated is not None:
            run.products_updated = updated
        if deleted is not None:
            run.products_deleted = deleted
        self.db.commit()

    def set_submission_info(self, run: MenuSyncRun, vendor_code: Optional[str], import_id: Optional[str],
                            submission_status: Optional[str]):
        run.vendor_code = vendor_code
        run.import_id = import_id
        run.submission_status = submission_status
        self.db.commit()

    def _finalize(self, run: MenuSyncRun, trace: SyncTrace, status: SyncRunStatus, result: SyncResult,
                  phase: SyncPhase, metrics: Optional[Dict[str, Any]]) -> bool:
        if run.status != SyncRunStatus.RUNNING.value:
            log.warning(f"Sync run {run.id} already finalized as {run.status}, ignoring {status.value}")
            return False
        now = utcnow()
        run.status = status.value
        run.result = result.value
        run.current_phase = phase.value
        run.completed_at = now
        run.duration_seconds = (now - ensure_utc(run.started_at)).total_seconds()
        if metrics is not None:
            run.metrics = metrics
        trace.add_event(phase, f"Sync run finished: {result.value}", duration_seconds=run.duration_seconds)
        run.compressed_trace = trace.compress()
        return True

    def complete_sync_run(self, run: MenuSyncRun, trace: SyncTrace, result: SyncResult = SyncResult.SUCCESS,
                          metrics: Optional[Dict[str, Any]] = None) -> MenuSyncRun:
        if self._finalize(run, trace, SyncRunStatus.COMPLETED, result, SyncPhase.COMPLETED, metrics):
            run.progress_percentage = PHASE_PROGRESS[SyncPhase.COMPLETED]
            self.db.commit()
            log.info(f"Sync run {run.id} completed: {result.value} in {run.duration_seconds:.2f}s")
        return run

    def fail_sync_run(self, run: MenuSyncRun, trace: SyncTrace, error_message: str, can_retry: bool = True,
                      metrics: Optional[Dict[str, Any]] = None) -> MenuSyncRun:
        failed_phase = run.current_phase
        if self._finalize(run, trace, SyncRunStatus.FAILED, SyncResult.FAILED, SyncPhase.FAILED, metrics):
            run.error_message = error_message
            run.can_retry = can_retry
            errors = list(run.errors or [])
            errors.append({"timestamp": utcnow().isoformat(), "message": error_message, "phase": failed_phase})
            run.errors = errors
            self.db.commit()
            log.error(f"Sync run {run.id} failed during {failed_phase}: {error_message}")
        return run

    # ----- queries -----

    def get_run(self, run_id: int) -> Optional[MenuSyncRun]:
        return self.db.query(MenuSyncRun).filter(MenuSyncRun.id == run_id).first()

    def list_runs(self, scope: Optional[ScopeKey] = None, status: Optional[SyncRunStatus] = None,
                  skip: int = 0, limit: int = 50) -> Tuple[int, List[MenuSyncRun]]:
        query = self.db.query(MenuSyncRun)
        if scope is not None:
            query = query.filter(*scope_filters(MenuSyncRun, scope, include_menu_group=False))
        if status is not None:
            query = query.filter(MenuSyncRun.status == status.value)
        total = query.count()
        runs = query.order_by(MenuSyncRun.started_at.desc(), MenuSyncRun.id.desc()).offset(skip).limit(limit).all()
        return total, runs

    def get_latest_run(self, scope: ScopeKey) -> Optional[MenuSyncRun]:
        return (
            self.db.query(MenuSyncRun)
            .filter(*scope_filters(MenuSyncRun, scope, include_menu_group=False))
            .order_by(MenuSyncRun.started_at.desc(), MenuSyncRun.id.desc())
            .first()
        )

    def get_active_runs(self, scope: Optional[ScopeKey] = None) -> List[MenuSyncRun]:
        query = self.db.query(MenuSyncRun).filter(MenuSyncRun.status == SyncRunStatus.RUNNING.value)
        if scope is not None:
            query = query.filter(*scope_filters(MenuSyncRun, scope, include_menu_group=False))
        return query.order_by(MenuSyncRun.started_at.asc()).all()

    def get_statistics(self, scope: Optional[ScopeKey] = None, since: Optional[datetime] = None) -> SyncRunStatistics:
        query = self.db.query(MenuSyncRun)
        if scope is not None:
            query = query.filter(*scope_filters(MenuSyncRun, scope, include_menu_group=False))
        if since is not None:
            query = query.filter(MenuSyncRun.started_at >= since)
        runs = query.all()

        stats = SyncRunStatistics(total_runs=len(runs))
        durations = []
        for run in runs:
            if run.status == SyncRunStatus.RUNNING.value:
                stats.running += 1
                continue
            if run.status == SyncRunStatus.FAILED.value:
                stats.failed += 1
            else:
                stats.completed += 1
                if run.result == SyncResult.NO_CHANGES.value:
                    stats.no_changes += 1
            stats.total_products_processed += run.total_products_processed or 0
            if run.duration_seconds is not None:
                durations.append(run.duration_seconds)

        if durations:
            stats.average_duration_seconds = sum(durations) / len(durations)
        finished = stats.completed + stats.failed
        if finished:
            stats.success_rate = stats.completed / finished * 100
        return stats
