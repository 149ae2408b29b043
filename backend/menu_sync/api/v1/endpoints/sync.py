from typing import Annotated, Optional
from datetime import timedelta
import logging
from fastapi import APIRouter, Depends, HTTPException, status, Request, Query
from sqlalchemy.orm import Session

from menu_sync.api.deps import get_sync_services
from menu_sync.auth import get_current_active_user
from menu_sync.connectors.base import ScopeKey
from menu_sync.constants.sync_enums import SyncRunStatus
from menu_sync.database import get_db
from menu_sync.exceptions import OperationInProgressError, SyncRunNotFoundError
from menu_sync.schemas.auth import User
from menu_sync.schemas.sync import (
    SyncRequest,
    SyncExecutionResult,
    SyncRetryRequest,
    SyncRunResponse,
    PaginatedSyncRuns,
    SyncStatusReport,
)
from menu_sync.services.sync_orchestrator import SyncServices
from menu_sync.services.sync_run_manager import SyncRunStatistics
from menu_sync.utils.audit_logger import create_audit_log
from menu_sync.utils.clock import utcnow

log = logging.getLogger(__name__)
router = APIRouter()

@router.post("/run", response_model=SyncExecutionResult)
async def run_sync(
    http_request: Request,
    request: SyncRequest,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Trigger a manual menu sync for one scope."""
    request.initiated_by = current_user.username if current_user else request.initiated_by
    request.trigger_source = request.trigger_source or "api"

    create_audit_log(
        db=db,
        request=http_request,
        action="sync_triggered",
        user=request.initiated_by,
        details={
            "scope": str(request.scope()),
            "vendor_code": request.vendor_code,
            "force_full_sync": request.force_full_sync,
        }
    )

    log.info(f"Sync request received for {request.scope()} -> {request.vendor_code} (force={request.force_full_sync})")
    try:
        return await services.orchestrator.execute_sync(request)
    except OperationInProgressError as e:
        log.warning(f"Sync request rejected: {e}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as ve:
        log.error(f"Sync request invalid: {ve}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(ve))

@router.get("/runs", response_model=PaginatedSyncRuns)
async def list_sync_runs(
    account_id: Optional[str] = Query(None, description="Filter by account"),
    branch_id: Optional[str] = Query(None, description="Filter by branch (requires account_id)"),
    run_status: Optional[SyncRunStatus] = Query(None, alias="status", description="Filter by run status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """List sync runs, newest first."""
    scope = ScopeKey(account_id=account_id, branch_id=branch_id) if account_id else None
    total, runs = services.run_manager.list_runs(scope, run_status, skip=skip, limit=limit)
    return PaginatedSyncRuns(data=runs, total=total)

@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def read_sync_run(
    run_id: int,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    run = services.run_manager.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync run not found")
    return run

@router.post("/runs/{run_id}/retry", response_model=SyncExecutionResult)
async def retry_sync_run(
    run_id: int,
    http_request: Request,
    retry: Optional[SyncRetryRequest] = None,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Start a forced full sync for the scope of a failed run."""
    username = current_user.username if current_user else None
    vendor_code = retry.vendor_code if retry else None

    create_audit_log(
        db=db,
        request=http_request,
        action="sync_retry_triggered",
        entity_type="sync_run",
        entity_id=run_id,
        user=username,
        details={"vendor_code": vendor_code}
    )

    try:
        return await services.orchestrator.retry_failed_sync(run_id, initiated_by=username, vendor_code=vendor_code)
    except SyncRunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except OperationInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as ve:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(ve))

@router.get("/status", response_model=SyncStatusReport)
async def read_sync_status(
    account_id: str,
    branch_id: Optional[str] = None,
    menu_group_id: Optional[str] = None,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Whether a scope is syncing right now, and how its last run went."""
    scope = ScopeKey(account_id=account_id, branch_id=branch_id, menu_group_id=menu_group_id)
    return services.orchestrator.get_sync_status(scope)

@router.get("/statistics", response_model=SyncRunStatistics)
async def read_sync_statistics(
    account_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    days: int = Query(7, ge=1, le=365, description="Look-back window in days"),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    scope = ScopeKey(account_id=account_id, branch_id=branch_id) if account_id else None
    return services.run_manager.get_statistics(scope, since=utcnow() - timedelta(days=days))
