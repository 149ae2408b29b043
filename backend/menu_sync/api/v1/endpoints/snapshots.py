from typing import List, Annotated, Optional
from datetime import timedelta
import logging
from fastapi import APIRouter, Depends, HTTPException, status, Request, Query
from sqlalchemy.orm import Session

from menu_sync.api.deps import get_sync_services
from menu_sync.auth import get_current_active_user
from menu_sync.connectors.base import ScopeKey
from menu_sync.database import get_db
from menu_sync.exceptions import DeltaNotFoundError
from menu_sync.schemas.auth import User
from menu_sync.schemas.snapshot import (
    MenuSnapshotResponse,
    MenuChangeLogResponse,
    MenuDeltaResponse,
    DeltaResubmitRequest,
)
from menu_sync.services.delta_sync import DeltaStatistics, DeltaSubmissionResult
from menu_sync.services.sync_orchestrator import SyncServices
from menu_sync.utils.audit_logger import create_audit_log
from menu_sync.utils.clock import utcnow

log = logging.getLogger(__name__)
router = APIRouter()

@router.get("/", response_model=List[MenuSnapshotResponse])
async def list_snapshots(
    account_id: str,
    branch_id: Optional[str] = None,
    menu_group_id: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Snapshot history of a scope, newest version first."""
    scope = ScopeKey(account_id=account_id, branch_id=branch_id, menu_group_id=menu_group_id)
    return services.versioning.list_snapshots(scope, limit=limit)

@router.get("/deltas", response_model=List[MenuDeltaResponse])
async def list_deltas(
    account_id: str,
    branch_id: Optional[str] = None,
    menu_group_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    scope = ScopeKey(account_id=account_id, branch_id=branch_id, menu_group_id=menu_group_id)
    return services.delta.list_deltas(scope, limit=limit)

@router.get("/deltas/pending", response_model=List[MenuDeltaResponse])
async def list_pending_deltas(
    account_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    menu_group_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Deltas that were never delivered, oldest first."""
    scope = ScopeKey(account_id=account_id, branch_id=branch_id, menu_group_id=menu_group_id) if account_id else None
    return services.delta.get_pending_deltas(scope, limit=limit)

@router.get("/deltas/statistics", response_model=DeltaStatistics)
async def read_delta_statistics(
    account_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    days: int = Query(30, ge=1, le=365),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    scope = ScopeKey(account_id=account_id, branch_id=branch_id) if account_id else None
    return services.delta.get_delta_statistics(scope, since=utcnow() - timedelta(days=days))

@router.get("/deltas/{delta_id}", response_model=MenuDeltaResponse)
async def read_delta(
    delta_id: int,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    delta = services.delta.get_delta(delta_id)
    if delta is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Delta not found")
    return delta

@router.post("/deltas/{delta_id}/resubmit", response_model=DeltaSubmissionResult)
async def resubmit_delta(
    delta_id: int,
    http_request: Request,
    resubmit: Optional[DeltaResubmitRequest] = None,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Resubmit a failed delta once its backoff window has passed."""
    vendor_code = resubmit.vendor_code if resubmit else None
    create_audit_log(
        db=db,
        request=http_request,
        action="delta_resubmitted",
        entity_type="delta",
        entity_id=delta_id,
        user=current_user.username if current_user else None,
        details={"vendor_code": vendor_code}
    )

    try:
        return await services.delta.retry_delta_sync(delta_id, vendor_code)
    except DeltaNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as ve:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(ve))

@router.get("/{snapshot_id}", response_model=MenuSnapshotResponse)
async def read_snapshot(
    snapshot_id: int,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    snapshot = services.versioning.get_snapshot(snapshot_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Snapshot not found")
    return snapshot

@router.get("/{snapshot_id}/changes", response_model=List[MenuChangeLogResponse])
async def read_snapshot_changes(
    snapshot_id: int,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Per-entity change log recorded when this snapshot was created."""
    if services.versioning.get_snapshot(snapshot_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Snapshot not found")
    return services.versioning.get_change_logs(snapshot_id)
