from typing import List, Annotated, Optional
from datetime import datetime
import logging
from fastapi import APIRouter, Depends, HTTPException, status, Request, Query
from sqlalchemy.orm import Session

from menu_sync.api.deps import get_sync_services
from menu_sync.auth import get_current_active_user
from menu_sync.constants.dlq import DlqEventType, DlqPriority
from menu_sync.database import get_db
from menu_sync.schemas.auth import User
from menu_sync.schemas.dlq import (
    DlqMessageResponse,
    DlqMessageDetail,
    BulkReplayRequest,
    AcknowledgeRequest,
    PriorityUpdateRequest,
    CleanupRequest,
    ReplayWorkflowOptions,
)
from menu_sync.services.dlq_service import BulkReplayResult, CleanupResult, DlqStatistics, ReplayResult
from menu_sync.services.replay_workflow import ReplayRecommendations, ReplayWorkflowResult, ReplayWorkflowService
from menu_sync.services.sync_orchestrator import SyncServices
from menu_sync.utils.audit_logger import create_audit_log

log = logging.getLogger(__name__)
router = APIRouter()

def _username(current_user: Optional[User]) -> str:
    return current_user.username if current_user else "unknown"

@router.get("/pending", response_model=List[DlqMessageResponse])
async def list_pending_messages(
    event_type: Optional[DlqEventType] = Query(None, description="Filter by event type"),
    priority: Optional[DlqPriority] = Query(None, description="Filter by priority"),
    scope_id: Optional[str] = Query(None, description="Filter by account id"),
    limit: int = Query(100, ge=1, le=1000),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Messages awaiting replay or acknowledgement, Critical first, then oldest first."""
    return services.dlq.get_pending_messages(event_type, priority, limit=limit, scope_id=scope_id)

@router.get("/statistics", response_model=DlqStatistics)
async def read_dlq_statistics(
    start_date: Optional[datetime] = Query(None, description="Filter created_at >= start_date"),
    end_date: Optional[datetime] = Query(None, description="Filter created_at <= end_date"),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    return services.dlq.get_statistics(start_date, end_date)

@router.get("/recommendations", response_model=ReplayRecommendations)
async def read_replay_recommendations(
    scope_id: Optional[str] = None,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Suggested batch size, strategy and risk for replaying the current backlog."""
    return ReplayWorkflowService(services.dlq).get_replay_recommendations(scope_id)

@router.post("/workflow", response_model=ReplayWorkflowResult)
async def run_replay_workflow(
    http_request: Request,
    options: ReplayWorkflowOptions,
    scope_id: Optional[str] = None,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Replay the pending backlog in batches according to the given options."""
    actor = _username(current_user)
    create_audit_log(
        db=db,
        request=http_request,
        action="dlq_workflow_started",
        user=actor,
        details={"scope_id": scope_id, **options.model_dump(mode="json")}
    )
    return await ReplayWorkflowService(services.dlq).execute_replay_workflow(actor, options, scope_id=scope_id)

@router.post("/replay", response_model=BulkReplayResult)
async def replay_messages(
    http_request: Request,
    replay: BulkReplayRequest,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    actor = _username(current_user)
    create_audit_log(
        db=db,
        request=http_request,
        action="dlq_bulk_replayed",
        entity_type="dlq_message",
        user=actor,
        details={"message_ids": replay.message_ids}
    )
    return await services.dlq.replay_messages(replay.message_ids, actor)

@router.post("/cleanup", response_model=CleanupResult)
async def cleanup_messages(
    http_request: Request,
    cleanup: CleanupRequest,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Delete resolved messages older than the retention window."""
    result = services.dlq.cleanup_old_messages(cleanup.retention_days)
    create_audit_log(
        db=db,
        request=http_request,
        action="dlq_cleanup",
        user=_username(current_user),
        details={"retention_days": cleanup.retention_days, "deleted_count": result.deleted_count}
    )
    return result

@router.get("/{message_id}", response_model=DlqMessageDetail)
async def read_message(
    message_id: int,
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    message = services.dlq.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ message not found")
    return message

@router.post("/{message_id}/replay", response_model=ReplayResult)
async def replay_message(
    message_id: int,
    http_request: Request,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Replay one message. A message is never replayed twice."""
    if services.dlq.get_message(message_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ message not found")

    actor = _username(current_user)
    create_audit_log(
        db=db,
        request=http_request,
        action="dlq_replayed",
        entity_type="dlq_message",
        entity_id=message_id,
        user=actor
    )
    return await services.dlq.replay_message(message_id, actor)

@router.post("/{message_id}/acknowledge", response_model=DlqMessageResponse)
async def acknowledge_message(
    message_id: int,
    http_request: Request,
    acknowledge: Optional[AcknowledgeRequest] = None,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    """Close a message without replaying it."""
    actor = _username(current_user)
    notes = acknowledge.notes if acknowledge else None
    message = services.dlq.acknowledge_message(message_id, actor, notes)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ message not found")

    create_audit_log(
        db=db,
        request=http_request,
        action="dlq_acknowledged",
        entity_type="dlq_message",
        entity_id=message_id,
        user=actor,
        details={"notes": notes}
    )
    return message

@router.put("/{message_id}/priority", response_model=DlqMessageResponse)
async def update_message_priority(
    message_id: int,
    http_request: Request,
    update: PriorityUpdateRequest,
    db: Session = Depends(get_db),
    services: SyncServices = Depends(get_sync_services),
    current_user: Annotated[User, Depends(get_current_active_user)] = None
):
    actor = _username(current_user)
    message = services.dlq.update_message_priority(message_id, update.priority, actor)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ message not found")

    create_audit_log(
        db=db,
        request=http_request,
        action="dlq_priority_changed",
        entity_type="dlq_message",
        entity_id=message_id,
        user=actor,
        details={"priority": update.priority.value}
    )
    return message
