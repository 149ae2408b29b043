from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from menu_sync.constants.dlq import DlqPriority, DlqEventType, ReplayStrategy

class DlqMessageResponse(BaseModel):
    id: int
    event_type: str
    correlation_id: str
    scope_id: Optional[str] = None
    error_code: str
    error_message: Optional[str] = None
    attempts: int
    failure_type: str
    priority: str
    first_attempt_at: datetime
    last_attempt_at: datetime
    is_replayed: bool
    replayed_at: Optional[datetime] = None
    replayed_by: Optional[str] = None
    replay_result: Optional[str] = None
    replay_error_message: Optional[str] = None
    is_acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class DlqMessageDetail(DlqMessageResponse):
    original_message: str
    stack_trace: Optional[str] = None
    context: Dict[str, Any] = {}

class BulkReplayRequest(BaseModel):
    message_ids: List[int] = Field(..., min_length=1)

class AcknowledgeRequest(BaseModel):
    notes: Optional[str] = None

class PriorityUpdateRequest(BaseModel):
    priority: DlqPriority

class CleanupRequest(BaseModel):
    retention_days: int = Field(30, ge=1)

class ReplayWorkflowOptions(BaseModel):
    strategy: ReplayStrategy = ReplayStrategy.CRITICAL
    batch_size: int = Field(10, ge=1)
    batch_delay_seconds: float = Field(5.0, ge=0)
    max_messages: int = Field(100, ge=1)
    max_age_days: Optional[int] = Field(None, ge=1)
    excluded_event_types: List[DlqEventType] = []
    transient_only: bool = False
    stop_on_validation_warnings: bool = False
