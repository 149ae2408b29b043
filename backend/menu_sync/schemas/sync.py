from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from menu_sync.connectors.base import ScopeKey
from menu_sync.constants.sync_enums import SyncType

class SyncRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    branch_id: Optional[str] = None     # None syncs all branches
    menu_group_id: Optional[str] = None
    vendor_code: str = Field(..., min_length=1)
    force_full_sync: bool = False
    sync_type: SyncType = SyncType.MANUAL
    trigger_source: Optional[str] = None
    initiated_by: Optional[str] = None

    def scope(self) -> ScopeKey:
        return ScopeKey(account_id=self.account_id, branch_id=self.branch_id, menu_group_id=self.menu_group_id)

class SyncExecutionResult(BaseModel):
    run_id: int
    correlation_id: str
    status: str   # 'Completed', 'Failed'
    result: str   # 'Success', 'Failed', 'NoChanges'
    delta_id: Optional[int] = None
    snapshot_version: Optional[int] = None
    products_processed: int = 0
    import_id: Optional[str] = None
    warnings: List[str] = []
    error_message: Optional[str] = None

class SyncRetryRequest(BaseModel):
    vendor_code: Optional[str] = None   # defaults to the failed run's vendor

class SyncRunEntry(BaseModel):
    timestamp: str
    message: str
    phase: Optional[str] = None

class SyncRunResponse(BaseModel):
    id: int
    account_id: str
    branch_id: Optional[str] = None
    menu_group_id: Optional[str] = None
    correlation_id: str
    sync_type: str
    trigger_source: Optional[str] = None
    initiated_by: Optional[str] = None
    status: str
    result: Optional[str] = None
    current_phase: str
    progress_percentage: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    total_products_processed: int = 0
    products_succeeded: int = 0
    products_failed: int = 0
    products_added: int = 0
    products_updated: int = 0
    products_deleted: int = 0
    vendor_code: Optional[str] = None
    import_id: Optional[str] = None
    submission_status: Optional[str] = None
    errors: Optional[List[SyncRunEntry]] = None
    warnings: Optional[List[SyncRunEntry]] = None
    metrics: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    parent_sync_run_id: Optional[int] = None
    retry_count: int = 0
    can_retry: bool = True

    class Config:
        from_attributes = True

class PaginatedSyncRuns(BaseModel):
    data: List[SyncRunResponse]
    total: int

class SyncStatusReport(BaseModel):
    account_id: str
    branch_id: Optional[str] = None
    is_running: bool = False
    active_run_ids: List[int] = []
    latest_run_id: Optional[int] = None
    last_status: Optional[str] = None
    last_result: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_duration_seconds: Optional[float] = None
    last_products_processed: int = 0
    last_success_rate: float = 0.0
    pending_deletions: int = 0
