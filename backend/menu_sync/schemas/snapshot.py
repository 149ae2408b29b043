from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel

class MenuSnapshotResponse(BaseModel):
    id: int
    account_id: str
    branch_id: Optional[str] = None
    menu_group_id: Optional[str] = None
    version: int
    snapshot_hash: str
    products_count: int
    categories_count: int
    modifiers_count: int
    is_synced: bool
    import_id: Optional[str] = None
    vendor_code: Optional[str] = None
    synced_at: Optional[datetime] = None
    snapshot_date: datetime

    class Config:
        from_attributes = True

class MenuChangeLogResponse(BaseModel):
    id: int
    snapshot_id: int
    previous_version: Optional[int] = None
    current_version: int
    change_type: str
    entity_type: str
    entity_id: str
    entity_name: Optional[str] = None
    changed_fields: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None

    class Config:
        from_attributes = True

class MenuDeltaResponse(BaseModel):
    id: int
    account_id: str
    branch_id: Optional[str] = None
    correlation_id: Optional[str] = None
    source_version: Optional[int] = None
    target_version: int
    delta_type: str
    generation_status: str
    submission_status: str
    added_count: int
    updated_count: int
    removed_count: int
    total_changes: int
    vendor_code: Optional[str] = None
    import_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int
    created_at: datetime

    class Config:
        from_attributes = True

class DeltaResubmitRequest(BaseModel):
    vendor_code: Optional[str] = None
