"""Snapshot store: change detection, versioned snapshots and change logs."""

import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from menu_sync.connectors.base import Catalog, ScopeKey
from menu_sync.constants.sync_enums import DetectionType
from menu_sync.models.menu_change_log import MenuChangeLog
from menu_sync.models.menu_snapshot import MenuSnapshot
from menu_sync.services.change_differ import ChangeRecord
from menu_sync.services.menu_hasher import compute_menu_hash
from menu_sync.utils.clock import utcnow
from menu_sync.utils.compression import compress_json, decompress_json
from menu_sync.utils.scope import scope_filters

log = logging.getLogger(__name__)


class ChangeDetectionResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    has_changed: bool
    is_first_sync: bool
    current_hash: str
    previous_hash: Optional[str] = None
    previous_version: Optional[int] = None
    change_type: DetectionType
    latest_snapshot: Optional[MenuSnapshot] = None


class MenuVersioningService:
    """Persists immutable, monotonically versioned snapshots per scope."""

    def __init__(self, db: Session):
        self.db = db

    def get_latest_snapshot(self, scope: ScopeKey) -> Optional[MenuSnapshot]:
        return (
            self.db.query(MenuSnapshot)
            .filter(*scope_filters(MenuSnapshot, scope))
            .order_by(MenuSnapshot.version.desc())
            .first()
        )

    def get_snapshot(self, snapshot_id: int) -> Optional[MenuSnapshot]:
        return self.db.query(MenuSnapshot).filter(MenuSnapshot.id == snapshot_id).first()

    def list_snapshots(self, scope: ScopeKey, limit: int = 20) -> List[MenuSnapshot]:
        return (
            self.db.query(MenuSnapshot)
            .filter(*scope_filters(MenuSnapshot, scope))
            .order_by(MenuSnapshot.version.desc())
            .limit(limit)
            .all()
        )

    def detect_changes(self, scope: ScopeKey, catalog: Catalog) -> ChangeDetectionResult:
        current_hash = compute_menu_hash(catalog)
        latest = self.get_latest_snapshot(scope)

        if latest is None:
            log.info(f"No previous snapshot for {scope}, treating as first sync")
            return ChangeDetectionResult(
                has_changed=True,
                is_first_sync=True,
                current_hash=current_hash,
                change_type=DetectionType.FIRST_SYNC,
            )

        has_changed = latest.snapshot_hash != current_hash
        log.debug(
            f"Change detection for {scope}: previous v{latest.version} {latest.snapshot_hash[:12]}, "
            f"current {current_hash[:12]}, changed={has_changed}"
        )
        return ChangeDetectionResult(
            has_changed=has_changed,
            is_first_sync=False,
            current_hash=current_hash,
            previous_hash=latest.snapshot_hash,
            previous_version=latest.version,
            change_type=DetectionType.CHANGED if has_changed else DetectionType.NO_CHANGE,
            latest_snapshot=latest,
        )

    def create_snapshot(self, scope: ScopeKey, catalog: Catalog, snapshot_hash: Optional[str] = None,
                        previous_version: Optional[int] = None, compress: bool = True,
                        commit: bool = True) -> MenuSnapshot:
        """
        Insert the next version for the scope. Earlier versions are never touched.

        With `commit=False` the row is only flushed and the caller owns the transaction.
        """
        if previous_version is None:
            latest = self.get_latest_snapshot(scope)
            previous_version = latest.version if latest else 0

        snapshot = MenuSnapshot.create(
            scope,
            version=previous_version + 1,
            snapshot_hash=snapshot_hash or compute_menu_hash(catalog),
            products_count=len(catalog.products),
            categories_count=len({p.category_id for p in catalog.products if p.category_id}),
            modifiers_count=sum(len(p.modifiers) for p in catalog.products),
            compressed_data=compress_json(catalog.model_dump()) if compress else None,
        )
        self.db.add(snapshot)
        if commit:
            self.db.commit()
            self.db.refresh(snapshot)
        else:
            self.db.flush()

        log.info(f"Created snapshot v{snapshot.version} for {scope} ({snapshot.products_count} products)")
        return snapshot

    def get_snapshot_catalog(self, snapshot: Optional[MenuSnapshot]) -> Optional[Catalog]:
        if snapshot is None or not snapshot.compressed_data:
            return None
        return Catalog.model_validate(decompress_json(snapshot.compressed_data))

    def record_changes(self, snapshot: MenuSnapshot, changes: List[ChangeRecord],
                       commit: bool = True) -> List[MenuChangeLog]:
        previous_version = snapshot.version - 1 if snapshot.version > 1 else None
        logs = [
            MenuChangeLog(
                snapshot_id=snapshot.id,
                previous_version=previous_version,
                current_version=snapshot.version,
                change_type=change.change_type.value,
                entity_type=change.entity_type.value,
                entity_id=change.entity_id,
                entity_name=change.entity_name,
                changed_fields=",".join(change.changed_fields) or None,
                old_value=change.old_value,
                new_value=change.new_value,
            )
            for change in changes
        ]
        self.db.add_all(logs)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        log.info(f"Recorded {len(logs)} change logs for snapshot v{snapshot.version}")
        return logs

    def get_change_logs(self, snapshot_id: int) -> List[MenuChangeLog]:
        return (
            self.db.query(MenuChangeLog)
            .filter(MenuChangeLog.snapshot_id == snapshot_id)
            .order_by(MenuChangeLog.id.asc())
            .all()
        )

    def mark_snapshot_as_synced(self, snapshot_id: int, import_id: Optional[str], vendor_code: str) -> MenuSnapshot:
        """Record downstream sync status. Content columns stay as created."""
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot is None:
            raise ValueError(f"Snapshot {snapshot_id} not found")
        snapshot.is_synced = True
        snapshot.import_id = import_id
        snapshot.vendor_code = vendor_code
        snapshot.synced_at = utcnow()
        self.db.commit()
        return snapshot
