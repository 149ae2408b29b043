"""Delta lifecycle: generation, validation, submission and retry of menu deltas."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from menu_sync.connectors.base import Catalog, DeliveryPlatform, ScopeKey, SubmissionResult
from menu_sync.constants.sync_enums import DeltaType, GenerationStatus, SubmissionStatus
from menu_sync.exceptions import DeltaNotFoundError, DeltaValidationError, SubmissionRejectedError
from menu_sync.models.menu_delta import MenuDelta
from menu_sync.models.menu_snapshot import MenuSnapshot
from menu_sync.services.batch_optimizer import BatchOutcome, BatchProcessor
from menu_sync.services.change_differ import ChangeRecord, diff_catalogs
from menu_sync.services.delta_builder import build_delta_payload, payload_counts, payload_items, sub_payload
from menu_sync.services.dlq_service import DlqService
from menu_sync.services.menu_versioning import ChangeDetectionResult, MenuVersioningService
from menu_sync.services.retry_policy import RetryPolicy
from menu_sync.utils.clock import ensure_utc, utcnow
from menu_sync.utils.compression import compress_json, decompress_json
from menu_sync.utils.scope import scope_filters

log = logging.getLogger(__name__)

MAX_RETRY_BACKOFF_MINUTES = 30


class DeltaGenerationResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    has_changes: bool = False
    delta: Optional[MenuDelta] = None
    snapshot: Optional[MenuSnapshot] = None
    detection: Optional[ChangeDetectionResult] = None
    changes: List[ChangeRecord] = []
    error_message: Optional[str] = None
    dlq_message_id: Optional[int] = None


class DeltaSubmissionResult(BaseModel):
    success: bool
    delta_id: int
    import_id: Optional[str] = None
    error_message: Optional[str] = None
    validation_errors: List[str] = []
    validation_warnings: List[str] = []
    batches: int = 1
    dlq_message_id: Optional[int] = None


class DeltaValidationResult(BaseModel):
    errors: List[str] = []
    warnings: List[str] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors


class DeltaStatistics(BaseModel):
    total_deltas: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0
    in_progress: int = 0
    total_changes: int = 0
    products_added: int = 0
    products_updated: int = 0
    products_removed: int = 0
    average_changes_per_delta: float = 0.0
    success_rate: float = 0.0


def retry_backoff(retry_count: int) -> timedelta:
    """2^retry_count minutes, capped at MAX_RETRY_BACKOFF_MINUTES."""
    return timedelta(minutes=min(2 ** retry_count, MAX_RETRY_BACKOFF_MINUTES))


class MenuDeltaService:
    """
    Owns the MenuDelta lifecycle.

    A delta is persisted in Pending state before anything leaves the
    process, so every submission attempt (and every DLQ message) refers to
    a durable row. Submission goes through the retry policy; payloads with
    more than `adaptive_threshold` items are split and sent through the
    adaptive batch processor.
    """

    def __init__(self, db: Session, versioning: MenuVersioningService, dlq_service: DlqService,
                 delivery_platform: Optional[DeliveryPlatform] = None, retry_policy: Optional[RetryPolicy] = None,
                 batch_processor: Optional[BatchProcessor] = None, adaptive_threshold: int = 200):
        self.db = db
        self.versioning = versioning
        self.dlq_service = dlq_service
        self.delivery_platform = delivery_platform
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_processor = batch_processor
        self.adaptive_threshold = adaptive_threshold

    # ----- generation -----

    def generate_delta(self, scope: ScopeKey, catalog: Catalog, force_full_sync: bool = False,
                       correlation_id: Optional[str] = None, dead_letter: bool = True,
                       vendor_code: Optional[str] = None) -> DeltaGenerationResult:
        """
        Detect changes, write the next snapshot and its change logs and persist the delta.

        Snapshot, change logs and delta are committed together; a failure leaves
        none of them behind.

        Args:
            scope: Scope the catalog belongs to
            catalog: Current catalog fetched from the source
            force_full_sync: Build a FullResync delta even when nothing changed
            correlation_id: Correlation id of the enclosing sync run
            dead_letter: Store a DeltaGeneration DLQ message on failure
            vendor_code: Vendor the delta is meant for, kept for replay

        Returns:
            DeltaGenerationResult; `delta` is None when there was nothing to send
        """
        try:
            detection = self.versioning.detect_changes(scope, catalog)
            if not detection.has_changed and not force_full_sync:
                log.info(f"No changes detected for {scope}, skipping delta generation")
                return DeltaGenerationResult(success=True, has_changes=False, detection=detection)

            previous_catalog = self.versioning.get_snapshot_catalog(detection.latest_snapshot)
            if detection.is_first_sync:
                delta_type = DeltaType.FIRST_SYNC
            elif force_full_sync or previous_catalog is None:
                delta_type = DeltaType.FULL_RESYNC
            else:
                delta_type = DeltaType.INCREMENTAL

            changes = diff_catalogs(previous_catalog, catalog)
            snapshot = self.versioning.create_snapshot(
                scope, catalog, snapshot_hash=detection.current_hash, previous_version=detection.previous_version,
                commit=False
            )
            self.versioning.record_changes(snapshot, changes, commit=False)

            delta = MenuDelta(
                account_id=scope.account_id,
                branch_id=scope.branch_id,
                menu_group_id=scope.menu_group_id,
                correlation_id=correlation_id,
                source_snapshot_id=detection.latest_snapshot.id if detection.latest_snapshot else None,
                target_snapshot_id=snapshot.id,
                source_version=detection.previous_version,
                target_version=snapshot.version,
                delta_type=delta_type.value,
                generation_status=GenerationStatus.GENERATED.value,
                submission_status=SubmissionStatus.PENDING.value,
            )
            self.db.add(delta)
            self.db.flush()

            payload = build_delta_payload(
                delta.id, scope, delta_type, detection.previous_version, snapshot.version, catalog, changes
            )
            delta.added_count, delta.updated_count, delta.removed_count = payload_counts(payload)
            delta.total_changes = delta.added_count + delta.updated_count + delta.removed_count
            delta.compressed_payload = compress_json(payload)
            self.db.commit()
            self.db.refresh(delta)

            log.info(
                f"Generated {delta_type.value} delta {delta.id} for {scope}: v{delta.source_version} -> "
                f"v{delta.target_version}, +{delta.added_count} ~{delta.updated_count} -{delta.removed_count}"
            )
            return DeltaGenerationResult(
                success=True, has_changes=True, delta=delta, snapshot=snapshot, detection=detection, changes=changes
            )

        except Exception as e:
            self.db.rollback()
            log.error(f"Delta generation failed for {scope}: {e}", exc_info=True)
            dlq_message_id = None
            if dead_letter:
                message = self.dlq_service.store_delta_generation_failure(
                    scope, e, correlation_id, force_full_sync=force_full_sync, vendor_code=vendor_code
                )
                dlq_message_id = message.id
            return DeltaGenerationResult(success=False, error_message=str(e), dlq_message_id=dlq_message_id)

    # ----- lookup -----

    def get_delta(self, delta_id: int) -> Optional[MenuDelta]:
        return self.db.query(MenuDelta).filter(MenuDelta.id == delta_id).first()

    def _require_delta(self, delta_id: int) -> MenuDelta:
        delta = self.get_delta(delta_id)
        if delta is None:
            raise DeltaNotFoundError(f"Delta {delta_id} not found")
        return delta

    def get_delta_payload(self, delta: MenuDelta) -> Optional[Dict[str, Any]]:
        return decompress_json(delta.compressed_payload)

    def get_pending_deltas(self, scope: Optional[ScopeKey] = None, limit: int = 100) -> List[MenuDelta]:
        """Deltas not yet delivered: Pending, or Failed and awaiting retry. Oldest first."""
        query = self.db.query(MenuDelta).filter(
            MenuDelta.submission_status.in_([SubmissionStatus.PENDING.value, SubmissionStatus.FAILED.value])
        )
        if scope is not None:
            query = query.filter(*scope_filters(MenuDelta, scope))
        return query.order_by(MenuDelta.created_at.asc(), MenuDelta.id.asc()).limit(limit).all()

    def list_deltas(self, scope: ScopeKey, limit: int = 50) -> List[MenuDelta]:
        return (
            self.db.query(MenuDelta)
            .filter(*scope_filters(MenuDelta, scope))
            .order_by(MenuDelta.id.desc())
            .limit(limit)
            .all()
        )

    # ----- validation -----

    def validate_delta_payload(self, payload: Optional[Dict[str, Any]]) -> DeltaValidationResult:
        """Missing identifiers are errors; dangling category or modifier references are warnings."""
        result = DeltaValidationResult()
        if not payload:
            result.errors.append("Delta payload is empty")
            return result

        if not (payload.get("metadata") or {}).get("delta_id"):
            result.errors.append("Delta payload has no delta id")

        category_ids = {c.get("id") for c in payload.get("categories", [])}
        modifier_ids = {m.get("id") for m in payload.get("modifiers", [])}
        products = list(payload.get("added", [])) + [u.get("product", {}) for u in payload.get("updated", [])]

        for product in products:
            product_id = product.get("id")
            if not product_id:
                result.errors.append(f"Product without id in delta payload: {product.get('name')!r}")
                continue
            category_id = product.get("category_id")
            if category_id and category_id not in category_ids:
                result.warnings.append(f"Product {product_id} references category {category_id} not in payload")
            for modifier_id in product.get("modifier_ids", []):
                if modifier_id not in modifier_ids:
                    result.warnings.append(f"Product {product_id} references modifier group {modifier_id} not in payload")

        for removed_id in payload.get("removed", []):
            if not removed_id:
                result.errors.append("Removed entry without id in delta payload")

        return result

    def validate_delta(self, delta_id: int) -> DeltaValidationResult:
        return self.validate_delta_payload(self.get_delta_payload(self._require_delta(delta_id)))

    # ----- submission -----

    async def _send_whole(self, delta: MenuDelta, payload: Dict[str, Any], vendor_code: str) -> SubmissionResult:
        return await self.retry_policy.execute(
            lambda: self.delivery_platform.submit_delta(payload, vendor_code),
            operation_name=f"submit delta {delta.id}"
        )

    async def _send_batched(self, delta: MenuDelta, payload: Dict[str, Any], items: list,
                            vendor_code: str) -> Tuple[SubmissionResult, int]:
        import_ids: List[str] = []
        raised: List[Exception] = []
        batch_counter = iter(range(1, len(items) + 1))

        async def submit_batch(batch):
            part = sub_payload(payload, batch, next(batch_counter))
            try:
                result = await self.retry_policy.execute(
                    lambda: self.delivery_platform.submit_delta(part, vendor_code),
                    operation_name=f"submit delta {delta.id} batch {part['metadata']['batch_number']}"
                )
            except Exception as e:
                raised.append(e)
                raise
            if not result.success:
                return BatchOutcome(failed_items=len(batch), errors=[result.error or "Batch rejected"])
            if result.import_id:
                import_ids.append(result.import_id)
            return BatchOutcome(successful_items=len(batch))

        outcome = await self.batch_processor.process_adaptive(items, submit_batch)
        if raised:
            raise raised[0]
        if outcome.failed_items:
            return SubmissionResult(success=False, error="; ".join(outcome.errors[:5])), outcome.batches
        return SubmissionResult(success=True, import_id=",".join(import_ids) or None), outcome.batches

    async def submit_delta(self, delta_id: int, vendor_code: str, dead_letter: bool = True) -> DeltaSubmissionResult:
        """
        Validate and deliver a persisted delta.

        Any failure leaves the delta Failed with its retry counter bumped and,
        unless `dead_letter` is False (replays), stores a DLQ message:
        DeltaValidation for invalid payloads, DeltaSync for everything else.
        """
        delta = self._require_delta(delta_id)
        if self.delivery_platform is None:
            raise ValueError("No delivery platform configured for delta submission")

        delta.submission_status = SubmissionStatus.IN_PROGRESS.value
        delta.vendor_code = vendor_code
        delta.last_attempt_at = utcnow()
        self.db.commit()

        payload = self.get_delta_payload(delta)
        validation = DeltaValidationResult()
        batches = 1
        try:
            validation = self.validate_delta_payload(payload)
            for warning in validation.warnings:
                log.warning(f"Delta {delta_id}: {warning}")
            if validation.errors:
                raise DeltaValidationError(validation.errors)

            items = payload_items(payload)
            if self.batch_processor is not None and len(items) > self.adaptive_threshold:
                log.info(f"Delta {delta_id} has {len(items)} items, submitting in adaptive batches")
                result, batches = await self._send_batched(delta, payload, items, vendor_code)
            else:
                result = await self._send_whole(delta, payload, vendor_code)

            if not result.success:
                raise SubmissionRejectedError(result.error or "Delivery platform rejected the delta")
        except Exception as e:
            return self._record_submission_failure(delta, vendor_code, e, dead_letter, validation)

        delta.submission_status = SubmissionStatus.SENT.value
        delta.import_id = result.import_id
        delta.sent_at = utcnow()
        delta.error_message = None
        self.db.commit()
        self.versioning.mark_snapshot_as_synced(delta.target_snapshot_id, result.import_id, vendor_code)

        log.info(f"Delta {delta_id} sent to vendor {vendor_code} (import {result.import_id})")
        return DeltaSubmissionResult(
            success=True,
            delta_id=delta_id,
            import_id=result.import_id,
            validation_warnings=validation.warnings,
            batches=batches,
        )

    def _record_submission_failure(self, delta: MenuDelta, vendor_code: str, error: Exception,
                                   dead_letter: bool, validation: DeltaValidationResult) -> DeltaSubmissionResult:
        self.db.rollback()
        delta.submission_status = SubmissionStatus.FAILED.value
        delta.error_message = str(error)
        delta.retry_count += 1
        delta.last_attempt_at = utcnow()
        self.db.commit()
        log.error(f"Delta {delta.id} submission to {vendor_code} failed (retry {delta.retry_count}): {error}")

        dlq_message_id = None
        if dead_letter:
            if isinstance(error, DeltaValidationError):
                message = self.dlq_service.store_validation_failure(delta, vendor_code, error)
            else:
                message = self.dlq_service.store_delta_sync_failure(delta, vendor_code, error)
            dlq_message_id = message.id

        return DeltaSubmissionResult(
            success=False,
            delta_id=delta.id,
            error_message=str(error),
            validation_errors=validation.errors,
            validation_warnings=validation.warnings,
            dlq_message_id=dlq_message_id,
        )

    async def retry_delta_sync(self, delta_id: int, vendor_code: Optional[str] = None) -> DeltaSubmissionResult:
        """Resubmit a failed delta once its backoff window has passed."""
        delta = self._require_delta(delta_id)
        if delta.submission_status == SubmissionStatus.SENT.value:
            raise ValueError(f"Delta {delta_id} was already sent")

        vendor_code = vendor_code or delta.vendor_code
        if not vendor_code:
            raise ValueError(f"Delta {delta_id} has no vendor code to retry with")

        if delta.last_attempt_at is not None and delta.retry_count > 0:
            next_attempt_at = ensure_utc(delta.last_attempt_at) + retry_backoff(delta.retry_count)
            if utcnow() < next_attempt_at:
                raise ValueError(f"Delta {delta_id} retry not allowed before {next_attempt_at.isoformat()}")

        log.info(f"Retrying delta {delta_id} for vendor {vendor_code} (previous retries: {delta.retry_count})")
        return await self.submit_delta(delta_id, vendor_code)

    # ----- reporting and retention -----

    def get_delta_statistics(self, scope: Optional[ScopeKey] = None,
                             since: Optional[datetime] = None) -> DeltaStatistics:
        query = self.db.query(MenuDelta)
        if scope is not None:
            query = query.filter(*scope_filters(MenuDelta, scope))
        if since is not None:
            query = query.filter(MenuDelta.created_at >= since)
        deltas = query.all()

        stats = DeltaStatistics(total_deltas=len(deltas))
        for delta in deltas:
            if delta.submission_status == SubmissionStatus.SENT.value:
                stats.sent += 1
            elif delta.submission_status == SubmissionStatus.FAILED.value:
                stats.failed += 1
            elif delta.submission_status == SubmissionStatus.IN_PROGRESS.value:
                stats.in_progress += 1
            else:
                stats.pending += 1
            stats.total_changes += delta.total_changes
            stats.products_added += delta.added_count
            stats.products_updated += delta.updated_count
            stats.products_removed += delta.removed_count

        if deltas:
            stats.average_changes_per_delta = stats.total_changes / len(deltas)
        attempted = stats.sent + stats.failed
        if attempted:
            stats.success_rate = stats.sent / attempted * 100
        return stats

    def cleanup_old_deltas(self, retention_days: int = 90) -> int:
        """Delete finished (Sent or Failed) deltas older than the retention window."""
        cutoff = utcnow() - timedelta(days=retention_days)
        deleted = self.db.query(MenuDelta).filter(
            MenuDelta.created_at < cutoff,
            MenuDelta.submission_status.in_([SubmissionStatus.SENT.value, SubmissionStatus.FAILED.value])
        ).delete(synchronize_session=False)
        self.db.commit()
        log.info(f"Delta cleanup: deleted {deleted} deltas older than {retention_days} days")
        return deleted
