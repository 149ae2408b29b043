"""Dead letter queue: storage, replay, acknowledgement and retention of failed operations."""

import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, computed_field
from sqlalchemy import case, or_, and_
from sqlalchemy.orm import Session

from menu_sync.connectors.base import ScopeKey
from menu_sync.constants.dlq import (
    ALREADY_REPLAYED_ERROR,
    AUTO_RETRY_BATCH_LIMIT,
    MAX_AUTO_RETRY_ATTEMPTS,
    PRIORITY_RANK,
    DlqEventType,
    DlqFailureType,
    DlqPriority,
    ReplayOutcome,
)
from menu_sync.exceptions import DeltaValidationError
from menu_sync.models.dlq_message import DlqMessage
from menu_sync.models.menu_delta import MenuDelta
from menu_sync.services.replay_handlers import ReplayContext, handler_for
from menu_sync.services.retry_policy import is_transient_error
from menu_sync.utils.clock import ensure_utc, generate_correlation_id, utcnow

log = logging.getLogger(__name__)

AUTO_RETRY_ACTOR = "auto-retry"
# Deltas failing more often than this are escalated to High priority
HIGH_PRIORITY_RETRY_COUNT = 3


class ReplayResult(BaseModel):
    message_id: int
    success: bool
    error_message: Optional[str] = None
    replayed_at: Optional[datetime] = None


class BulkReplayResult(BaseModel):
    total_messages: int = 0
    successful_replays: int = 0
    failed_replays: int = 0
    results: List[ReplayResult] = []

    @computed_field
    @property
    def success_rate(self) -> float:
        if not self.total_messages:
            return 0.0
        return self.successful_replays / self.total_messages * 100


class AutoRetryResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    escalated_to_permanent: int = 0


class CleanupResult(BaseModel):
    deleted_count: int = 0
    freed_bytes: int = 0


class DlqStatistics(BaseModel):
    total_messages: int = 0
    pending_messages: int = 0
    replayed_messages: int = 0
    acknowledged_messages: int = 0
    by_event_type: Dict[str, int] = {}
    by_failure_type: Dict[str, int] = {}
    by_priority: Dict[str, int] = {}
    average_resolution_hours: Optional[float] = None
    replay_success_rate: float = 0.0


def _classify(error: Exception) -> DlqFailureType:
    return DlqFailureType.TRANSIENT if is_transient_error(error) else DlqFailureType.PERMANENT


def _message_size(message: DlqMessage) -> int:
    fields = (message.original_message, message.error_message, message.stack_trace, message.notes)
    return sum(len(value.encode("utf-8")) for value in fields if value)


class DlqService:
    """
    Durable record of failed operations with controlled replay.

    Each message stores the event type it was created for; replay resolves
    the handler from that type. `replay_context` carries the collaborators
    handlers need and is attached once the delta service exists.
    """

    def __init__(self, db: Session, retention_days: int = 30, replay_context: Optional[ReplayContext] = None):
        self.db = db
        self.retention_days = retention_days
        self.replay_context = replay_context

    # ----- storage -----

    def _store(self, message: DlqMessage) -> DlqMessage:
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        log.warning(
            f"DLQ message {message.id} stored: event={message.event_type}, failure={message.failure_type}, "
            f"priority={message.priority}, error={message.error_code}: {message.error_message}"
        )
        return message

    @staticmethod
    def _delta_message(delta: MenuDelta, vendor_code: Optional[str]) -> dict:
        return {
            "delta_id": delta.id,
            "account_id": delta.account_id,
            "branch_id": delta.branch_id,
            "menu_group_id": delta.menu_group_id,
            "delta_type": delta.delta_type,
            "target_version": delta.target_version,
            "vendor_code": vendor_code,
        }

    def store_delta_sync_failure(self, delta: MenuDelta, vendor_code: str, error: Exception,
                                 correlation_id: Optional[str] = None) -> DlqMessage:
        priority = DlqPriority.HIGH if delta.retry_count > HIGH_PRIORITY_RETRY_COUNT else DlqPriority.NORMAL
        message = DlqMessage.for_failure(
            DlqEventType.DELTA_SYNC,
            correlation_id or delta.correlation_id or generate_correlation_id("delta"),
            delta.account_id,
            self._delta_message(delta, vendor_code),
            error,
            _classify(error),
            priority,
            context={"delta_id": delta.id, "vendor_code": vendor_code, "retry_count": delta.retry_count},
            retention_days=self.retention_days,
            attempts=max(delta.retry_count, 1),
        )
        return self._store(message)

    def store_delta_generation_failure(self, scope: ScopeKey, error: Exception, correlation_id: Optional[str] = None,
                                       force_full_sync: bool = False,
                                       vendor_code: Optional[str] = None) -> DlqMessage:
        payload = {**scope.model_dump(), "force_full_sync": force_full_sync}
        message = DlqMessage.for_failure(
            DlqEventType.DELTA_GENERATION,
            correlation_id or generate_correlation_id("delta"),
            scope.account_id,
            payload,
            error,
            _classify(error),
            DlqPriority.HIGH,
            context={"scope": scope.model_dump(), "force_full_sync": force_full_sync, "vendor_code": vendor_code},
            retention_days=self.retention_days,
        )
        return self._store(message)

    def store_validation_failure(self, delta: MenuDelta, vendor_code: str, error: DeltaValidationError,
                                 correlation_id: Optional[str] = None) -> DlqMessage:
        message = DlqMessage.for_failure(
            DlqEventType.DELTA_VALIDATION,
            correlation_id or delta.correlation_id or generate_correlation_id("delta"),
            delta.account_id,
            self._delta_message(delta, vendor_code),
            error,
            DlqFailureType.PERMANENT,
            DlqPriority.NORMAL,
            context={"delta_id": delta.id, "vendor_code": vendor_code, "validation_errors": error.errors},
            retention_days=self.retention_days,
        )
        return self._store(message)

    # ----- lookup -----

    def get_message(self, message_id: int) -> Optional[DlqMessage]:
        return self.db.query(DlqMessage).filter(DlqMessage.id == message_id).first()

    def get_pending_messages(self, event_type: Optional[DlqEventType] = None, priority: Optional[DlqPriority] = None,
                             limit: int = 100, scope_id: Optional[str] = None) -> List[DlqMessage]:
        """Unreplayed, unacknowledged messages, Critical first, then oldest first."""
        rank = case({p.value: r for p, r in PRIORITY_RANK.items()}, value=DlqMessage.priority, else_=0)
        query = self.db.query(DlqMessage).filter(
            DlqMessage.is_replayed.is_(False),
            DlqMessage.is_acknowledged.is_(False)
        )
        if event_type is not None:
            query = query.filter(DlqMessage.event_type == event_type.value)
        if priority is not None:
            query = query.filter(DlqMessage.priority == priority.value)
        if scope_id is not None:
            query = query.filter(DlqMessage.scope_id == scope_id)
        return query.order_by(rank.desc(), DlqMessage.created_at.asc(), DlqMessage.id.asc()).limit(limit).all()

    # ----- replay -----

    async def _run_handler(self, message: DlqMessage):
        handler = handler_for(message.event_type)
        await handler.replay(message, self.replay_context)

    async def replay_message(self, message_id: int, actor: str) -> ReplayResult:
        """
        Replay one message through the handler registered for its event type.

        The message is marked replayed and committed before the handler runs,
        so a second replay of the same message is refused even if the first
        one is still executing or has failed.
        """
        message = self.get_message(message_id)
        if message is None:
            return ReplayResult(message_id=message_id, success=False, error_message=f"DLQ message {message_id} not found")
        if message.is_replayed:
            log.info(f"Refusing replay of DLQ message {message_id}: already replayed by {message.replayed_by}")
            return ReplayResult(message_id=message_id, success=False, error_message=ALREADY_REPLAYED_ERROR)

        message.is_replayed = True
        message.replayed_at = utcnow()
        message.replayed_by = actor
        self.db.commit()

        log.info(f"Replaying DLQ message {message_id} ({message.event_type}) for {actor}")
        try:
            await self._run_handler(message)
        except Exception as e:
            log.error(f"Replay of DLQ message {message_id} failed: {e}", exc_info=True)
            message.replay_result = ReplayOutcome.FAILED.value
            message.replay_error_message = str(e)
            self.db.commit()
            return ReplayResult(message_id=message_id, success=False, error_message=str(e),
                                replayed_at=message.replayed_at)

        message.replay_result = ReplayOutcome.SUCCESS.value
        message.replay_error_message = None
        self.db.commit()
        log.info(f"DLQ message {message_id} replayed successfully")
        return ReplayResult(message_id=message_id, success=True, replayed_at=message.replayed_at)

    async def replay_messages(self, message_ids: List[int], actor: str) -> BulkReplayResult:
        """Replay each id in order; one failure does not stop the others."""
        result = BulkReplayResult(total_messages=len(message_ids))
        for message_id in message_ids:
            replay = await self.replay_message(message_id, actor)
            result.results.append(replay)
            if replay.success:
                result.successful_replays += 1
            else:
                result.failed_replays += 1
        log.info(
            f"Bulk replay by {actor}: {result.successful_replays}/{result.total_messages} succeeded "
            f"({result.success_rate:.1f}%)"
        )
        return result

    def _escalate_exhausted(self) -> int:
        """Transient messages that used up their attempts become Permanent."""
        exhausted = self.db.query(DlqMessage).filter(
            DlqMessage.failure_type == DlqFailureType.TRANSIENT.value,
            DlqMessage.is_replayed.is_(False),
            DlqMessage.is_acknowledged.is_(False),
            DlqMessage.attempts >= MAX_AUTO_RETRY_ATTEMPTS
        ).all()
        for message in exhausted:
            message.failure_type = DlqFailureType.PERMANENT.value
        if exhausted:
            self.db.commit()
            log.warning(f"Escalated {len(exhausted)} exhausted transient DLQ messages to Permanent")
        return len(exhausted)

    async def auto_retry_transient_failures(self, max_age: timedelta = timedelta(hours=24)) -> AutoRetryResult:
        """
        Retry recent transient failures without operator involvement.

        Only Transient, unreplayed, unacknowledged messages younger than
        `max_age` with fewer than MAX_AUTO_RETRY_ATTEMPTS attempts qualify,
        fewest attempts first, at most AUTO_RETRY_BATCH_LIMIT per pass. A
        failed retry counts an attempt; the last allowed attempt turns the
        message Permanent.
        """
        result = AutoRetryResult(escalated_to_permanent=self._escalate_exhausted())
        candidates = self.db.query(DlqMessage).filter(
            DlqMessage.failure_type == DlqFailureType.TRANSIENT.value,
            DlqMessage.is_replayed.is_(False),
            DlqMessage.is_acknowledged.is_(False),
            DlqMessage.created_at >= utcnow() - max_age,
            DlqMessage.attempts < MAX_AUTO_RETRY_ATTEMPTS
        ).order_by(DlqMessage.attempts.asc(), DlqMessage.created_at.asc()).limit(AUTO_RETRY_BATCH_LIMIT).all()

        if not candidates:
            log.debug("Auto-retry: no transient DLQ messages eligible")
            return result

        log.info(f"Auto-retry: processing {len(candidates)} transient DLQ messages")
        for message in candidates:
            result.processed += 1
            try:
                await self._run_handler(message)
            except Exception as e:
                message.attempts += 1
                message.last_attempt_at = utcnow()
                message.replay_error_message = str(e)
                if message.attempts >= MAX_AUTO_RETRY_ATTEMPTS:
                    message.failure_type = DlqFailureType.PERMANENT.value
                    result.escalated_to_permanent += 1
                    log.warning(f"DLQ message {message.id} reached {message.attempts} attempts, now Permanent")
                else:
                    log.info(f"Auto-retry of DLQ message {message.id} failed (attempt {message.attempts}): {e}")
                self.db.commit()
                result.failed += 1
                continue

            message.is_replayed = True
            message.replayed_at = utcnow()
            message.replayed_by = AUTO_RETRY_ACTOR
            message.replay_result = ReplayOutcome.SUCCESS.value
            message.replay_error_message = None
            self.db.commit()
            result.succeeded += 1

        log.info(
            f"Auto-retry finished: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.escalated_to_permanent} escalated"
        )
        return result

    # ----- operator actions -----

    def acknowledge_message(self, message_id: int, actor: str, notes: Optional[str] = None) -> Optional[DlqMessage]:
        message = self.get_message(message_id)
        if message is None:
            return None
        message.is_acknowledged = True
        message.acknowledged_at = utcnow()
        message.acknowledged_by = actor
        if notes:
            context = message.context
            context["acknowledgement_notes"] = notes
            message.notes = json.dumps(context, default=str)
        self.db.commit()
        log.info(f"DLQ message {message_id} acknowledged by {actor}")
        return message

    def update_message_priority(self, message_id: int, priority: DlqPriority, actor: str) -> Optional[DlqMessage]:
        message = self.get_message(message_id)
        if message is None:
            return None
        previous = message.priority
        message.priority = priority.value
        context = message.context
        context.setdefault("priority_changes", []).append(
            {"from": previous, "to": priority.value, "by": actor, "at": utcnow().isoformat()}
        )
        message.notes = json.dumps(context, default=str)
        self.db.commit()
        log.info(f"DLQ message {message_id} priority changed {previous} -> {priority.value} by {actor}")
        return message

    # ----- reporting and retention -----

    def get_statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> DlqStatistics:
        query = self.db.query(DlqMessage)
        if start is not None:
            query = query.filter(DlqMessage.created_at >= start)
        if end is not None:
            query = query.filter(DlqMessage.created_at <= end)
        messages = query.all()

        resolution_hours = []
        for m in messages:
            resolved_at = m.replayed_at if m.is_replayed else m.acknowledged_at
            if resolved_at is not None:
                delta = ensure_utc(resolved_at) - ensure_utc(m.created_at)
                resolution_hours.append(delta.total_seconds() / 3600)

        replayed = [m for m in messages if m.is_replayed and m.replay_result is not None]
        replay_successes = sum(1 for m in replayed if m.replay_result == ReplayOutcome.SUCCESS.value)

        return DlqStatistics(
            total_messages=len(messages),
            pending_messages=sum(1 for m in messages if m.is_pending),
            replayed_messages=sum(1 for m in messages if m.is_replayed),
            acknowledged_messages=sum(1 for m in messages if m.is_acknowledged),
            by_event_type=dict(Counter(m.event_type for m in messages)),
            by_failure_type=dict(Counter(m.failure_type for m in messages)),
            by_priority=dict(Counter(m.priority for m in messages)),
            average_resolution_hours=sum(resolution_hours) / len(resolution_hours) if resolution_hours else None,
            replay_success_rate=replay_successes / len(replayed) * 100 if replayed else 0.0,
        )

    def cleanup_old_messages(self, retention_days: int = 30) -> CleanupResult:
        """Delete resolved messages (acknowledged, or replayed successfully) older than the retention window."""
        cutoff = utcnow() - timedelta(days=retention_days)
        resolved = self.db.query(DlqMessage).filter(
            DlqMessage.created_at < cutoff,
            or_(
                DlqMessage.is_acknowledged.is_(True),
                and_(DlqMessage.is_replayed.is_(True), DlqMessage.replay_result == ReplayOutcome.SUCCESS.value)
            )
        ).all()

        result = CleanupResult()
        for message in resolved:
            result.freed_bytes += _message_size(message)
            self.db.delete(message)
            result.deleted_count += 1
        self.db.commit()

        log.info(
            f"DLQ cleanup: deleted {result.deleted_count} messages older than {retention_days} days, "
            f"freed ~{result.freed_bytes} bytes"
        )
        return result
