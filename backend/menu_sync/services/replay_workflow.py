"""Operator-driven bulk replay of DLQ messages with pre/post checks and recommendations."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, computed_field

from menu_sync.constants.dlq import (
    DlqEventType,
    DlqFailureType,
    DlqPriority,
    RecommendationCode,
    ReplayStrategy,
    RiskLevel,
    WorkflowStatus,
    explain_recommendation,
)
from menu_sync.models.dlq_message import DlqMessage
from menu_sync.schemas.dlq import ReplayWorkflowOptions
from menu_sync.services.dlq_service import DlqService, ReplayResult
from menu_sync.utils.clock import ensure_utc, utcnow

log = logging.getLogger(__name__)

OLD_MESSAGE_DAYS = 7
LARGE_BACKLOG = 50
SECONDS_PER_MESSAGE = 30
MIN_SUCCESS_RATE = 50.0
LOW_HISTORIC_SUCCESS_RATE = 70.0
RECOMMENDATION_SCAN_LIMIT = 1000


class ReplayWorkflowResult(BaseModel):
    workflow_id: str
    status: WorkflowStatus
    strategy: ReplayStrategy
    total_messages: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    batches: int = 0
    validation_warnings: List[str] = []
    validation_errors: List[str] = []
    results: List[ReplayResult] = []
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @computed_field
    @property
    def success_rate(self) -> float:
        return self.successful / self.processed * 100 if self.processed else 0.0


class ReplayRecommendations(BaseModel):
    pending_messages: int = 0
    recommended_batch_size: int = 0
    recommended_strategy: ReplayStrategy = ReplayStrategy.CRITICAL
    estimated_duration_seconds: int = 0
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    recommendations: List[str] = []


def _is_old(message: DlqMessage, now: datetime) -> bool:
    return ensure_utc(message.created_at) < now - timedelta(days=OLD_MESSAGE_DAYS)


def recommended_batch_size(pending: int) -> int:
    if pending <= 10:
        return pending
    if pending <= 50:
        return 5
    if pending <= 100:
        return 10
    return 20


def risk_level(score: int) -> RiskLevel:
    if score <= 2:
        return RiskLevel.LOW
    if score <= 5:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


class ReplayWorkflowService:
    def __init__(self, dlq_service: DlqService):
        self.dlq_service = dlq_service

    def _select(self, scope_id: Optional[str], options: ReplayWorkflowOptions) -> List[DlqMessage]:
        messages = self.dlq_service.get_pending_messages(scope_id=scope_id, limit=options.max_messages)
        now = utcnow()
        excluded = {t.value for t in options.excluded_event_types}

        selected = [
            m for m in messages
            if m.event_type not in excluded
            and (not options.transient_only or m.failure_type == DlqFailureType.TRANSIENT.value)
            and (options.max_age_days is None
                 or ensure_utc(m.created_at) >= now - timedelta(days=options.max_age_days))
        ]

        if options.strategy == ReplayStrategy.CHRONOLOGICAL:
            selected.sort(key=lambda m: (ensure_utc(m.created_at), m.id))
        elif options.strategy == ReplayStrategy.REVERSE_CHRONOLOGICAL:
            selected.sort(key=lambda m: (ensure_utc(m.created_at), m.id), reverse=True)
        # Critical keeps the priority-then-age order of get_pending_messages
        return selected

    @staticmethod
    def _pre_validate(messages: List[DlqMessage]) -> List[str]:
        now = utcnow()
        warnings = []
        delta_syncs = sum(1 for m in messages if m.event_type == DlqEventType.DELTA_SYNC.value)
        if delta_syncs > 1:
            warnings.append(explain_recommendation(RecommendationCode.MULTIPLE_DELTA_SYNCS, {"count": delta_syncs}))
        old = sum(1 for m in messages if _is_old(m, now))
        if old:
            warnings.append(explain_recommendation(RecommendationCode.OLD_MESSAGES,
                                                   {"count": old, "days": OLD_MESSAGE_DAYS}))
        permanent = sum(1 for m in messages if m.failure_type == DlqFailureType.PERMANENT.value)
        if permanent:
            warnings.append(explain_recommendation(RecommendationCode.PERMANENT_FAILURES, {"count": permanent}))
        return warnings

    async def execute_replay_workflow(self, actor: str, options: Optional[ReplayWorkflowOptions] = None,
                                      scope_id: Optional[str] = None,
                                      cancel_event: Optional[asyncio.Event] = None) -> ReplayWorkflowResult:
        """
        Replay the selected pending messages in batches.

        Selection honours max age, excluded event types and transient-only;
        order follows the chosen strategy. Pre-validation warnings abort the
        workflow only when `stop_on_validation_warnings` is set. Cancellation
        is checked before every batch.
        """
        options = options or ReplayWorkflowOptions()
        result = ReplayWorkflowResult(
            workflow_id=uuid.uuid4().hex,
            status=WorkflowStatus.COMPLETED,
            strategy=options.strategy,
            started_at=utcnow(),
        )

        try:
            messages = self._select(scope_id, options)
            result.total_messages = len(messages)
            log.info(
                f"Replay workflow {result.workflow_id} by {actor}: {len(messages)} messages, "
                f"strategy={options.strategy.value}, batch_size={options.batch_size}"
            )
            if not messages:
                result.completed_at = utcnow()
                return result

            result.validation_warnings = self._pre_validate(messages)
            for warning in result.validation_warnings:
                log.warning(f"Replay workflow {result.workflow_id}: {warning}")
            if result.validation_warnings and options.stop_on_validation_warnings:
                result.status = WorkflowStatus.ABORTED
                result.completed_at = utcnow()
                return result

            cancelled = False
            ids = [m.id for m in messages]
            for offset in range(0, len(ids), options.batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    log.info(f"Replay workflow {result.workflow_id} cancelled after {result.processed} messages")
                    cancelled = True
                    break
                if offset and options.batch_delay_seconds:
                    await asyncio.sleep(options.batch_delay_seconds)

                bulk = await self.dlq_service.replay_messages(ids[offset:offset + options.batch_size], actor)
                result.batches += 1
                result.processed += bulk.total_messages
                result.successful += bulk.successful_replays
                result.failed += bulk.failed_replays
                result.results.extend(bulk.results)

            if result.processed:
                if result.success_rate < MIN_SUCCESS_RATE:
                    result.validation_errors.append(
                        f"Replay success rate {result.success_rate:.1f}% is below {MIN_SUCCESS_RATE:.0f}%"
                    )
                if result.failed > result.successful:
                    result.validation_warnings.append(
                        f"More replays failed ({result.failed}) than succeeded ({result.successful})"
                    )

            if cancelled:
                result.status = WorkflowStatus.CANCELLED
            elif result.failed == 0:
                result.status = WorkflowStatus.COMPLETED
            else:
                result.status = WorkflowStatus.PARTIALLY_COMPLETED

        except Exception as e:
            log.error(f"Replay workflow {result.workflow_id} failed: {e}", exc_info=True)
            result.status = WorkflowStatus.FAILED
            result.error_message = str(e)

        result.completed_at = utcnow()
        log.info(
            f"Replay workflow {result.workflow_id} {result.status.value}: "
            f"{result.successful}/{result.processed} succeeded in {result.batches} batches"
        )
        return result

    def get_replay_recommendations(self, scope_id: Optional[str] = None) -> ReplayRecommendations:
        pending = self.dlq_service.get_pending_messages(scope_id=scope_id, limit=RECOMMENDATION_SCAN_LIMIT)
        if not pending:
            return ReplayRecommendations(
                recommendations=[explain_recommendation(RecommendationCode.NO_PENDING, {})]
            )

        now = utcnow()
        count = len(pending)
        critical = sum(1 for m in pending if m.priority == DlqPriority.CRITICAL.value)
        old = sum(1 for m in pending if _is_old(m, now))
        permanent = sum(1 for m in pending if m.failure_type == DlqFailureType.PERMANENT.value)
        delta_syncs = sum(1 for m in pending if m.event_type == DlqEventType.DELTA_SYNC.value)

        history = self.dlq_service.get_statistics()
        has_history = history.replayed_messages > 0
        low_success = has_history and history.replay_success_rate < LOW_HISTORIC_SUCCESS_RATE

        score = 0
        recommendations = []
        if critical:
            recommendations.append(explain_recommendation(RecommendationCode.CRITICAL_FIRST, {"count": critical}))
        if old:
            score += 2
            recommendations.append(explain_recommendation(RecommendationCode.OLD_MESSAGES,
                                                          {"count": old, "days": OLD_MESSAGE_DAYS}))
        if count > LARGE_BACKLOG:
            score += 2
            recommendations.append(explain_recommendation(RecommendationCode.LARGE_BACKLOG, {"count": count}))
        if low_success:
            score += 3
            recommendations.append(explain_recommendation(RecommendationCode.LOW_SUCCESS_RATE,
                                                          {"rate": history.replay_success_rate}))
        if permanent:
            score += 1
            recommendations.append(explain_recommendation(RecommendationCode.PERMANENT_FAILURES,
                                                          {"count": permanent}))
        if delta_syncs > 1:
            recommendations.append(explain_recommendation(RecommendationCode.MULTIPLE_DELTA_SYNCS,
                                                          {"count": delta_syncs}))

        if critical:
            strategy = ReplayStrategy.CRITICAL
        elif delta_syncs > 1:
            strategy = ReplayStrategy.CHRONOLOGICAL
        else:
            strategy = ReplayStrategy.CRITICAL

        return ReplayRecommendations(
            pending_messages=count,
            recommended_batch_size=recommended_batch_size(count),
            recommended_strategy=strategy,
            estimated_duration_seconds=count * SECONDS_PER_MESSAGE,
            risk_score=score,
            risk_level=risk_level(score),
            recommendations=recommendations,
        )
