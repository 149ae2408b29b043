import asyncio

import httpx
import pytest

from menu_sync.constants.dlq import DlqEventType, DlqPriority, ReplayStrategy, RiskLevel, WorkflowStatus
from menu_sync.schemas.dlq import ReplayWorkflowOptions
from menu_sync.services.replay_workflow import ReplayWorkflowService, recommended_batch_size, risk_level

from conftest import make_catalog

VENDOR = "vendor-1"


async def two_failed_deltas(services, scope, delivery):
    """Two transient DeltaSync messages for consecutive versions of the same scope."""
    delivery.error = httpx.ConnectError("connection refused")
    message_ids = []
    for catalog in (make_catalog(), make_catalog(p1={"price": 9.0})):
        generation = services.delta.generate_delta(scope, catalog)
        result = await services.delta.submit_delta(generation.delta.id, VENDOR)
        message_ids.append(result.dlq_message_id)
    return message_ids


def options(**overrides) -> ReplayWorkflowOptions:
    values = {"batch_delay_seconds": 0}
    values.update(overrides)
    return ReplayWorkflowOptions(**values)


@pytest.mark.parametrize("pending, expected", [(0, 0), (7, 7), (30, 5), (80, 10), (500, 20)])
def test_recommended_batch_size(pending, expected):
    assert recommended_batch_size(pending) == expected


@pytest.mark.parametrize("score, expected", [(0, RiskLevel.LOW), (4, RiskLevel.MEDIUM), (6, RiskLevel.HIGH)])
def test_risk_level(score, expected):
    assert risk_level(score) == expected


@pytest.mark.asyncio
class TestReplayWorkflow:
    async def test_empty_queue_completes(self, services):
        result = await ReplayWorkflowService(services.dlq).execute_replay_workflow("ops", options())
        assert result.status == WorkflowStatus.COMPLETED
        assert result.total_messages == 0
        assert result.success_rate == 0.0

    async def test_replays_in_chronological_batches(self, services, scope, delivery):
        message_ids = await two_failed_deltas(services, scope, delivery)
        delivery.error = None

        result = await ReplayWorkflowService(services.dlq).execute_replay_workflow(
            "ops", options(strategy=ReplayStrategy.CHRONOLOGICAL, batch_size=1)
        )
        assert result.status == WorkflowStatus.COMPLETED
        assert result.batches == 2
        assert result.successful == 2
        assert [r.message_id for r in result.results] == message_ids
        assert result.success_rate == 100.0
        assert any("delta sync messages pending" in w for w in result.validation_warnings)

    async def test_reverse_chronological_order(self, services, scope, delivery):
        message_ids = await two_failed_deltas(services, scope, delivery)
        delivery.error = None

        result = await ReplayWorkflowService(services.dlq).execute_replay_workflow(
            "ops", options(strategy=ReplayStrategy.REVERSE_CHRONOLOGICAL)
        )
        assert [r.message_id for r in result.results] == list(reversed(message_ids))

    async def test_warnings_abort_when_requested(self, services, scope, delivery):
        await two_failed_deltas(services, scope, delivery)
        delivery.error = None
        submissions = len(delivery.submissions)

        result = await ReplayWorkflowService(services.dlq).execute_replay_workflow(
            "ops", options(stop_on_validation_warnings=True)
        )
        assert result.status == WorkflowStatus.ABORTED
        assert result.processed == 0
        assert result.validation_warnings
        assert len(delivery.submissions) == submissions

    async def test_cancel_before_first_batch(self, services, scope, delivery):
        await two_failed_deltas(services, scope, delivery)
        cancel = asyncio.Event()
        cancel.set()

        result = await ReplayWorkflowService(services.dlq).execute_replay_workflow("ops", options(), cancel_event=cancel)
        assert result.status == WorkflowStatus.CANCELLED
        assert result.processed == 0
        assert len(services.dlq.get_pending_messages()) == 2

    async def test_failures_mark_partial_completion(self, services, scope, delivery):
        await two_failed_deltas(services, scope, delivery)

        result = await ReplayWorkflowService(services.dlq).execute_replay_workflow("ops", options())
        assert result.status == WorkflowStatus.PARTIALLY_COMPLETED
        assert result.failed == 2
        assert result.validation_errors

    async def test_selection_filters(self, services, scope, delivery):
        await two_failed_deltas(services, scope, delivery)
        services.dlq.store_delta_generation_failure(scope, RuntimeError("catalog unreadable"))
        workflow = ReplayWorkflowService(services.dlq)

        transient = await workflow.execute_replay_workflow(
            "ops", options(transient_only=True, stop_on_validation_warnings=True)
        )
        assert transient.total_messages == 2

        generation_only = await workflow.execute_replay_workflow(
            "ops", options(excluded_event_types=[DlqEventType.DELTA_SYNC], stop_on_validation_warnings=True)
        )
        assert generation_only.total_messages == 1


@pytest.mark.asyncio
class TestReplayRecommendations:
    async def test_nothing_pending(self, services):
        recommendations = ReplayWorkflowService(services.dlq).get_replay_recommendations()
        assert recommendations.pending_messages == 0
        assert recommendations.recommendations == ["No pending messages to replay."]

    async def test_multiple_delta_syncs_suggest_chronological(self, services, scope, delivery):
        await two_failed_deltas(services, scope, delivery)
        recommendations = ReplayWorkflowService(services.dlq).get_replay_recommendations()

        assert recommendations.pending_messages == 2
        assert recommendations.recommended_strategy == ReplayStrategy.CHRONOLOGICAL
        assert recommendations.recommended_batch_size == 2
        assert recommendations.estimated_duration_seconds == 60
        assert recommendations.risk_level == RiskLevel.LOW

    async def test_critical_messages_go_first(self, services, scope, delivery):
        message_ids = await two_failed_deltas(services, scope, delivery)
        services.dlq.update_message_priority(message_ids[1], DlqPriority.CRITICAL, "ops")

        recommendations = ReplayWorkflowService(services.dlq).get_replay_recommendations()
        assert recommendations.recommended_strategy == ReplayStrategy.CRITICAL
        assert recommendations.recommendations[0] == "1 critical message(s) pending, replay them first."

    async def test_permanent_failures_raise_risk(self, services, scope):
        services.dlq.store_delta_generation_failure(scope, RuntimeError("catalog unreadable"))
        recommendations = ReplayWorkflowService(services.dlq).get_replay_recommendations()
        assert recommendations.risk_score == 1
        assert any("manual review" in r for r in recommendations.recommendations)
