from datetime import timedelta
from unittest.mock import patch

import pytest

from menu_sync.connectors.base import ScopeKey
from menu_sync.constants.dlq import DlqEventType
from menu_sync.constants.sync_enums import DeltaType, SubmissionStatus
from menu_sync.exceptions import DeltaNotFoundError
from menu_sync.models.menu_change_log import MenuChangeLog
from menu_sync.models.menu_delta import MenuDelta
from menu_sync.services.batch_optimizer import BatchProcessor
from menu_sync.services.delta_sync import retry_backoff
from menu_sync.utils.clock import utcnow
from menu_sync.utils.compression import compress_json

from conftest import make_catalog, with_modifier

VENDOR = "vendor-1"
BUILD_PAYLOAD = "menu_sync.services.delta_sync.build_delta_payload"


def test_retry_backoff_is_capped():
    assert retry_backoff(1) == timedelta(minutes=2)
    assert retry_backoff(4) == timedelta(minutes=16)
    assert retry_backoff(10) == timedelta(minutes=30)


class TestGenerateDelta:
    def test_first_sync_sends_everything(self, services, scope):
        generation = services.delta.generate_delta(scope, make_catalog())
        delta = generation.delta

        assert generation.success and generation.has_changes
        assert delta.delta_type == DeltaType.FIRST_SYNC.value
        assert (delta.source_version, delta.target_version) == (None, 1)
        assert (delta.added_count, delta.updated_count, delta.removed_count) == (3, 0, 0)
        assert delta.submission_status == SubmissionStatus.PENDING.value

        payload = services.delta.get_delta_payload(delta)
        assert payload["metadata"]["delta_id"] == delta.id
        assert [p["id"] for p in payload["added"]] == ["p1", "p2", "p3"]
        assert payload["categories"] == [{"id": "cat-1", "name": "Mains"}]

    def test_unchanged_catalog_produces_no_delta(self, services, scope):
        services.delta.generate_delta(scope, make_catalog())
        generation = services.delta.generate_delta(scope, make_catalog())

        assert generation.success
        assert not generation.has_changes
        assert generation.delta is None
        assert len(services.versioning.list_snapshots(scope)) == 1

    def test_incremental_delta_carries_only_changes(self, services, scope):
        services.delta.generate_delta(scope, make_catalog())
        generation = services.delta.generate_delta(scope, make_catalog(p2={"price": 7.5}))
        delta = generation.delta

        assert delta.delta_type == DeltaType.INCREMENTAL.value
        assert (delta.source_version, delta.target_version) == (1, 2)
        assert delta.total_changes == 1
        update = services.delta.get_delta_payload(delta)["updated"][0]
        assert update["product"]["price"] == 7.5
        assert update["changed_fields"] == ["price"]
        assert update["previous_values"]["price"] == 2.0

    def test_removed_products(self, services, scope):
        services.delta.generate_delta(scope, make_catalog())
        delta = services.delta.generate_delta(scope, make_catalog(count=2)).delta

        assert delta.removed_count == 1
        assert services.delta.get_delta_payload(delta)["removed"] == ["p3"]

    def test_modifiers_travel_with_touched_products(self, services, scope):
        catalog = make_catalog()
        catalog.products[0] = with_modifier(catalog.products[0])
        payload = services.delta.get_delta_payload(services.delta.generate_delta(scope, catalog).delta)

        assert payload["added"][0]["modifier_ids"] == ["mod-p1"]
        assert [m["id"] for m in payload["modifiers"]] == ["mod-p1"]

    def test_forced_full_resync(self, services, scope):
        services.delta.generate_delta(scope, make_catalog())
        delta = services.delta.generate_delta(scope, make_catalog(), force_full_sync=True).delta

        assert delta.delta_type == DeltaType.FULL_RESYNC.value
        assert delta.added_count == 3
        assert delta.target_version == 2

    def test_generation_failure_is_dead_lettered(self, services, scope):
        with patch.object(services.versioning, "detect_changes", side_effect=RuntimeError("database unavailable")):
            generation = services.delta.generate_delta(scope, make_catalog(), vendor_code=VENDOR)

        assert not generation.success
        assert generation.error_message == "database unavailable"
        message = services.dlq.get_message(generation.dlq_message_id)
        assert message.event_type == DlqEventType.DELTA_GENERATION.value
        assert message.context["vendor_code"] == VENDOR

    def test_failed_generation_leaves_no_snapshot(self, services, scope, db):
        services.delta.generate_delta(scope, make_catalog())
        repriced = make_catalog(p2={"price": 2.5})

        with patch(BUILD_PAYLOAD, side_effect=RuntimeError("payload build failed")):
            generation = services.delta.generate_delta(scope, repriced)

        assert not generation.success
        assert services.versioning.get_latest_snapshot(scope).version == 1
        assert db.query(MenuChangeLog).filter(MenuChangeLog.current_version == 2).count() == 0
        assert db.query(MenuDelta).count() == 1

        retried = services.delta.generate_delta(scope, repriced)
        assert retried.delta.delta_type == DeltaType.INCREMENTAL.value
        assert retried.delta.target_version == 2
        assert retried.delta.updated_count == 1

    def test_scopes_are_versioned_independently(self, services, scope):
        services.delta.generate_delta(scope, make_catalog())
        other = services.delta.generate_delta(ScopeKey(account_id="acct-1", branch_id="branch-2"), make_catalog())
        assert other.delta.delta_type == DeltaType.FIRST_SYNC.value
        assert other.delta.target_version == 1


class TestValidateDeltaPayload:
    def test_empty_payload(self, services):
        assert services.delta.validate_delta_payload(None).errors == ["Delta payload is empty"]

    def test_missing_identifiers_are_errors(self, services):
        result = services.delta.validate_delta_payload({
            "metadata": {},
            "added": [{"name": "Nameless"}],
            "removed": [""],
        })
        assert not result.is_valid
        assert len(result.errors) == 3

    def test_dangling_references_are_warnings(self, services):
        result = services.delta.validate_delta_payload({
            "metadata": {"delta_id": 1},
            "added": [{"id": "p1", "category_id": "cat-9", "modifier_ids": ["mod-1"]}],
            "categories": [],
            "modifiers": [],
        })
        assert result.is_valid
        assert len(result.warnings) == 2

    def test_missing_delta(self, services):
        with pytest.raises(DeltaNotFoundError):
            services.delta.validate_delta(404)


@pytest.mark.asyncio
class TestSubmitDelta:
    async def test_successful_submission(self, services, scope, delivery):
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        result = await services.delta.submit_delta(delta.id, VENDOR)

        assert result.success
        assert result.import_id == "imp-1"
        assert delivery.submissions[0]["metadata"]["delta_id"] == delta.id

        delta = services.delta.get_delta(delta.id)
        assert delta.submission_status == SubmissionStatus.SENT.value
        assert delta.vendor_code == VENDOR
        assert delta.sent_at is not None

        snapshot = services.versioning.get_snapshot(delta.target_snapshot_id)
        assert snapshot.is_synced
        assert snapshot.import_id == "imp-1"

    async def test_rejection_fails_delta_and_dead_letters(self, services, scope, delivery):
        delivery.reject = "menu locked by vendor"
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        result = await services.delta.submit_delta(delta.id, VENDOR)

        assert not result.success
        assert result.error_message == "menu locked by vendor"
        delta = services.delta.get_delta(delta.id)
        assert delta.submission_status == SubmissionStatus.FAILED.value
        assert delta.retry_count == 1
        message = services.dlq.get_message(result.dlq_message_id)
        assert message.event_type == DlqEventType.DELTA_SYNC.value
        assert message.error_code == "SubmissionRejectedError"
        assert not services.versioning.get_snapshot(delta.target_snapshot_id).is_synced

    async def test_invalid_payload_is_never_sent(self, services, scope, delivery):
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        delta.compressed_payload = compress_json({"metadata": {}, "added": []})
        services.delta.db.commit()

        result = await services.delta.submit_delta(delta.id, VENDOR)
        assert not result.success
        assert result.validation_errors == ["Delta payload has no delta id"]
        assert delivery.submissions == []
        message = services.dlq.get_message(result.dlq_message_id)
        assert message.event_type == DlqEventType.DELTA_VALIDATION.value
        assert message.failure_type == "Permanent"

    async def test_replay_submission_skips_dead_letter(self, services, scope, delivery):
        delivery.reject = "still locked"
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        result = await services.delta.submit_delta(delta.id, VENDOR, dead_letter=False)
        assert not result.success
        assert result.dlq_message_id is None

    async def test_large_payload_goes_out_in_batches(self, services, scope, delivery):
        services.delta.adaptive_threshold = 2
        services.delta.batch_processor = BatchProcessor(batch_size=2)
        delta = services.delta.generate_delta(scope, make_catalog(count=5)).delta

        result = await services.delta.submit_delta(delta.id, VENDOR)
        assert result.success
        assert result.batches == 3
        assert result.import_id == "imp-1,imp-2,imp-3"
        assert [s["metadata"]["batch_number"] for s in delivery.submissions] == [1, 2, 3]
        assert sum(len(s["added"]) for s in delivery.submissions) == 5

    async def test_batched_transport_error_fails_delta(self, services, scope, delivery):
        services.delta.adaptive_threshold = 2
        services.delta.batch_processor = BatchProcessor(batch_size=2)
        delivery.error = RuntimeError("vendor api down")
        delta = services.delta.generate_delta(scope, make_catalog(count=5)).delta

        result = await services.delta.submit_delta(delta.id, VENDOR)
        assert not result.success
        assert result.error_message == "vendor api down"
        assert services.delta.get_delta(delta.id).submission_status == SubmissionStatus.FAILED.value

    async def test_missing_delta(self, services):
        with pytest.raises(DeltaNotFoundError):
            await services.delta.submit_delta(404, VENDOR)


@pytest.mark.asyncio
class TestRetryDeltaSync:
    async def test_retry_waits_for_backoff(self, services, scope, delivery):
        delivery.reject = "menu locked"
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        await services.delta.submit_delta(delta.id, VENDOR)
        delivery.reject = None

        with pytest.raises(ValueError, match="retry not allowed before"):
            await services.delta.retry_delta_sync(delta.id)

        delta = services.delta.get_delta(delta.id)
        delta.last_attempt_at = utcnow() - timedelta(minutes=3)
        services.delta.db.commit()

        result = await services.delta.retry_delta_sync(delta.id)
        assert result.success
        assert services.delta.get_delta(delta.id).submission_status == SubmissionStatus.SENT.value

    async def test_sent_delta_cannot_be_retried(self, services, scope):
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        await services.delta.submit_delta(delta.id, VENDOR)
        with pytest.raises(ValueError, match="already sent"):
            await services.delta.retry_delta_sync(delta.id)

    async def test_retry_needs_a_vendor(self, services, scope):
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        with pytest.raises(ValueError, match="no vendor code"):
            await services.delta.retry_delta_sync(delta.id)


@pytest.mark.asyncio
class TestDeltaReporting:
    async def test_pending_and_statistics(self, services, scope, delivery):
        sent = services.delta.generate_delta(scope, make_catalog()).delta
        await services.delta.submit_delta(sent.id, VENDOR)
        delivery.reject = "menu locked"
        failed = services.delta.generate_delta(scope, make_catalog(p1={"price": 4.0})).delta
        await services.delta.submit_delta(failed.id, VENDOR)
        pending = services.delta.generate_delta(scope, make_catalog(p1={"price": 5.0})).delta

        assert [d.id for d in services.delta.get_pending_deltas(scope)] == [failed.id, pending.id]

        stats = services.delta.get_delta_statistics(scope)
        assert stats.total_deltas == 3
        assert (stats.sent, stats.failed, stats.pending) == (1, 1, 1)
        assert stats.products_added == 3
        assert stats.products_updated == 2
        assert stats.success_rate == 50.0

    async def test_cleanup_keeps_undelivered_deltas(self, services, scope):
        delta = services.delta.generate_delta(scope, make_catalog()).delta
        delta.created_at = utcnow() - timedelta(days=200)
        services.delta.db.commit()

        assert services.delta.cleanup_old_deltas(retention_days=90) == 0
