import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from menu_sync.constants.sync_enums import IdempotencyOutcome, IdempotencyStatus
from menu_sync.database import SessionLocal
from menu_sync.exceptions import OperationInProgressError
from menu_sync.models.idempotency_record import IdempotencyRecord
from menu_sync.services.idempotency import (
    DUPLICATE_KEY_WAIT_SECONDS,
    HASH_KEY_PREFIX,
    LOCK_KEY_PREFIX,
    MAX_CONFLICT_RETRIES,
    IdempotencyGuard,
    generate_menu_snapshot_key,
    generate_menu_sync_key,
)

SCOPE_ID = "acct-1/branch-1/all"


def test_sync_key_is_hourly():
    at = datetime(2026, 1, 1, 10, 5, tzinfo=timezone.utc)
    same_hour = generate_menu_sync_key("acct-1", "branch-1", at)
    assert same_hour.startswith(LOCK_KEY_PREFIX)
    assert same_hour == generate_menu_sync_key("acct-1", "branch-1", at + timedelta(minutes=50))
    assert same_hour != generate_menu_sync_key("acct-1", "branch-1", at + timedelta(hours=1))
    assert same_hour != generate_menu_sync_key("acct-1", None, at)

def test_snapshot_key_follows_content():
    key = generate_menu_snapshot_key("acct-1", None, {"hash": "abc"})
    assert key.startswith(HASH_KEY_PREFIX)
    assert key == generate_menu_snapshot_key("acct-1", None, {"hash": "abc"})
    assert key != generate_menu_snapshot_key("acct-1", None, {"hash": "abd"})


@pytest.mark.asyncio
class TestIdempotencyGuard:
    async def test_first_call_proceeds(self, db):
        decision = await IdempotencyGuard(db).check_and_mark_started(SCOPE_ID, "menu:hash:1")
        assert decision.can_proceed
        assert decision.record.status == IdempotencyStatus.STARTED.value

    async def test_second_call_is_in_progress(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        assert decision.outcome == IdempotencyOutcome.ALREADY_IN_PROGRESS
        with pytest.raises(OperationInProgressError):
            decision.raise_if_in_progress()

    async def test_concurrent_claims_admit_exactly_one(self, db):
        guard = IdempotencyGuard(db)
        decisions = await asyncio.gather(*(guard.check_and_mark_started(SCOPE_ID, "menu:hash:c") for _ in range(5)))
        outcomes = [d.outcome for d in decisions]
        assert outcomes.count(IdempotencyOutcome.PROCEED) == 1
        assert outcomes.count(IdempotencyOutcome.ALREADY_IN_PROGRESS) == 4

    async def test_succeeded_hash_key_is_cached(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        record = guard.mark_succeeded(SCOPE_ID, "menu:hash:1", {"delta_id": 1})
        assert record.result_hash is not None

        decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        assert decision.outcome == IdempotencyOutcome.ALREADY_SUCCEEDED

    async def test_failed_hash_key_blocks(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        guard.mark_failed(SCOPE_ID, "menu:hash:1")
        decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        assert decision.outcome == IdempotencyOutcome.ALREADY_FAILED_PERMANENT

    async def test_lock_key_is_released_on_finish(self, db):
        guard = IdempotencyGuard(db)
        key = generate_menu_sync_key("acct-1", "branch-1")
        await guard.check_and_mark_started(SCOPE_ID, key)
        assert guard.mark_succeeded(SCOPE_ID, key) is None
        assert db.query(IdempotencyRecord).count() == 0

        decision = await guard.check_and_mark_started(SCOPE_ID, key)
        assert decision.can_proceed

    async def test_finished_lock_row_is_reclaimed(self, db):
        key = generate_menu_sync_key("acct-1", "branch-1")
        db.add(IdempotencyRecord.with_status(SCOPE_ID, key, IdempotencyStatus.SUCCEEDED))
        db.commit()

        decision = await IdempotencyGuard(db).check_and_mark_started(SCOPE_ID, key)
        assert decision.can_proceed
        assert decision.record.status == IdempotencyStatus.STARTED.value
        assert db.query(IdempotencyRecord).count() == 1

    async def test_stale_started_record_is_taken_over(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        record = db.query(IdempotencyRecord).one()
        record.last_processed_at = datetime.now(timezone.utc) - timedelta(hours=2)
        db.commit()

        fresh = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1", stale_after=timedelta(minutes=30))
        assert fresh.can_proceed

    async def test_recent_started_record_is_not_stale(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1", stale_after=timedelta(minutes=30))
        assert decision.outcome == IdempotencyOutcome.ALREADY_IN_PROGRESS

    async def test_scopes_are_independent(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        decision = await guard.check_and_mark_started("acct-2/all/all", "menu:hash:1")
        assert decision.can_proceed

    async def test_cleanup_removes_expired(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:old")
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:new")
        old = db.query(IdempotencyRecord).filter(IdempotencyRecord.idempotency_key == "menu:hash:old").one()
        old.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        db.commit()

        assert guard.cleanup_expired_records() == 1
        assert db.query(IdempotencyRecord).count() == 1

    async def test_released_key_proceeds_again(self, db):
        guard = IdempotencyGuard(db)
        await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        guard.release(SCOPE_ID, "menu:hash:1")

        assert db.query(IdempotencyRecord).count() == 0
        decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")
        assert decision.can_proceed


@pytest.mark.asyncio
class TestIdempotencyConflicts:
    async def test_duplicate_insert_rereads_the_winner(self, db):
        other = SessionLocal()
        try:
            winner = await IdempotencyGuard(other).check_and_mark_started(SCOPE_ID, "menu:hash:1")
            assert winner.can_proceed
        finally:
            other.close()

        guard = IdempotencyGuard(db)
        lookup = guard._get
        calls = []

        def miss_first_lookup(scope_id, key):
            calls.append(key)
            return None if len(calls) == 1 else lookup(scope_id, key)

        with patch.object(guard, "_get", side_effect=miss_first_lookup), \
                patch("menu_sync.services.idempotency.asyncio.sleep", new_callable=AsyncMock) as sleep:
            decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")

        assert decision.outcome == IdempotencyOutcome.ALREADY_IN_PROGRESS
        assert decision.record.status == IdempotencyStatus.STARTED.value
        sleep.assert_awaited_once_with(DUPLICATE_KEY_WAIT_SECONDS)
        assert db.query(IdempotencyRecord).count() == 1

    async def test_write_conflicts_give_up_as_in_progress(self, db):
        guard = IdempotencyGuard(db)
        locked = OperationalError("INSERT INTO idempotency_records", {}, Exception("database is locked"))

        with patch.object(guard, "_insert_started", side_effect=locked) as insert, \
                patch("menu_sync.services.idempotency.asyncio.sleep", new_callable=AsyncMock) as sleep:
            decision = await guard.check_and_mark_started(SCOPE_ID, "menu:hash:1")

        assert decision.outcome == IdempotencyOutcome.ALREADY_IN_PROGRESS
        assert not decision.can_proceed
        assert decision.record is None
        assert insert.call_count == MAX_CONFLICT_RETRIES
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == pytest.approx([0.05, 0.10, 0.15])

