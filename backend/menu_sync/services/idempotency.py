"""Idempotency guard: at-most-one in-flight execution per (scope, key) plus result replay."""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from menu_sync.constants.sync_enums import IdempotencyOutcome, IdempotencyStatus
from menu_sync.exceptions import OperationInProgressError
from menu_sync.models.idempotency_record import IdempotencyRecord
from menu_sync.services.menu_hasher import compute_hash
from menu_sync.utils.clock import ensure_utc, utcnow

log = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "menu:lock:"
HASH_KEY_PREFIX = "menu:hash:"

MAX_CONFLICT_RETRIES = 3
CONFLICT_BACKOFF_SECONDS = 0.05
DUPLICATE_KEY_WAIT_SECONDS = 0.1
TERMINAL_RETENTION_DAYS = 30


def is_lock_key(key: str) -> bool:
    return key.startswith(LOCK_KEY_PREFIX)


def generate_menu_sync_key(account_id: str, branch_id: Optional[str], at: Optional[datetime] = None) -> str:
    """Hourly lock key: two scheduler ticks in the same hour map to the same key."""
    at = at or utcnow()
    raw = f"{account_id}:{branch_id or 'all'}:{at:%Y%m%d%H}"
    return LOCK_KEY_PREFIX + hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_menu_snapshot_key(account_id: str, branch_id: Optional[str], snapshot: Any) -> str:
    """Result-cache key derived from the exact content being processed."""
    raw = json.dumps({"account_id": account_id, "branch_id": branch_id or "all", "snapshot": snapshot}, default=str)
    return HASH_KEY_PREFIX + hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyDecision(BaseModel):
    """Tagged outcome of check_and_mark_started."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: IdempotencyOutcome
    scope_id: str
    key: str
    record: Optional[IdempotencyRecord] = None

    @property
    def can_proceed(self) -> bool:
        return self.outcome == IdempotencyOutcome.PROCEED

    def raise_if_in_progress(self):
        if self.outcome == IdempotencyOutcome.ALREADY_IN_PROGRESS:
            raise OperationInProgressError(self.scope_id, self.key)


class IdempotencyGuard:
    """
    Key-scoped lock and result cache backed by the idempotency_records table.

    Lock keys (prefix "menu:lock:") exist only for mutual exclusion and are
    deleted on any terminal outcome. Every other key caches its result: a
    Succeeded or FailedPermanent record blocks later attempts.
    """

    def __init__(self, db: Session):
        self.db = db

    def _get(self, scope_id: str, key: str) -> Optional[IdempotencyRecord]:
        return self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.scope_id == scope_id,
            IdempotencyRecord.idempotency_key == key
        ).first()

    def _decision(self, outcome: IdempotencyOutcome, scope_id: str, key: str, record=None) -> IdempotencyDecision:
        return IdempotencyDecision(outcome=outcome, scope_id=scope_id, key=key, record=record)

    def _insert_started(self, scope_id: str, key: str, retention_days: int) -> IdempotencyRecord:
        record = IdempotencyRecord.started(scope_id, key, retention_days)
        self.db.add(record)
        self.db.commit()
        return record

    def _replace_with_started(self, existing: IdempotencyRecord, retention_days: int) -> IdempotencyRecord:
        self.db.delete(existing)
        self.db.flush()
        return self._insert_started(existing.scope_id, existing.idempotency_key, retention_days)

    @staticmethod
    def _is_stale(record: IdempotencyRecord, stale_after: Optional[timedelta]) -> bool:
        if stale_after is None:
            return False
        return ensure_utc(record.last_processed_at) <= utcnow() - stale_after

    def _evaluate(self, existing: IdempotencyRecord, retention_days: int,
                  stale_after: Optional[timedelta]) -> IdempotencyDecision:
        scope_id, key = existing.scope_id, existing.idempotency_key
        status = existing.status
        lock = is_lock_key(key)

        if status == IdempotencyStatus.SUCCEEDED.value:
            if lock:
                log.debug(f"Releasing finished lock {key} for scope {scope_id}")
                return self._decision(IdempotencyOutcome.PROCEED, scope_id, key,
                                      self._replace_with_started(existing, retention_days))
            return self._decision(IdempotencyOutcome.ALREADY_SUCCEEDED, scope_id, key, existing)

        if status == IdempotencyStatus.STARTED.value:
            if self._is_stale(existing, stale_after):
                log.warning(f"Taking over stale Started record {key} for scope {scope_id} "
                            f"(last processed {existing.last_processed_at})")
                if lock:
                    record = self._replace_with_started(existing, retention_days)
                else:
                    existing.restart(retention_days)
                    self.db.commit()
                    record = existing
                return self._decision(IdempotencyOutcome.PROCEED, scope_id, key, record)
            return self._decision(IdempotencyOutcome.ALREADY_IN_PROGRESS, scope_id, key, existing)

        if status == IdempotencyStatus.FAILED_PERMANENT.value:
            if lock:
                log.debug(f"Releasing failed lock {key} for scope {scope_id}")
                return self._decision(IdempotencyOutcome.PROCEED, scope_id, key,
                                      self._replace_with_started(existing, retention_days))
            return self._decision(IdempotencyOutcome.ALREADY_FAILED_PERMANENT, scope_id, key, existing)

        raise ValueError(f"Unknown idempotency status '{status}' for key {key}")

    async def check_and_mark_started(self, scope_id: str, key: str, retention_days: int = 30,
                                     stale_after: Optional[timedelta] = None) -> IdempotencyDecision:
        """
        Claim (scope_id, key) for a new execution.

        Returns a decision whose outcome is Proceed only for the caller that
        now owns the Started record. Write conflicts are retried a few times
        with linear backoff; when they keep failing the caller is told the
        operation is in progress rather than being allowed through.
        """
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            try:
                existing = self._get(scope_id, key)
                if existing is None:
                    record = self._insert_started(scope_id, key, retention_days)
                    log.debug(f"Idempotency key {key} started for scope {scope_id}")
                    return self._decision(IdempotencyOutcome.PROCEED, scope_id, key, record)
                return self._evaluate(existing, retention_days, stale_after)

            except IntegrityError:
                # A concurrent caller inserted the same key first
                self.db.rollback()
                log.info(f"Duplicate idempotency key {key} for scope {scope_id}, re-reading winner")
                await asyncio.sleep(DUPLICATE_KEY_WAIT_SECONDS)
                winner = self._get(scope_id, key)
                if winner is None:
                    continue
                if winner.status == IdempotencyStatus.STARTED.value:
                    return self._decision(IdempotencyOutcome.ALREADY_IN_PROGRESS, scope_id, key, winner)
                return self._evaluate(winner, retention_days, stale_after)

            except (StaleDataError, OperationalError) as e:
                self.db.rollback()
                log.warning(f"Write conflict on idempotency key {key} (attempt {attempt}/{MAX_CONFLICT_RETRIES}): {e}")
                await asyncio.sleep(CONFLICT_BACKOFF_SECONDS * attempt)

        log.error(f"Idempotency key {key} for scope {scope_id} still conflicting after {MAX_CONFLICT_RETRIES} attempts")
        try:
            current = self._get(scope_id, key)
        except OperationalError:
            self.db.rollback()
            current = None
        return self._decision(IdempotencyOutcome.ALREADY_IN_PROGRESS, scope_id, key, current)

    def _finish(self, scope_id: str, key: str, status: IdempotencyStatus, result_hash: Optional[str] = None):
        record = self._get(scope_id, key)
        if is_lock_key(key):
            if record is not None:
                self.db.delete(record)
                self.db.commit()
                log.debug(f"Released lock {key} for scope {scope_id} ({status.value})")
            return None

        if record is None:
            record = IdempotencyRecord.with_status(scope_id, key, status, TERMINAL_RETENTION_DAYS, result_hash)
            self.db.add(record)
        else:
            record.mark(status, result_hash)
        self.db.commit()
        log.debug(f"Idempotency key {key} for scope {scope_id} marked {status.value}")
        return record

    def mark_succeeded(self, scope_id: str, key: str, result: Any = None) -> Optional[IdempotencyRecord]:
        result_hash = compute_hash(result) if result is not None else None
        return self._finish(scope_id, key, IdempotencyStatus.SUCCEEDED, result_hash)

    def mark_failed(self, scope_id: str, key: str) -> Optional[IdempotencyRecord]:
        return self._finish(scope_id, key, IdempotencyStatus.FAILED_PERMANENT)

    def release(self, scope_id: str, key: str):
        """Drop the record so the next attempt at the same key starts fresh."""
        record = self._get(scope_id, key)
        if record is not None:
            self.db.delete(record)
            self.db.commit()
            log.debug(f"Idempotency key {key} for scope {scope_id} released")

    def cleanup_expired_records(self) -> int:
        deleted = self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.expires_at < utcnow()
        ).delete(synchronize_session=False)
        self.db.commit()
        log.info(f"Idempotency cleanup: deleted {deleted} expired records")
        return deleted
