"""Adaptive batching and bounded-concurrency execution for large catalogs."""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from pydantic import BaseModel, Field

from menu_sync.utils.clock import utcnow

log = logging.getLogger(__name__)

ADAPTIVE_WINDOW = 3
ADAPTIVE_STEP = 5
HIGH_THROUGHPUT = 10.0
LOW_THROUGHPUT = 5.0
HIGH_SUCCESS_RATE = 0.95
LOW_SUCCESS_RATE = 0.80
OPTIMAL_MIN_SUCCESS_RATE = 0.90


class BatchOutcome(BaseModel):
    """What a caller-supplied batch operation reports back."""
    successful_items: int = 0
    failed_items: int = 0
    errors: List[str] = []


class BatchMetric(BaseModel):
    batch_size: int
    elapsed_seconds: float
    throughput: float
    success_rate: float
    recorded_at: datetime


class BatchProcessingResult(BaseModel):
    total_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    batches: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_seconds: float = 0.0
    overall_throughput: float = 0.0
    errors: List[str] = []
    error_message: Optional[str] = None


class AdaptiveBatchResult(BatchProcessingResult):
    optimal_batch_size: int = 0
    final_batch_size: int = 0
    batch_metrics: List[BatchMetric] = Field([], description="Per-batch size, timing and success rate")


class ParallelRunResult(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    total_seconds: float = 0.0
    throughput: float = 0.0
    errors: List[str] = []


BatchOperation = Callable[[List[Any]], Awaitable[BatchOutcome]]


def _throughput(items: int, seconds: float) -> float:
    return items / seconds if seconds > 0 else float(items)


class BatchProcessor:
    """Producer/consumer and adaptive batch execution."""

    def __init__(self, batch_size: int = 50, max_concurrency: int = 4):
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency

    async def process_batches(self, items: Sequence[Any], operation: BatchOperation,
                              batch_size: Optional[int] = None, max_concurrency: Optional[int] = None,
                              cancel_event: Optional[asyncio.Event] = None) -> BatchProcessingResult:
        """
        Chunk `items` into a bounded queue consumed by a fixed pool of workers.
        A batch whose operation raises counts all of its items as failed.
        """
        batch_size = batch_size or self.batch_size
        concurrency = max_concurrency or self.max_concurrency
        items = list(items)
        result = BatchProcessingResult(total_items=len(items), started_at=utcnow())
        started = time.perf_counter()
        queue: asyncio.Queue = asyncio.Queue(maxsize=concurrency * 2)

        log.info(f"Starting batch processing: items={len(items)}, concurrency={concurrency}, batch_size={batch_size}")

        async def produce():
            for batch_id, offset in enumerate(range(0, len(items), batch_size)):
                if cancel_event is not None and cancel_event.is_set():
                    log.info("Batch production cancelled")
                    break
                await queue.put((batch_id, items[offset:offset + batch_size]))
            for _ in range(concurrency):
                await queue.put(None)

        async def consume():
            while True:
                entry = await queue.get()
                if entry is None:
                    return
                batch_id, batch = entry
                batch_started = time.perf_counter()
                try:
                    outcome = await operation(batch)
                    result.processed_items += outcome.successful_items
                    result.failed_items += outcome.failed_items
                    result.errors.extend(outcome.errors)
                    log.debug(
                        f"Batch {batch_id} processed: items={len(batch)}, success={outcome.successful_items}, "
                        f"time={(time.perf_counter() - batch_started) * 1000:.0f}ms"
                    )
                except Exception as e:
                    log.error(f"Failed to process batch {batch_id}: {e}", exc_info=True)
                    result.failed_items += len(batch)
                    result.errors.append(f"Batch {batch_id}: {e}")
                result.batches += 1

        await asyncio.gather(produce(), *(consume() for _ in range(concurrency)))

        result.completed_at = utcnow()
        result.total_seconds = time.perf_counter() - started
        result.overall_throughput = _throughput(result.total_items, result.total_seconds)
        log.info(
            f"Batch processing completed: processed={result.processed_items}, failed={result.failed_items}, "
            f"throughput={result.overall_throughput:.1f}/sec"
        )
        return result

    def adapt_batch_size(self, window: Sequence[BatchMetric], current_size: int, initial_size: int) -> int:
        """Grow on fast, clean batches and shrink on slow or failing ones, within [initial/2, initial*2]."""
        if len(window) < ADAPTIVE_WINDOW:
            return current_size
        recent = list(window)[-ADAPTIVE_WINDOW:]
        avg_throughput = sum(m.throughput for m in recent) / len(recent)
        avg_success = sum(m.success_rate for m in recent) / len(recent)

        if avg_throughput > HIGH_THROUGHPUT and avg_success > HIGH_SUCCESS_RATE:
            return min(current_size + ADAPTIVE_STEP, initial_size * 2)
        if avg_throughput < LOW_THROUGHPUT or avg_success < LOW_SUCCESS_RATE:
            return max(current_size - ADAPTIVE_STEP, max(initial_size // 2, 1))
        return current_size

    @staticmethod
    def optimal_batch_size(metrics: Sequence[BatchMetric], default: int) -> int:
        candidates = [m for m in metrics if m.success_rate > OPTIMAL_MIN_SUCCESS_RATE]
        if not candidates:
            return default
        return max(candidates, key=lambda m: m.throughput).batch_size

    async def process_adaptive(self, items: Sequence[Any], operation: BatchOperation,
                               initial_batch_size: Optional[int] = None,
                               cancel_event: Optional[asyncio.Event] = None) -> AdaptiveBatchResult:
        """Run batches sequentially, resizing after each one from the rolling window."""
        initial = initial_batch_size or self.batch_size
        items = list(items)
        result = AdaptiveBatchResult(total_items=len(items), started_at=utcnow(), final_batch_size=initial)
        started = time.perf_counter()
        window = deque(maxlen=10)
        current_size = initial
        offset = 0

        log.info(f"Starting adaptive batch processing: items={len(items)}, initial_batch_size={initial}")

        while offset < len(items):
            if cancel_event is not None and cancel_event.is_set():
                log.info(f"Adaptive batch processing cancelled at item {offset}/{len(items)}")
                result.error_message = "Cancelled"
                break

            batch = items[offset:offset + current_size]
            batch_started = time.perf_counter()
            try:
                outcome = await operation(batch)
            except Exception as e:
                log.error(f"Adaptive batch at offset {offset} failed: {e}", exc_info=True)
                outcome = BatchOutcome(failed_items=len(batch), errors=[str(e)])
            elapsed = time.perf_counter() - batch_started

            metric = BatchMetric(
                batch_size=len(batch),
                elapsed_seconds=elapsed,
                throughput=_throughput(len(batch), elapsed),
                success_rate=outcome.successful_items / len(batch),
                recorded_at=utcnow(),
            )
            window.append(metric)
            result.batch_metrics.append(metric)
            result.processed_items += outcome.successful_items
            result.failed_items += outcome.failed_items
            result.errors.extend(outcome.errors)
            result.batches += 1
            offset += len(batch)

            current_size = self.adapt_batch_size(window, current_size, initial)
            log.debug(f"Batch done: size={len(batch)}, throughput={metric.throughput:.1f}/sec, next_size={current_size}")

        result.completed_at = utcnow()
        result.total_seconds = time.perf_counter() - started
        result.overall_throughput = _throughput(result.total_items, result.total_seconds)
        result.final_batch_size = current_size
        result.optimal_batch_size = self.optimal_batch_size(result.batch_metrics, initial)
        log.info(
            f"Adaptive batch processing completed: optimal_batch_size={result.optimal_batch_size}, "
            f"throughput={result.overall_throughput:.1f}/sec"
        )
        return result

    async def run_parallel(self, units: Sequence[Any], worker: Callable[[Any], Awaitable[Any]],
                           max_concurrency: Optional[int] = None) -> ParallelRunResult:
        """Run independent units (e.g. scopes) concurrently behind a semaphore."""
        semaphore = asyncio.Semaphore(max_concurrency or self.max_concurrency)
        result = ParallelRunResult(total=len(units))
        started = time.perf_counter()

        async def run_one(unit):
            async with semaphore:
                try:
                    await worker(unit)
                    result.succeeded += 1
                except Exception as e:
                    log.error(f"Parallel unit {unit} failed: {e}", exc_info=True)
                    result.failed += 1
                    result.errors.append(f"{unit}: {e}")

        await asyncio.gather(*(run_one(unit) for unit in units))
        result.total_seconds = time.perf_counter() - started
        result.throughput = _throughput(result.succeeded, result.total_seconds)
        log.info(f"Parallel run completed: {result.succeeded}/{result.total} succeeded")
        return result
