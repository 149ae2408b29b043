"""Retry, circuit breaker and timeout policy for outbound submission calls."""

import asyncio
import logging
import random
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from menu_sync.exceptions import CircuitOpenError

log = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MESSAGE_MARKERS = ("timeout", "timed out", "connection", "rate limit")
RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)


def is_transient_error(error: BaseException) -> bool:
    """Network, timeout and connection failures are transient; everything else is permanent."""
    if isinstance(error, CircuitOpenError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


class RetryPolicyOptions(BaseModel):
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    circuit_failure_threshold: int = 5
    circuit_open_seconds: float = 60.0
    circuit_sampling_seconds: float = 10.0
    circuit_failure_ratio: float = 0.5
    operation_timeout: float = 600.0
    http_timeout: float = 300.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicyOptions":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_factor=settings.retry_jitter_factor,
            circuit_failure_threshold=settings.circuit_failure_threshold,
            circuit_open_seconds=settings.circuit_open_seconds,
            circuit_sampling_seconds=settings.circuit_sampling_seconds,
            operation_timeout=settings.operation_timeout_seconds,
            http_timeout=settings.http_timeout_seconds,
        )


class CircuitState(str, Enum):
    CLOSED = "Closed"
    OPEN = "Open"
    HALF_OPEN = "HalfOpen"


class CircuitBreaker:
    """
    Failure-ratio circuit breaker over a sliding sampling window.

    Opens when at least `failure_threshold` calls were sampled inside the
    window and the failure ratio reaches `failure_ratio`. After `open_seconds`
    one probe call is let through; success closes the circuit, failure
    re-opens it.
    """

    def __init__(self, failure_threshold: int = 5, open_seconds: float = 60.0,
                 sampling_seconds: float = 10.0, failure_ratio: float = 0.5,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self.sampling_seconds = sampling_seconds
        self.failure_ratio = failure_ratio
        self._clock = clock
        self._samples = deque()  # (timestamp, succeeded)
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.open_seconds:
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            log.info("Circuit half-open, allowing a probe call")
        return self._state

    def can_execute(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True
        return False

    def record_success(self):
        if self._state == CircuitState.HALF_OPEN:
            log.info("Circuit probe succeeded, closing circuit")
            self._reset()
            return
        self._add_sample(True)

    def record_failure(self):
        if self._state == CircuitState.HALF_OPEN:
            log.warning("Circuit probe failed, re-opening circuit")
            self._open()
            return
        self._add_sample(False)
        failures = sum(1 for _, ok in self._samples if not ok)
        if len(self._samples) >= self.failure_threshold and failures / len(self._samples) >= self.failure_ratio:
            log.warning(
                f"Circuit opened: {failures}/{len(self._samples)} failures in the last {self.sampling_seconds}s"
            )
            self._open()

    def _add_sample(self, succeeded: bool):
        now = self._clock()
        self._samples.append((now, succeeded))
        while self._samples and now - self._samples[0][0] > self.sampling_seconds:
            self._samples.popleft()

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        self._samples.clear()

    def _reset(self):
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._probe_in_flight = False
        self._samples.clear()


class RetryPolicy:
    """Per-attempt HTTP timeout, exponential backoff with jitter, circuit breaker and overall timeout."""

    def __init__(self, options: Optional[RetryPolicyOptions] = None, breaker: Optional[CircuitBreaker] = None):
        self.options = options or RetryPolicyOptions()
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.options.circuit_failure_threshold,
            open_seconds=self.options.circuit_open_seconds,
            sampling_seconds=self.options.circuit_sampling_seconds,
            failure_ratio=self.options.circuit_failure_ratio,
        )

    def compute_delay(self, attempt: int) -> float:
        """base * multiplier^(attempt-1) plus up to jitter_factor of that, capped at max_delay."""
        exponential = self.options.base_delay * (self.options.backoff_multiplier ** (attempt - 1))
        jitter = random.uniform(0, exponential * self.options.jitter_factor)
        return min(exponential + jitter, self.options.max_delay)

    def _wait(self, retry_state) -> float:
        return self.compute_delay(retry_state.attempt_number)

    @staticmethod
    def _should_retry(error: BaseException) -> bool:
        return is_transient_error(error) and not isinstance(error, CircuitOpenError)

    def _before_sleep(self, retry_state):
        error = retry_state.outcome.exception()
        log.warning(
            f"Attempt {retry_state.attempt_number}/{self.options.max_attempts} failed with "
            f"{type(error).__name__}: {error}. Retrying in {retry_state.next_action.sleep:.2f}s"
        )

    async def execute(self, operation: Callable[[], Awaitable[T]], operation_name: str = "operation") -> T:
        async def attempt():
            if not self.breaker.can_execute():
                raise CircuitOpenError(f"Circuit open, skipping {operation_name}")
            try:
                result = await asyncio.wait_for(operation(), timeout=self.options.http_timeout)
            except Exception:
                self.breaker.record_failure()
                raise
            self.breaker.record_success()
            return result

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.options.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        log.trace(f"Executing {operation_name} with up to {self.options.max_attempts} attempts")
        return await asyncio.wait_for(retrying(attempt), timeout=self.options.operation_timeout)
