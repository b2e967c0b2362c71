"""
Circuit Breaker and Retry Layer for Upstream Calls.

This module guards every upstream operation class (conversation creation,
conversation listing, chat stream opening) with classified retries and a
three-state circuit breaker.

MECHANISM OF ACTION:
-------------------
1.  **Process-local State**:
    One `CircuitBreaker` per operation class, held by `CircuitBreakerManager`.
    State lives in memory; every request of the process shares it.

2.  **State Transitions** (the only paths that exist):
    - **CLOSED → OPEN**: consecutive failures reach `failure_threshold`.
    - **OPEN → HALF-OPEN**: the first call made once `reset_timeout` seconds have
      elapsed since the last failure. Before that, calls fail fast with
      `CircuitBreakerOpenError` without touching the upstream.
    - **HALF-OPEN → CLOSED**: `success_threshold` consecutive successes. One
      probe call is in flight at a time; concurrent calls fail fast meanwhile.
    - **HALF-OPEN → OPEN**: any failure.

3.  **ResilientCall Orchestration**:
    a.  **Check Circuit**: open → fail immediately, no retry, no fallback.
    b.  **Execute with Retry** (tenacity): transient errors are retried up to
        `max_retries` total attempts; the delay before attempt n+1 is
        `min(base * factor^(n-1), max_delay)` with ±25% jitter, recomputed
        for every attempt.
    c.  **Record Result**: the whole retry loop counts as ONE breaker call.
        Success resets the failure count; a final transient failure is
        recorded as a breaker failure. Permanent errors (4xx, malformed
        responses) are surfaced as-is and leave the breaker untouched.
    d.  **Fallback**: optional; invoked with the final error and the caller's
        context. If the fallback itself fails the ORIGINAL error is raised.
"""

import asyncio
import logging
import random
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from src.core.config.constants import CircuitState
from src.core.config.settings import get_settings
from src.core.exceptions import CircuitBreakerOpenError, UpstreamError
from src.core.exceptions.upstream import TRANSIENT_STATUS_CODES
from src.core.logging.logger import get_logger, log_stage
from src.core.observability.execution_tracker import get_tracker
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

# Tenacity needs a std lib logger
std_logger = logging.getLogger(__name__)


# ============================================================================
# Error Classification
# ============================================================================


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying an upstream failure."""

    retryable: bool
    category: str  # "network", "http", "timeout", "permanent"


def classify_error(error: BaseException) -> ErrorClassification:
    """
    Default classification of upstream failures.

    - network-level errors (connection reset/refused, DNS failure, timeouts) → retryable
    - HTTP 5xx, 429 and 408 → retryable
    - any other 4xx, malformed responses and everything else → not retryable
    """
    if isinstance(error, UpstreamError):
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            return ErrorClassification(error.is_transient, "http")
        return ErrorClassification(error.is_transient, "timeout" if error.is_transient else "permanent")

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return ErrorClassification(
            status_code >= 500 or status_code in TRANSIENT_STATUS_CODES, "http"
        )

    if isinstance(error, httpx.TimeoutException | TimeoutError):
        return ErrorClassification(True, "timeout")

    if isinstance(error, httpx.TransportError | ConnectionError | socket.gaierror):
        return ErrorClassification(True, "network")

    return ErrorClassification(False, "permanent")


# ============================================================================
# Backoff
# ============================================================================


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_factor: float = 2.0,
    jitter_ratio: float = 0.25,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay (seconds) to wait after failed attempt number ``attempt`` (1-based).

    The un-jittered delay is non-decreasing in ``attempt`` and capped at
    ``max_delay``; jitter then moves it by up to ±``jitter_ratio`` of itself.
    """
    exponential = base_delay * (backoff_factor ** max(attempt - 1, 0))
    delay = min(exponential, max_delay)
    if jitter_ratio:
        delay += delay * jitter_ratio * (rng() * 2 - 1)
    return max(delay, 0.0)


class wait_backoff_with_jitter(wait_base):
    """Tenacity wait strategy backed by compute_backoff_delay."""

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        backoff_factor: float = 2.0,
        jitter_ratio: float = 0.25,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter_ratio = jitter_ratio

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff_delay(
            retry_state.attempt_number,
            self.base_delay,
            self.max_delay,
            self.backoff_factor,
            self.jitter_ratio,
        )


# ============================================================================
# Circuit Breaker
# ============================================================================


class CircuitBreaker:
    """
    In-process three-state circuit breaker for one upstream operation class.

    Mutations happen on the event loop without awaiting in between, so the
    counters never interleave across concurrent requests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
        success_threshold: int | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings().circuit_breaker
        self.name = name
        self.failure_threshold = failure_threshold or settings.CB_FAILURE_THRESHOLD
        self.reset_timeout = reset_timeout if reset_timeout is not None else settings.CB_RECOVERY_TIMEOUT
        self.success_threshold = success_threshold or settings.CB_SUCCESS_THRESHOLD
        self._metrics = metrics or get_metrics_collector()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        log_stage(
            logger,
            "CB.2",
            "Circuit state changed",
            level="warning" if new_state == CircuitState.OPEN else "info",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )
        self._metrics.set_circuit_state(self.name, new_state.value)

    def _seconds_until_reset(self) -> float:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        return max(self.reset_timeout - (self._clock() - self._last_failure_time), 0.0)

    def allow_request(self) -> bool:
        """
        Decide whether a call may proceed.

        An OPEN breaker whose reset timeout has elapsed moves to HALF_OPEN here
        and lets the call through. In HALF_OPEN only one probe call is in
        flight at a time; the others fail fast until it reports back.
        """
        if self._state == CircuitState.OPEN:
            if self._seconds_until_reset() > 0:
                return False
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)
        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
        return True

    def release_probe(self) -> None:
        """Free the HALF_OPEN probe slot for a call that recorded no outcome."""
        self._probe_in_flight = False

    def record_success(self) -> None:
        """Reset failures; in HALF_OPEN count towards closing."""
        self._failure_count = 0
        self._probe_in_flight = False
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._success_count = 0
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Count a failure; open at the threshold, or immediately from HALF_OPEN."""
        self._failure_count += 1
        self._last_failure_time = self._clock()
        self._probe_in_flight = False
        self._metrics.record_circuit_failure(self.name)

        if self._state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._transition(CircuitState.OPEN)
        elif self._failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)
        else:
            logger.warning(
                "Circuit recorded failure",
                circuit=self.name,
                failures=self._failure_count,
                threshold=self.failure_threshold,
            )

    def reset(self) -> None:
        """Force the breaker back to CLOSED with clean counters."""
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self._probe_in_flight = False
        self._transition(CircuitState.CLOSED)

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "probe_in_flight": self._probe_in_flight,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "reset_timeout": self.reset_timeout,
            "time_until_reset": round(self._seconds_until_reset(), 3),
        }


# ============================================================================
# Manager & Factory
# ============================================================================


class CircuitBreakerManager:
    """Registry of circuit breakers, one per upstream operation class."""

    def __init__(self, metrics: MetricsCollector | None = None, clock: Callable[[], float] = time.monotonic):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics = metrics
        self._clock = clock

    def get_breaker(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, metrics=self._metrics, clock=self._clock)
        return self._breakers[name]

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def get_health_status(self) -> dict[str, Any]:
        """Unhealthy if any breaker is open, degraded if any is half-open."""
        states = {breaker.state for breaker in self._breakers.values()}
        if CircuitState.OPEN in states:
            status = "unhealthy"
        elif CircuitState.HALF_OPEN in states:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "breakers": self.get_all_stats()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


# Global Instance
_cb_manager: CircuitBreakerManager | None = None


def get_circuit_breaker_manager() -> CircuitBreakerManager:
    global _cb_manager
    if _cb_manager is None:
        _cb_manager = CircuitBreakerManager()
    return _cb_manager


# ============================================================================
# Resilient Call Wrapper
# ============================================================================


class ResilientCall:
    """
    Main entry point for guarded upstream calls.
    Computes: Circuit Breaker Check -> Retry Logic -> Execution -> State Update -> Fallback
    """

    def __init__(
        self,
        operation_name: str,
        breaker: CircuitBreaker | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        backoff_factor: float | None = None,
        jitter_ratio: float | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        retry_settings = get_settings().retry
        self.operation_name = operation_name
        self.breaker = breaker or get_circuit_breaker_manager().get_breaker(operation_name)
        self.max_retries = max_retries or retry_settings.RETRY_MAX_ATTEMPTS
        self._wait = wait_backoff_with_jitter(
            base_delay=retry_settings.RETRY_BASE_DELAY if base_delay is None else base_delay,
            max_delay=retry_settings.RETRY_MAX_DELAY if max_delay is None else max_delay,
            backoff_factor=backoff_factor or retry_settings.RETRY_BACKOFF_FACTOR,
            jitter_ratio=retry_settings.RETRY_JITTER_RATIO if jitter_ratio is None else jitter_ratio,
        )
        self._metrics = metrics or get_metrics_collector()
        self._sleep = sleep
        self._tracker = get_tracker()
        self._log_before_sleep = before_sleep_log(std_logger, logging.WARNING)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self._log_before_sleep(retry_state)
        self._metrics.record_retry(self.operation_name)

    def _build_retrying(self, classify: Callable[[BaseException], ErrorClassification]) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._wait,
            retry=retry_if_exception(lambda e: classify(e).retryable),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[Any]],
        classify: Callable[[BaseException], ErrorClassification],
    ) -> Any:
        # operation may be a lambda returning a coroutine
        async for attempt in self._build_retrying(classify):
            with attempt:
                result = await operation()
        return result

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        classify: Callable[[BaseException], ErrorClassification] | None = None,
        *,
        fallback: Callable[[BaseException, dict[str, Any]], Awaitable[Any]] | None = None,
        context: dict[str, Any] | None = None,
        thread_id: str | None = None,
    ) -> Any:
        classify = classify or classify_error
        context = context or {}

        # 1. Circuit Breaker Check (Fail Fast)
        if not self.breaker.allow_request():
            self._metrics.record_circuit_rejection(self.operation_name)
            raise CircuitBreakerOpenError(
                message=f"Circuit open for {self.operation_name}",
                thread_id=thread_id,
                details={
                    "operation": self.operation_name,
                    "retry_after": self.breaker.get_status()["time_until_reset"],
                },
            )

        probing = self.breaker.state == CircuitState.HALF_OPEN
        start_time = time.perf_counter()

        try:
            # 2. Execute with Retry Logic
            if thread_id:
                with self._tracker.track_stage("CB", f"Call {self.operation_name}", thread_id):
                    result = await self._attempt(operation, classify)
            else:
                result = await self._attempt(operation, classify)

        except asyncio.CancelledError:
            if probing:
                self.breaker.release_probe()
            raise

        except Exception as error:
            # 3. Failure -> Record in Circuit (transient failures only)
            classification = classify(error)
            if classification.retryable:
                self.breaker.record_failure()
            elif probing:
                self.breaker.release_probe()

            logger.error(
                "Resilient call failed",
                operation=self.operation_name,
                error=str(error),
                error_type=type(error).__name__,
                category=classification.category,
                **context,
            )
            self._metrics.record_upstream_call(self.operation_name, "failure")

            if fallback is None:
                raise

            # 4. Fallback -> original error wins if the fallback fails too
            try:
                result = await fallback(error, context)
            except Exception as fallback_error:
                logger.error(
                    "Fallback failed, re-raising original error",
                    operation=self.operation_name,
                    fallback_error=str(fallback_error),
                    original_error=str(error),
                )
                raise error from None

            self._metrics.record_upstream_call(self.operation_name, "fallback")
            return result

        # 5. Success -> Reset Circuit
        self.breaker.record_success()
        self._metrics.record_upstream_call(self.operation_name, "success")
        logger.debug(
            "Call succeeded",
            operation=self.operation_name,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return result

    async def call(self, func: Callable[..., Awaitable[Any]], *args, thread_id: str | None = None, **kwargs) -> Any:
        """Convenience wrapper: ``await resilient.call(client.create_conversation, opts)``."""

        async def operation():
            return await func(*args, **kwargs)

        return await self.execute(operation, thread_id=thread_id)
