#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics collection for the chat proxy with:
- Admission queue depth, in-flight operations and rejections
- Circuit breaker states, failures and retry attempts
- Conversation cache lookups by outcome
- Frames written per kind, stream outcomes and durations
- Follow-up provenance

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Histogram buckets for latency percentiles

Recording is fire-and-forget: a failure inside the metrics layer is logged and
swallowed so it can never fail or delay a chat request.

Author: Senior Solution Architect
Date: 2025-12-05
"""

from collections.abc import Callable
from functools import wraps

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Admission metrics
ADMISSION_QUEUE_DEPTH = Gauge(
    'chat_admission_queue_depth',
    'Operations waiting for an admission slot'
)

ADMISSION_IN_FLIGHT = Gauge(
    'chat_admission_in_flight',
    'Operations currently holding an admission slot'
)

ADMISSION_DECISIONS = Counter(
    'chat_admission_decisions_total',
    'Admission decisions',
    ['decision']  # immediate, queued
)

ADMISSION_REJECTIONS = Counter(
    'chat_admission_rejections_total',
    'Admission rejections by reason',
    ['reason']  # QUEUE_FULL, QUEUE_TIMEOUT, QUEUE_CLEARED
)

ADMISSION_WAIT = Histogram(
    'chat_admission_wait_seconds',
    'Time spent queued before admission',
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    'chat_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['operation']
)

CIRCUIT_BREAKER_FAILURES = Counter(
    'chat_circuit_breaker_failures_total',
    'Total circuit breaker recorded failures',
    ['operation']
)

CIRCUIT_BREAKER_REJECTIONS = Counter(
    'chat_circuit_breaker_rejections_total',
    'Calls rejected because the circuit was open',
    ['operation']
)

RETRY_ATTEMPTS = Counter(
    'chat_upstream_retries_total',
    'Retry attempts against the upstream',
    ['operation']
)

UPSTREAM_CALLS = Counter(
    'chat_upstream_calls_total',
    'Guarded upstream calls by outcome',
    ['operation', 'outcome']  # success, failure, fallback
)

# Conversation cache metrics
CONVERSATION_LOOKUPS = Counter(
    'chat_conversation_lookups_total',
    'Conversation affinity cache lookups',
    ['outcome']  # hit, discovered, created, adopted, error
)

# Streaming metrics
FRAMES_SENT = Counter(
    'chat_frames_sent_total',
    'Outbound SSE frames written by kind',
    ['kind']
)

STREAM_OUTCOMES = Counter(
    'chat_streams_total',
    'Finished chat streams by outcome',
    ['outcome']  # completed, error, disconnected
)

STREAM_DURATION = Histogram(
    'chat_stream_duration_seconds',
    'Total stream duration',
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)
)

ACTIVE_STREAMS = Gauge(
    'chat_active_streams',
    'Stream sessions currently open'
)

MALFORMED_EVENTS = Counter(
    'chat_upstream_malformed_events_total',
    'Upstream stream events skipped because they could not be parsed'
)

# Follow-up metrics
FOLLOW_UP_RESULTS = Counter(
    'chat_follow_up_results_total',
    'Follow-up reconciliation results by provenance',
    ['provenance']
)

# App info
APP_INFO = Info(
    'chat_app',
    'Application information'
)


def _fire_and_forget(method: Callable) -> Callable:
    """Never let a metrics failure propagate into the request path."""

    @wraps(method)
    def wrapper(*args, **kwargs):
        try:
            method(*args, **kwargs)
        except Exception as e:
            logger.warning("metrics_record_failed", metric=method.__name__, error=str(e))

    return wrapper


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.record_queue_depth(3)
        metrics.record_frame("delta-answer")
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        """Initialize metrics collector."""
        self.settings = get_settings()

        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Admission Metrics
    # =========================================================================

    @_fire_and_forget
    def record_queue_depth(self, depth: int) -> None:
        """Record current admission queue depth."""
        ADMISSION_QUEUE_DEPTH.set(depth)

    @_fire_and_forget
    def record_in_flight(self, count: int) -> None:
        """Record operations currently executing."""
        ADMISSION_IN_FLIGHT.set(count)

    @_fire_and_forget
    def record_admission(self, decision: str) -> None:
        """Record whether an operation ran immediately or was queued."""
        ADMISSION_DECISIONS.labels(decision=decision).inc()

    @_fire_and_forget
    def record_admission_rejection(self, reason: str) -> None:
        """Record a capacity rejection."""
        ADMISSION_REJECTIONS.labels(reason=reason).inc()

    @_fire_and_forget
    def record_admission_wait(self, wait_seconds: float) -> None:
        """Record queue wait of an admitted operation."""
        ADMISSION_WAIT.observe(wait_seconds)

    # =========================================================================
    # Circuit Breaker / Retry Metrics
    # =========================================================================

    @_fire_and_forget
    def set_circuit_state(self, operation: str, state: str) -> None:
        """Set circuit breaker state."""
        state_value = {"closed": 0, "half_open": 1, "open": 2}.get(state, 0)
        CIRCUIT_BREAKER_STATE.labels(operation=operation).set(state_value)

    @_fire_and_forget
    def record_circuit_failure(self, operation: str) -> None:
        """Record circuit breaker failure."""
        CIRCUIT_BREAKER_FAILURES.labels(operation=operation).inc()

    @_fire_and_forget
    def record_circuit_rejection(self, operation: str) -> None:
        """Record a call rejected by an open circuit."""
        CIRCUIT_BREAKER_REJECTIONS.labels(operation=operation).inc()

    @_fire_and_forget
    def record_retry(self, operation: str) -> None:
        """Record a retry attempt."""
        RETRY_ATTEMPTS.labels(operation=operation).inc()

    @_fire_and_forget
    def record_upstream_call(self, operation: str, outcome: str) -> None:
        """Record the outcome of a guarded upstream call."""
        UPSTREAM_CALLS.labels(operation=operation, outcome=outcome).inc()

    # =========================================================================
    # Conversation Cache Metrics
    # =========================================================================

    @_fire_and_forget
    def record_conversation_lookup(self, outcome: str) -> None:
        """Record how a conversation handle was resolved."""
        CONVERSATION_LOOKUPS.labels(outcome=outcome).inc()

    # =========================================================================
    # Streaming Metrics
    # =========================================================================

    @_fire_and_forget
    def record_frame(self, kind: str, count: int = 1) -> None:
        """Record frames written to a client transport."""
        FRAMES_SENT.labels(kind=kind).inc(count)

    @_fire_and_forget
    def record_stream_outcome(self, outcome: str, duration_seconds: float | None = None) -> None:
        """Record a finished stream."""
        STREAM_OUTCOMES.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            STREAM_DURATION.observe(duration_seconds)

    @_fire_and_forget
    def increment_streams(self) -> None:
        """A stream session opened."""
        ACTIVE_STREAMS.inc()

    @_fire_and_forget
    def decrement_streams(self) -> None:
        """A stream session closed."""
        ACTIVE_STREAMS.dec()

    @_fire_and_forget
    def record_malformed_event(self) -> None:
        """Record an upstream event skipped as unparseable."""
        MALFORMED_EVENTS.inc()

    # =========================================================================
    # Follow-up Metrics
    # =========================================================================

    @_fire_and_forget
    def record_follow_up(self, provenance: str) -> None:
        """Record follow-up reconciliation provenance."""
        FOLLOW_UP_RESULTS.labels(provenance=provenance).inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
