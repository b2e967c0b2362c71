"""
Core Module

Foundational components: configuration, logging, exceptions, resilience
primitives and execution tracking.
"""

from .exceptions import (
    AdmissionCapacityError,
    AdmissionError,
    AdmissionQueueTimeoutError,
    CircuitBreakerOpenError,
    ConfigurationError,
    SSEBaseError,
    StreamingError,
    UpstreamError,
)
from .logging import (
    clear_thread_id,
    get_logger,
    get_thread_id,
    log_stage,
    set_thread_id,
    setup_logging,
)
from .observability.execution_tracker import (
    ExecutionTracker,
    StageExecution,
    get_tracker,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "set_thread_id",
    "get_thread_id",
    "clear_thread_id",
    "log_stage",
    "SSEBaseError",
    "ConfigurationError",
    "AdmissionError",
    "AdmissionCapacityError",
    "AdmissionQueueTimeoutError",
    "CircuitBreakerOpenError",
    "StreamingError",
    "UpstreamError",
    "ExecutionTracker",
    "StageExecution",
    "get_tracker",
]
