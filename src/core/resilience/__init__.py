"""
Resilience Module - Core Resilience Components

This module provides the two guards every upstream-bound operation passes:

ARCHITECTURE:
=============
Layer 1: Admission Controller (this module)
    - Bounds in-flight, per-second and per-minute load on the upstream
    - Bounded priority queue (high before normal) with per-request timeout
    - Fails fast with capacity errors beyond the queue bound

Layer 2: Retry + Circuit Breaker (this module)
    - Classifies upstream failures as transient or permanent
    - Retries transient failures with capped exponential backoff and jitter
    - One three-state breaker per upstream operation class

COMPONENTS:
===========
- AdmissionController: Layer 1 - load bounding
- ResilientCall: Layer 2 - guarded upstream call
- CircuitBreaker / CircuitBreakerManager: Layer 2 - breaker state

Author: Senior Solution Architect
Date: 2025-12-09
"""

# Layer 1: Admission
from .admission_controller import AdmissionController, QueuedOperation

# Layer 2: Retry + Circuit Breaker
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    ErrorClassification,
    ResilientCall,
    classify_error,
    compute_backoff_delay,
    get_circuit_breaker_manager,
)

__all__ = [
    # Layer 1
    "AdmissionController",
    "QueuedOperation",
    # Layer 2
    "CircuitBreaker",
    "CircuitBreakerManager",
    "ErrorClassification",
    "ResilientCall",
    "classify_error",
    "compute_backoff_delay",
    "get_circuit_breaker_manager",
]
