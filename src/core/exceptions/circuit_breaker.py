"""
Circuit Breaker Exceptions

All exceptions related to circuit breaker operations

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import SSEBaseError


class CircuitBreakerError(SSEBaseError):
    """Base exception for circuit breaker errors."""

    error_code = "CIRCUIT_BREAKER_ERROR"


class CircuitBreakerOpenError(CircuitBreakerError):
    """
    Raised when a circuit breaker is open (fail fast).

    The guarded upstream operation was not attempted. The breaker moves to
    half-open on the first call made after the reset timeout has elapsed since
    its last recorded failure.

    Details carry ``operation`` and ``retry_after`` (seconds until that point).
    """

    error_code = "CIRCUIT_OPEN"
