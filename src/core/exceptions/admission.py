"""
Admission Control Exceptions

Capacity errors raised by the admission controller. They are surfaced to the
caller immediately and never retried.

Author: System Architect
Date: 2025-12-08
"""

from src.core.config.constants import (
    ADMISSION_QUEUE_CLEARED,
    ADMISSION_QUEUE_FULL,
    ADMISSION_QUEUE_TIMEOUT,
)
from src.core.exceptions.base import SSEBaseError


class AdmissionError(SSEBaseError):
    """Base exception for admission (capacity) errors."""

    error_code = "ADMISSION_ERROR"


class AdmissionCapacityError(AdmissionError):
    """
    Raised when the admission queue is already at its bound.

    The submission is rejected without being queued. Clients should back off
    and retry later.
    """

    error_code = ADMISSION_QUEUE_FULL


class AdmissionQueueTimeoutError(AdmissionError):
    """
    Raised when a queued operation waited longer than its timeout.

    The operation is removed from the queue and never executed.
    """

    error_code = ADMISSION_QUEUE_TIMEOUT


class AdmissionQueueClearedError(AdmissionError):
    """Raised for every queued operation when the queue is cleared (shutdown)."""

    error_code = ADMISSION_QUEUE_CLEARED
