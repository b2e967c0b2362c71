"""
Exception Module

Structured exception hierarchy for the streaming chat proxy.
All exceptions are organized by theme for better maintainability and debuggability.

Module Structure:
-----------------
- **base.py**: SSEBaseError base class + ConfigurationError
- **admission.py**: Capacity errors (queue full, queue timeout, queue cleared)
- **upstream.py**: Upstream provider errors (HTTP, timeout, malformed, mid-stream)
- **circuit_breaker.py**: Circuit breaker exceptions
- **streaming.py**: SSE streaming exceptions

Usage:
------
```python
from src.core.exceptions import AdmissionCapacityError, UpstreamHTTPError

# Or import by category
from src.core.exceptions.upstream import UpstreamError, UpstreamTimeoutError
```

Author: System Architect
Date: 2025-12-08
"""

# Base exception
from src.core.exceptions.base import ConfigurationError, SSEBaseError

# Admission exceptions
from src.core.exceptions.admission import (
    AdmissionCapacityError,
    AdmissionError,
    AdmissionQueueClearedError,
    AdmissionQueueTimeoutError,
)

# Circuit breaker exceptions
from src.core.exceptions.circuit_breaker import (
    CircuitBreakerError,
    CircuitBreakerOpenError,
)

# Streaming exceptions
from src.core.exceptions.streaming import StreamClosedError, StreamingError

# Upstream exceptions
from src.core.exceptions.upstream import (
    UpstreamError,
    UpstreamHTTPError,
    UpstreamResponseError,
    UpstreamStreamError,
    UpstreamTimeoutError,
)

__all__ = [
    # Base
    "SSEBaseError",
    "ConfigurationError",
    # Admission
    "AdmissionError",
    "AdmissionCapacityError",
    "AdmissionQueueTimeoutError",
    "AdmissionQueueClearedError",
    # Circuit Breaker
    "CircuitBreakerError",
    "CircuitBreakerOpenError",
    # Streaming
    "StreamingError",
    "StreamClosedError",
    # Upstream
    "UpstreamError",
    "UpstreamHTTPError",
    "UpstreamTimeoutError",
    "UpstreamResponseError",
    "UpstreamStreamError",
]
