"""
Streaming Exceptions

All exceptions related to SSE streaming sessions

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import SSEBaseError


class StreamingError(SSEBaseError):
    """Base exception for streaming errors."""

    error_code = "STREAMING_ERROR"


class StreamClosedError(StreamingError):
    """
    Raised when a frame is written to a sink that has already been closed.

    Common causes:
    - Client disconnected and the response body generator was torn down
    - Session already finished and released its transport
    """

    error_code = "STREAM_CLOSED"
