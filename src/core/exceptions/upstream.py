"""
Upstream Provider Exceptions

All exceptions related to calls against the upstream conversational-AI
provider (Coze). The retry layer classifies them:

- transient: network failures, timeouts, HTTP 5xx / 429 / 408 → retried
- permanent: other HTTP 4xx, non-zero API codes, malformed payloads → surfaced as-is

Author: System Architect
Date: 2025-12-08
"""

from typing import Any

from src.core.exceptions.base import SSEBaseError

TRANSIENT_STATUS_CODES = frozenset({408, 429})


class UpstreamError(SSEBaseError):
    """Base exception for upstream provider errors."""

    error_code = "UPSTREAM_ERROR"

    @property
    def is_transient(self) -> bool:
        return False


class UpstreamHTTPError(UpstreamError):
    """
    Raised when the upstream answers with an error status or a non-zero API code.

    Attributes:
        status_code: HTTP status returned by the upstream
        code: Upstream API error code (``code`` field of the JSON envelope), if any
    """

    error_code = "UPSTREAM_HTTP_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int,
        code: int | None = None,
        thread_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, thread_id=thread_id, details=details)
        self.status_code = status_code
        self.code = code
        self.details.setdefault("status_code", status_code)
        if code is not None:
            self.details.setdefault("upstream_code", code)

    @property
    def is_transient(self) -> bool:
        return self.status_code >= 500 or self.status_code in TRANSIENT_STATUS_CODES


class UpstreamTimeoutError(UpstreamError):
    """
    Raised when an upstream request times out.

    Common causes:
    - Slow upstream response
    - Network latency
    - Upstream overload
    """

    error_code = "UPSTREAM_TIMEOUT"

    @property
    def is_transient(self) -> bool:
        return True


class UpstreamResponseError(UpstreamError):
    """
    Raised when an upstream response cannot be interpreted.

    Common causes:
    - Body is not JSON
    - Expected identifier missing (e.g. conversation created without an id)
    """

    error_code = "UPSTREAM_MALFORMED_RESPONSE"


class UpstreamStreamError(UpstreamError):
    """
    Raised when the upstream reports an error after the stream has started.

    Mid-stream errors are never retried: partial output cannot be replayed.
    """

    error_code = "UPSTREAM_STREAM_ERROR"
