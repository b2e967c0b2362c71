"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.

Author: System Architect
Date: 2025-12-08
"""

from typing import Any


class SSEBaseError(Exception):
    """
    Base exception for all chat proxy errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling at the HTTP boundary and inside the stream
    - Thread ID correlation
    - A stable machine-readable ``error_code`` per class

    Attributes:
        message: Error message
        thread_id: Thread ID for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise UpstreamHTTPError(
            "Coze returned 503",
            status_code=503,
            details={"operation": "chat_stream", "attempts": 3},
        )
    """

    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self, message: str, thread_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.thread_id = thread_id
        self.details = (details or {}).copy()  # Create a copy to prevent external modification
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, code, message, thread_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "code": self.error_code,
            "message": self.message,
            "thread_id": self.thread_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "SSEBaseError":
        """
        Add additional context to the error details.

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        thread_id_str = f", thread_id='{self.thread_id}'" if self.thread_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{thread_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        thread_id: str | None = None,
        **details
    ) -> "SSEBaseError":
        """
        Create an SSEBaseError subclass instance from another exception.

        Useful for wrapping httpx / json errors with additional context.

        Example:
            >>> try:
            ...     payload = orjson.loads(raw)
            ... except orjson.JSONDecodeError as e:
            ...     raise UpstreamResponseError.from_exception(e, operation="list_conversations")
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, thread_id=thread_id, details=error_details)


# Configuration exception (kept here as it's fundamental)
class ConfigurationError(SSEBaseError):
    """Raised when configuration is invalid or missing."""

    error_code = "CONFIGURATION_ERROR"
