"""
Request Logging Middleware
==========================

Logs one line when a request arrives and one when its response starts.

For `POST /chat/stream` the "completed" line is written when the SSE response
starts, not when the stream ends; stream outcomes are logged by the
orchestrator. Request bodies are never logged.
"""

import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.config.constants import HEADER_THREAD_ID, HEADER_UPSTREAM_TOKEN
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# Headers whose values are replaced before logging
SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-api-key",
    HEADER_UPSTREAM_TOKEN.lower(),
}


def sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    return {key: "[REDACTED]" if key.lower() in SENSITIVE_HEADERS else value for key, value in headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for logging HTTP requests and responses.

    Paths in `skip_paths` (health probes, metrics scrapes) are passed through
    without logging.
    """

    def __init__(self, app, skip_paths: set[str] | None = None):
        super().__init__(app)
        self.skip_paths = skip_paths or set()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        method = request.method

        logger.info(
            f"Incoming request: {method} {path}",
            method=method,
            path=path,
            query_params=str(request.query_params) if request.query_params else None,
            headers=sanitize_headers(dict(request.headers)),
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {method} {path}",
                method=method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(time.perf_counter() - start_time, 4),
                exc_info=True,
            )
            raise

        logger.info(
            f"Request completed: {method} {path}",
            method=method,
            path=path,
            status_code=response.status_code,
            thread_id=response.headers.get(HEADER_THREAD_ID),
            duration_seconds=round(time.perf_counter() - start_time, 4),
        )
        return response


def add_request_logging_middleware(app, skip_paths: set[str] | None = None):
    """
    Add request logging middleware to the FastAPI application.

    Usage:
        app = FastAPI()
        add_request_logging_middleware(app, skip_paths={"/api/v1/metrics"})
    """
    app.add_middleware(RequestLoggingMiddleware, skip_paths=skip_paths)
    logger.info("Request logging middleware registered", skip_paths=sorted(skip_paths or []))
