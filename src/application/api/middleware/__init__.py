"""
Middleware Package
==================

request_logging: one log line per request and per response start, with
sensitive headers (authorization, upstream token) redacted.

USAGE EXAMPLE:
--------------
    from src.application.api.middleware import setup_middleware

    app = FastAPI()
    setup_middleware(app)
"""

from fastapi import FastAPI

from src.core.config.settings import get_settings

from .request_logging import RequestLoggingMiddleware, add_request_logging_middleware, sanitize_headers


def setup_middleware(app: FastAPI):
    """Register middleware; metrics scrapes and liveness probes are not logged."""
    base_path = get_settings().app.API_BASE_PATH
    add_request_logging_middleware(app, skip_paths={f"{base_path}/metrics", f"{base_path}/health"})


__all__ = [
    "setup_middleware",
    "RequestLoggingMiddleware",
    "add_request_logging_middleware",
    "sanitize_headers",
]
