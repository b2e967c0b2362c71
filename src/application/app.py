#!/usr/bin/env python3
"""
FastAPI Application Entry Point

This is the main entry point for the streaming chat proxy.
It configures the FastAPI application, middleware, and routes, and wires the
stateful chat services in the lifespan.

Author: Senior Solution Architect
Date: 2025-12-05
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.application.api.middleware import setup_middleware
from src.application.api.routes.chat import error_status_code
from src.application.api.routes.chat import router as chat_router
from src.application.api.routes.health import metrics_router
from src.application.api.routes.health import router as health_router
from src.chat.services.chat_orchestrator import ChatOrchestrator
from src.chat.services.conversation_cache import ConversationAffinityCache
from src.chat.services.follow_up import FollowUpReconciler
from src.chat.services.stream_relay import StreamRelay
from src.core.config.constants import HEADER_THREAD_ID
from src.core.config.settings import get_settings
from src.core.exceptions import SSEBaseError
from src.core.logging.logger import clear_thread_id, get_logger, set_thread_id, setup_logging
from src.core.observability.execution_tracker import get_tracker
from src.core.resilience.admission_controller import AdmissionController
from src.core.resilience.circuit_breaker import get_circuit_breaker_manager
from src.infrastructure.monitoring.health_checker import HealthChecker
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector
from src.upstream import create_upstream_client

logger = get_logger(__name__)


# ============================================================================
# Application Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup and shutdown).

    A pre-set `app.state.upstream_client` is used as-is (tests, embedding);
    otherwise the configured provider is built.
    """
    settings = get_settings()

    # Setup logging
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    logger.info(
        "Starting streaming chat proxy",
        environment=settings.app.ENVIRONMENT,
        version=settings.app.APP_VERSION,
    )

    metrics = get_metrics_collector()
    breakers = get_circuit_breaker_manager()

    client = getattr(app.state, "upstream_client", None) or create_upstream_client()
    app.state.upstream_client = client
    logger.info("Upstream client ready", provider=client.name)

    admission = AdmissionController(metrics=metrics)
    conversations = ConversationAffinityCache(client, breaker_manager=breakers, metrics=metrics)
    relay = StreamRelay(metrics=metrics)
    follow_ups = FollowUpReconciler(client, metrics=metrics)

    orchestrator = ChatOrchestrator(
        admission=admission,
        conversations=conversations,
        client=client,
        relay=relay,
        follow_ups=follow_ups,
        breaker_manager=breakers,
        tracker=get_tracker(),
        metrics=metrics,
    )

    # Store in app state for dependencies.py
    app.state.admission = admission
    app.state.breakers = breakers
    app.state.conversations = conversations
    app.state.orchestrator = orchestrator
    app.state.health_checker = HealthChecker(
        admission=admission,
        breaker_manager=breakers,
        conversations=conversations,
        orchestrator=orchestrator,
    )
    logger.info("Application startup complete")

    try:
        yield
    finally:
        logger.info("Shutting down application")

        admission.close()
        await orchestrator.shutdown()
        await client.aclose()

        logger.info("Application shutdown complete")


# ============================================================================
# Application Factory
# ============================================================================


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Resilient SSE relay between enterprise chat clients and the Coze chat API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[HEADER_THREAD_ID, "X-Conversation-ID"],
    )

    # Request logging (health probes and metrics scrapes excluded)
    setup_middleware(app)

    # All API endpoints are prefixed with API_BASE_PATH (default: /api/v1)
    base_path = settings.app.API_BASE_PATH

    app.include_router(health_router, prefix=base_path)
    app.include_router(chat_router, prefix=base_path)
    app.include_router(metrics_router, prefix=base_path)

    @app.middleware("http")
    async def thread_id_middleware(request: Request, call_next):
        """
        Inject thread ID into all requests for correlation.
        """
        thread_id = request.headers.get(HEADER_THREAD_ID) or str(uuid.uuid4())
        set_thread_id(thread_id)

        try:
            response = await call_next(request)
            response.headers.setdefault(HEADER_THREAD_ID, thread_id)
            return response
        finally:
            clear_thread_id()

    @app.exception_handler(SSEBaseError)
    async def sse_exception_handler(request: Request, exc: SSEBaseError):
        """Handle chat proxy exceptions raised outside the stream."""
        logger.error(
            f"Request failed: {exc.message}", error_type=type(exc).__name__, thread_id=exc.thread_id
        )

        return JSONResponse(
            status_code=error_status_code(exc),
            content=exc.to_dict(),
            headers={HEADER_THREAD_ID: exc.thread_id or ""},
        )

    @app.get("/", tags=["Root"])
    async def root():
        """
        Root endpoint with API information.
        """
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": f"{base_path}/health",
        }

    return app


# Create application instance
app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "src.application.app:app",
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        reload=settings.app.ENVIRONMENT == "development",
        log_level=settings.logging.LOG_LEVEL.lower(),
    )
