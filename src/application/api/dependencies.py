"""
FastAPI Dependency Injection Module
===================================

Reusable dependencies for route handlers.

Stateful services (orchestrator, admission controller, conversation cache,
health checker) are created ONCE in the application lifespan and stored in
`app.state`; the functions below hand them to routes. Identity is read from
request headers:

    X-User-ID         opaque client identity (falls back to the client host)
    X-Upstream-Token  upstream access token (falls back to COZE_ACCESS_TOKEN)

Example:
    @router.post("/chat/stream")
    async def stream(orchestrator: OrchestratorDep, user_id: UserIdDep):
        ...
"""

from typing import Annotated

from fastapi import Depends, Request

from src.chat.services.chat_orchestrator import ChatOrchestrator
from src.chat.services.conversation_cache import ConversationAffinityCache
from src.core.config.constants import HEADER_UPSTREAM_TOKEN, HEADER_USER_ID
from src.core.config.settings import Settings, get_settings
from src.core.resilience.admission_controller import AdmissionController
from src.core.resilience.circuit_breaker import CircuitBreakerManager
from src.infrastructure.monitoring.health_checker import HealthChecker

# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


def _from_state(request: Request, name: str):
    """
    Read a lifespan-initialized singleton from application state.

    Raises:
        RuntimeError: If the lifespan startup did not run
    """
    try:
        return getattr(request.app.state, name)
    except AttributeError as e:
        raise RuntimeError(
            f"{name} not initialized in app.state. "
            "This indicates the application lifespan startup didn't complete properly."
        ) from e


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return _from_state(request, "orchestrator")


def get_admission_controller(request: Request) -> AdmissionController:
    return _from_state(request, "admission")


def get_conversation_cache(request: Request) -> ConversationAffinityCache:
    return _from_state(request, "conversations")


def get_breaker_manager(request: Request) -> CircuitBreakerManager:
    return _from_state(request, "breakers")


def get_health_checker(request: Request) -> HealthChecker:
    return _from_state(request, "health_checker")


def get_user_id(request: Request) -> str:
    """
    Extract the client identity.

    IDENTIFICATION HIERARCHY:
    -------------------------
    1. X-User-ID header, set by the identity collaborator in front of us
    2. Client host as a fallback for anonymous development traffic

    The value is opaque: it keys the conversation cache and scopes upstream
    variables, nothing more.
    """
    user_id = request.headers.get(HEADER_USER_ID)

    if user_id:
        return user_id

    return request.client.host if request.client else "unknown"


def get_access_token(request: Request) -> str | None:
    """Upstream access token for this request, or the configured default."""
    return request.headers.get(HEADER_UPSTREAM_TOKEN) or get_settings().upstream.COZE_ACCESS_TOKEN


# ============================================================================
# TYPE ALIASES FOR ROUTE SIGNATURES
# ============================================================================

OrchestratorDep = Annotated[ChatOrchestrator, Depends(get_orchestrator)]

AdmissionDep = Annotated[AdmissionController, Depends(get_admission_controller)]

ConversationCacheDep = Annotated[ConversationAffinityCache, Depends(get_conversation_cache)]

BreakerManagerDep = Annotated[CircuitBreakerManager, Depends(get_breaker_manager)]

HealthCheckerDep = Annotated[HealthChecker, Depends(get_health_checker)]

SettingsDep = Annotated[Settings, Depends(get_settings)]

UserIdDep = Annotated[str, Depends(get_user_id)]

AccessTokenDep = Annotated[str | None, Depends(get_access_token)]
