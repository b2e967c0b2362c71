"""
Chat Routes
===========

POST   /chat/stream                     streamed chat turn (Server-Sent Events)
GET    /chat/conversations/status       conversation cache statistics
DELETE /chat/conversations/{user_id}    forget a client's conversation handle

SSE Protocol Format:
    event: delta-answer
    data: {"answer": "Hello wor", "message_id": "..."}

    (blank line signals end of event)

A stream emits one `connected` frame, then `delta-answer`, `processing` and
`heartbeat` frames, then exactly one terminal frame (`final-answer` or
`error`).

PRE-STREAM ERRORS:
------------------
The route waits until the orchestrator reports the upstream stream open.
Failures before that point are plain JSON responses:

    429  admission queue full (Retry-After)
    503  admission queue timeout / cleared, circuit open
    502  upstream rejected the request
    500  anything else
"""

import asyncio
import math
import uuid

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from src.application.api.dependencies import (
    AccessTokenDep,
    ConversationCacheDep,
    OrchestratorDep,
    UserIdDep,
)
from src.application.api.models.chat import ChatStreamRequestModel, ConversationInvalidateResponse
from src.chat.models.chat_request import ChatRequest
from src.chat.services.stream_relay import QueueFrameSink
from src.core.config.constants import ADMISSION_RETRY_AFTER, HEADER_THREAD_ID
from src.core.exceptions import (
    AdmissionCapacityError,
    AdmissionError,
    CircuitBreakerOpenError,
    SSEBaseError,
    UpstreamError,
)

router = APIRouter(prefix="/chat", tags=["Chat"])
logger = structlog.get_logger(__name__)


# ============================================================================
# ERROR MAPPING
# ============================================================================


def error_status_code(error: BaseException) -> int:
    if isinstance(error, AdmissionCapacityError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(error, AdmissionError | CircuitBreakerOpenError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, UpstreamError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def pre_stream_error_response(error: BaseException, thread_id: str) -> JSONResponse:
    status_code = error_status_code(error)
    headers = {HEADER_THREAD_ID: thread_id}

    if isinstance(error, SSEBaseError):
        content = {"error": type(error).__name__, **error.to_dict(), "thread_id": thread_id}
    else:
        content = {
            "error": "InternalError",
            "code": "INTERNAL_ERROR",
            "message": "Unable to start chat stream",
            "thread_id": thread_id,
            "details": {},
        }

    if isinstance(error, AdmissionCapacityError):
        headers["Retry-After"] = str(ADMISSION_RETRY_AFTER)
    elif isinstance(error, CircuitBreakerOpenError):
        headers["Retry-After"] = str(max(1, math.ceil(error.details.get("retry_after") or 0)))

    return JSONResponse(status_code=status_code, content=content, headers=headers)


# ============================================================================
# STREAMING ENDPOINT
# ============================================================================


@router.post(
    "/stream",
    status_code=status.HTTP_200_OK,
    responses={
        200: {"description": "SSE stream started", "content": {"text/event-stream": {}}},
        422: {"description": "Validation error - invalid request format"},
        429: {"description": "Admission queue full"},
        502: {"description": "Upstream rejected the request"},
        503: {"description": "Queue timeout or upstream circuit open"},
    },
)
async def chat_stream(
    request: Request,
    body: ChatStreamRequestModel,
    orchestrator: OrchestratorDep,
    user_id: UserIdDep,
    access_token: AccessTokenDep,
):
    """Start a streamed chat turn for the calling user."""
    thread_id = request.headers.get(HEADER_THREAD_ID) or str(uuid.uuid4())

    logger.info(
        "chat_request_received",
        thread_id=thread_id,
        user_id=user_id,
        priority=body.priority.value,
        query_length=len(body.query),
        has_conversation_id=body.conversation_id is not None,
    )

    chat_request = ChatRequest(
        query=body.query,
        user_id=user_id,
        access_token=access_token,
        conversation_id=body.conversation_id,
        priority=body.priority,
        thread_id=thread_id,
    )
    sink = QueueFrameSink()
    handle = orchestrator.start(chat_request, sink)

    try:
        conversation_id = await handle.wait_ready()
    except asyncio.CancelledError:
        handle.cancel()
        raise
    except Exception as e:
        logger.warning(
            "chat_rejected_before_stream",
            thread_id=thread_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return pre_stream_error_response(e, thread_id)

    async def event_stream():
        try:
            async for chunk in sink:
                yield chunk
        finally:
            # Generator closed before the session closed the transport: client went away
            sink.mark_disconnected()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            HEADER_THREAD_ID: thread_id,
            "X-Conversation-ID": conversation_id,
        },
    )


# ============================================================================
# CONVERSATION MANAGEMENT
# ============================================================================


@router.get("/conversations/status")
async def conversation_status(conversations: ConversationCacheDep):
    """Conversation affinity cache statistics."""
    return conversations.get_stats()


@router.delete("/conversations/{user_id}", response_model=ConversationInvalidateResponse)
async def invalidate_conversation(user_id: str, conversations: ConversationCacheDep):
    """Forget a user's cached conversation; the next request resolves a new one."""
    invalidated = conversations.invalidate(user_id)
    logger.info("conversation_invalidated", user_id=user_id, invalidated=invalidated)
    return ConversationInvalidateResponse(user_id=user_id, invalidated=invalidated)
