"""
Chat Orchestrator Service
=========================

The ChatOrchestrator is the central coordinator of one chat request. It does
not talk HTTP and it does not parse upstream events itself; it drives the
components that do, in order:

┌─────────────────────────────────────────────────────────────────┐
│ STAGE 1: ADMISSION                                              │
│ - Acquire an admission slot (may queue, may be rejected)        │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 2: CONVERSATION RESOLVE                                   │
│ - Adopt the client-supplied conversation id, or                 │
│ - Resolve the client's cached / discovered / created handle     │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 3: UPSTREAM OPEN                                          │
│ - Open the upstream chat stream through ResilientCall           │
│ - Opening failures are retried; the handle becomes READY here   │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 4: STREAM RELAY                                           │
│ - `connected` frame, then deltas / processing / heartbeats      │
│ - Mid-stream failures become one `error` frame (never retried)  │
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 5: FOLLOW-UP                                              │
│ - Stream-embedded follow-ups, else one bounded side-channel read│
└─────────────────────────────────────────────────────────────────┘
                            ↓
┌─────────────────────────────────────────────────────────────────┐
│ STAGE 6: TERMINAL                                               │
│ - Exactly one `final-answer` frame, transport closed            │
│ - Admission slot released by the controller's finally           │
└─────────────────────────────────────────────────────────────────┘

PRE-STREAM vs MID-STREAM ERRORS:
--------------------------------
Everything up to STAGE 3 happens before the client has seen a single byte, so
errors there (capacity, breaker open, upstream rejection) are delivered
through `ChatHandle.ready` and the HTTP layer turns them into a status code.
Once the handle is ready, every error is reported in-band as an `error` frame.

BACKGROUND EXECUTION:
---------------------
`start()` schedules the request as a task and returns immediately. Tasks are
held in a set until they finish so they cannot be garbage collected mid-run,
and `shutdown()` cancels whatever is still running.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from src.chat.models.chat_request import ChatRequest
from src.chat.models.frames import OutboundFrame
from src.chat.services.conversation_cache import ConversationAffinityCache
from src.chat.services.follow_up import FollowUpReconciler
from src.chat.services.stream_relay import FrameSink, StreamRelay, StreamSession
from src.core.config.constants import OPERATION_CHAT_STREAM, Stage
from src.core.config.settings import get_settings
from src.core.exceptions import SSEBaseError
from src.core.logging.logger import clear_thread_id, get_logger, log_stage, set_thread_id
from src.core.observability.execution_tracker import ExecutionTracker, get_tracker
from src.core.resilience.admission_controller import AdmissionController
from src.core.resilience.circuit_breaker import (
    CircuitBreakerManager,
    ResilientCall,
    get_circuit_breaker_manager,
)
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from src.upstream.base_client import ChatStreamOptions, UpstreamClient

logger = get_logger(__name__)


@dataclass
class ChatHandle:
    """
    Caller's view of a scheduled chat request.

    `ready` resolves with the conversation id once the upstream stream is
    open, or carries the pre-stream error.
    """

    request: ChatRequest
    ready: asyncio.Future
    task: asyncio.Task | None = None
    conversation_id: str | None = None
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def thread_id(self) -> str:
        return self.request.thread_id

    async def wait_ready(self) -> str:
        return await self.ready

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class ChatOrchestrator:
    """
    Central coordinator for the chat request lifecycle.

    Usage:
        orchestrator = ChatOrchestrator(admission, conversations, client, relay, follow_ups)
        handle = orchestrator.start(request, sink)
        await handle.wait_ready()
        # stream `sink` to the client
    """

    def __init__(
        self,
        admission: AdmissionController,
        conversations: ConversationAffinityCache,
        client: UpstreamClient,
        relay: StreamRelay,
        follow_ups: FollowUpReconciler,
        breaker_manager: CircuitBreakerManager | None = None,
        tracker: ExecutionTracker | None = None,
        metrics: MetricsCollector | None = None,
        chat_timeout: float | None = None,
        stream_call: ResilientCall | None = None,
    ):
        self._admission = admission
        self._conversations = conversations
        self._client = client
        self._relay = relay
        self._follow_ups = follow_ups
        self._tracker = tracker or get_tracker()
        self._metrics = metrics or get_metrics_collector()
        self.chat_timeout = chat_timeout or get_settings().admission.ADMISSION_CHAT_TIMEOUT

        manager = breaker_manager or get_circuit_breaker_manager()
        self._stream_call = stream_call or ResilientCall(
            OPERATION_CHAT_STREAM,
            breaker=manager.get_breaker(OPERATION_CHAT_STREAM),
            metrics=self._metrics,
        )

        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Public API
    # =========================================================================

    def start(self, request: ChatRequest, sink: FrameSink) -> ChatHandle:
        """Schedule `request` in the background; frames go to `sink`."""
        loop = asyncio.get_running_loop()
        handle = ChatHandle(request=request, ready=loop.create_future())
        task = asyncio.create_task(self._run(request, sink, handle), name=f"chat-{request.thread_id}")
        handle.task = task

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    @property
    def active_requests(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel every running chat task and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Chat orchestrator shut down", cancelled=len(tasks))

    def get_stats(self) -> dict[str, Any]:
        return {"active_requests": len(self._tasks), "chat_timeout": self.chat_timeout}

    # =========================================================================
    # Request lifecycle
    # =========================================================================

    async def _run(self, request: ChatRequest, sink: FrameSink, handle: ChatHandle) -> None:
        thread_id = request.thread_id
        set_thread_id(thread_id)
        log_stage(
            logger, "1.0", "Chat request submitted",
            user_id=request.user_id, priority=request.priority.value,
        )

        try:
            # STAGE 1: admission; the slot is held for the whole of _serve
            await self._admission.submit(
                lambda: self._serve(request, sink, handle),
                {"request_id": thread_id, "user_id": request.user_id},
                priority=request.priority,
                timeout=request.queue_timeout or self.chat_timeout,
            )
        except asyncio.CancelledError:
            if not handle.ready.done():
                handle.ready.cancel()
            raise
        except Exception as e:
            if not handle.ready.done():
                log_stage(
                    logger, "1.1", "Chat request failed before streaming",
                    level="warning", error=str(e), error_type=type(e).__name__,
                )
                handle.ready.set_exception(e)
            else:
                logger.error("Chat request failed after streaming started", error=str(e), exc_info=True)
        finally:
            summary = self._tracker.get_execution_summary(thread_id)
            if summary["stage_count"]:
                logger.info("Execution summary", **summary)
            self._tracker.clear_thread_data(thread_id)
            clear_thread_id()

    async def _serve(self, request: ChatRequest, sink: FrameSink, handle: ChatHandle) -> None:
        thread_id = request.thread_id

        # STAGE 2: conversation
        with self._tracker.track_stage(Stage.CONVERSATION_RESOLVE.value, "Resolve conversation", thread_id):
            if request.conversation_id:
                conversation_id = self._conversations.adopt(request.user_id, request.conversation_id)
            else:
                conversation_id = await self._conversations.resolve(
                    request.user_id, request.access_token, thread_id=thread_id
                )
        handle.conversation_id = conversation_id

        # STAGE 3: open upstream stream (retried, breaker-guarded)
        opts = ChatStreamOptions(
            conversation_id=conversation_id,
            client_id=request.user_id,
            query=request.query,
            access_token=request.access_token,
        )
        with self._tracker.track_stage(Stage.UPSTREAM_OPEN.value, "Open upstream stream", thread_id):
            events = await self._stream_call.execute(
                lambda: self._client.open_chat_stream(opts),
                context={"user_id": request.user_id, "conversation_id": conversation_id},
                thread_id=thread_id,
            )

        if handle.ready.done():
            # Caller gave up while we were opening
            await self._relay.discard(events)
            return
        handle.ready.set_result(conversation_id)

        await self._stream(request, sink, events, conversation_id)

    async def _stream(self, request: ChatRequest, sink: FrameSink, events, conversation_id: str) -> None:
        session = self._relay.open_session(sink)
        outcome_label = "error"

        try:
            async with session:
                outcome_label = await self._drive(request, session, events, conversation_id)
        finally:
            # Closing an already exhausted iterator is a no-op
            await self._relay.discard(events)
            self._metrics.record_stream_outcome(outcome_label, session.duration)
            log_stage(
                logger, "6.0", "Chat request finished",
                outcome=outcome_label, session_id=session.session_id,
                duration_ms=round(session.duration * 1000, 2),
            )

    async def _drive(self, request: ChatRequest, session: StreamSession, events, conversation_id: str) -> str:
        thread_id = request.thread_id

        # STAGE 4: relay
        try:
            with self._tracker.track_stage(Stage.STREAM_RELAY.value, "Relay upstream stream", thread_id):
                outcome = await self._relay.relay(session, events)
        except Exception as e:
            log_stage(
                logger, "4.4", "Stream failed mid-flight",
                level="error", error=str(e), error_type=type(e).__name__,
            )
            await session.fail(self._error_frame(e))
            return "error"

        if outcome.disconnected:
            return "disconnected"

        # STAGE 5: follow-ups
        with self._tracker.track_stage(Stage.FOLLOW_UP.value, "Reconcile follow-ups", thread_id):
            follow_ups = await self._follow_ups.reconcile(
                request.user_id, outcome.stream_follow_ups, request.access_token
            )

        if session.disconnected:
            return "disconnected"

        # STAGE 6: terminal
        with self._tracker.track_stage(Stage.TERMINAL.value, "Final answer", thread_id):
            await session.finish(
                OutboundFrame.final_answer(
                    answer=outcome.answer,
                    conversation_id=outcome.conversation_id or conversation_id,
                    user_id=request.user_id,
                    message_id=outcome.message_id,
                    follow_up_questions=follow_ups.questions,
                    follow_up_source=follow_ups.provenance.value,
                )
            )
        return "completed"

    @staticmethod
    def _error_frame(error: Exception) -> OutboundFrame:
        if isinstance(error, SSEBaseError):
            return OutboundFrame.error(error.error_code, error.message, error.details)
        return OutboundFrame.error("INTERNAL_ERROR", "Unexpected error while streaming")
