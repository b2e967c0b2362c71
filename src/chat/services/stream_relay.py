#!/usr/bin/env python3
"""
Stream Relay

Converts an upstream event sequence into the client-facing SSE stream.

Session lifecycle:

    opened ──enter──► streaming ──finish/fail──► finalizing ──► closed
                          │
                          └──client disconnect──► (relay stops) ──grace──► closed

    - entering a StreamSession writes the `connected` frame straight to the
      transport and starts the heartbeat, flush and processing tasks
    - frames are appended to a per-session buffer and flushed when the
      buffered bytes reach STREAM_BUFFER_SIZE or STREAM_FLUSH_INTERVAL has
      elapsed, whichever comes first; order is FIFO per session
    - until the first answer delta arrives a `processing` notice is sent every
      STREAM_PROCESSING_INTERVAL
    - once the termination flag is set nothing but the single terminal frame
      is accepted; the transport is closed exactly once

Accumulation:
    Answer fragments are collected in an append-only list. A `completed`
    event restating the answer is adopted only if it is at least as long as
    what was accumulated (the upstream sometimes restates a partial answer).
    Every delta frame carries the shaped cumulative text and its length never
    decreases within a session.

Author: Senior Solution Architect
Date: 2025-12-09
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.chat.models.frames import FrameKind, OutboundFrame, new_session_id
from src.chat.services.response_shaping import sanitize_answer_text
from src.core.config.constants import MESSAGE_TYPE_ANSWER, MESSAGE_TYPE_FOLLOW_UP
from src.core.config.settings import get_settings
from src.core.exceptions import StreamClosedError, UpstreamStreamError
from src.core.logging.logger import get_logger, log_stage
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector
from src.upstream.base_client import UpstreamEvent, UpstreamEventKind

logger = get_logger(__name__)


# ============================================================================
# Transport
# ============================================================================


class FrameSink(ABC):
    """
    Client transport a session writes to.

    `disconnected` is set by the transport owner when the client goes away.
    """

    def __init__(self):
        self.disconnected = asyncio.Event()

    @abstractmethod
    async def write(self, data: str) -> None:
        """Write already formatted SSE text."""

    @abstractmethod
    async def close(self) -> None:
        """Close the transport."""

    def mark_disconnected(self) -> None:
        self.disconnected.set()


class QueueFrameSink(FrameSink):
    """
    Bridges a session to a StreamingResponse body generator.

    Usage:
        sink = QueueFrameSink()
        async def body():
            try:
                async for chunk in sink:
                    yield chunk
            finally:
                sink.mark_disconnected()
    """

    _CLOSED = object()

    def __init__(self):
        super().__init__()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: str) -> None:
        if self._closed:
            raise StreamClosedError("Transport already closed")
        self._queue.put_nowait(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def mark_disconnected(self) -> None:
        # Reaching the end of a closed stream is not a disconnect
        if not self._closed:
            super().mark_disconnected()

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


# ============================================================================
# Accumulation
# ============================================================================


class AnswerAccumulator:
    """Append-only answer buffer with the adopt-longer restatement rule."""

    def __init__(self):
        self._parts: list[str] = []
        self._length = 0
        self.message_id: str | None = None

    def append(self, fragment: str) -> None:
        if fragment:
            self._parts.append(fragment)
            self._length += len(fragment)

    def adopt_restatement(self, restated: str) -> bool:
        """
        Replace the accumulated text with `restated` unless that would shorten it.

        Lengths are compared after shaping, since shaped text is what the
        client has already seen.
        """
        restated_length = len(sanitize_answer_text(restated))
        accumulated_length = len(self.shaped())
        if restated_length < accumulated_length:
            logger.warning(
                "Upstream restated a shorter answer, keeping accumulated text",
                accumulated_length=accumulated_length,
                restated_length=restated_length,
            )
            return False
        self._parts = [restated]
        self._length = len(restated)
        return True

    @property
    def text(self) -> str:
        if len(self._parts) > 1:
            self._parts = ["".join(self._parts)]
        return self._parts[0] if self._parts else ""

    def __len__(self) -> int:
        return self._length

    def shaped(self) -> str:
        return sanitize_answer_text(self.text)


# ============================================================================
# Session
# ============================================================================


class SessionState(str, Enum):
    OPENED = "opened"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CLOSED = "closed"


class StreamSession:
    """
    One client stream.

    STAGE-4: Stream relay session

    Usage:
        async with relay.open_session(sink) as session:
            outcome = await relay.relay(session, events)
            await session.finish(OutboundFrame.final_answer(...))
    """

    def __init__(
        self,
        sink: FrameSink,
        session_id: str | None = None,
        *,
        buffer_size: int,
        flush_interval: float,
        heartbeat_interval: float,
        processing_interval: float,
        close_grace: float,
        disconnect_grace: float,
        metrics: MetricsCollector,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id or new_session_id()
        self._sink = sink
        self.buffer_size = buffer_size
        self.flush_interval = flush_interval
        self.heartbeat_interval = heartbeat_interval
        self.processing_interval = processing_interval
        self.close_grace = close_grace
        self.disconnect_grace = disconnect_grace
        self._metrics = metrics
        self._clock = clock

        self.state = SessionState.OPENED
        self._buffer: list[str] = []
        self._buffered_bytes = 0
        self._last_flush = clock()
        self._terminated = False
        self._closed = False
        self._answer_started = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []
        self._opened_at = clock()

        self.frames_written: dict[str, int] = {}
        self.terminal_kind: FrameKind | None = None

    # ------------------------------------------------------------------
    # Context management
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "StreamSession":
        await self._sink.write(OutboundFrame.connected(self.session_id).format())
        self._count(FrameKind.CONNECTED)
        self.state = SessionState.STREAMING
        self._metrics.increment_streams()

        self._tasks = [
            asyncio.create_task(self._heartbeat_loop(), name=f"heartbeat-{self.session_id}"),
            asyncio.create_task(self._flush_loop(), name=f"flush-{self.session_id}"),
            asyncio.create_task(self._processing_loop(), name=f"processing-{self.session_id}"),
        ]
        log_stage(logger, "4.1", "Stream session opened", session_id=self.session_id)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self.disconnected and not self._closed:
            await asyncio.sleep(self.disconnect_grace)
        await self.close()
        return False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def disconnected(self) -> bool:
        return self._sink.disconnected.is_set()

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def duration(self) -> float:
        return self._clock() - self._opened_at

    def mark_disconnected(self) -> None:
        if not self._closed:
            self._sink.mark_disconnected()
            log_stage(logger, "4.5", "Client disconnected", level="info", session_id=self.session_id)

    async def wait_disconnected(self) -> None:
        await self._sink.disconnected.wait()

    def mark_answer_started(self) -> None:
        self._answer_started.set()

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def _count(self, kind: FrameKind) -> None:
        self.frames_written[kind.value] = self.frames_written.get(kind.value, 0) + 1
        self._metrics.record_frame(kind.value)

    def _append(self, frame: OutboundFrame) -> None:
        text = frame.format()
        self._buffer.append(text)
        self._buffered_bytes += len(text.encode())
        self._count(frame.kind)

    async def send(self, frame: OutboundFrame) -> bool:
        """
        Buffer a non-terminal frame; flush when the buffer threshold is reached.

        Returns False if the frame was dropped (session terminated or closed).
        """
        if frame.is_terminal:
            raise ValueError("Terminal frames go through finish() or fail()")
        if self._terminated or self._closed:
            return False

        self._append(frame)
        if self._buffered_bytes >= self.buffer_size:
            await self.flush()
        return True

    async def flush(self) -> None:
        async with self._flush_lock:
            if not self._buffer or self._closed:
                return
            chunk = "".join(self._buffer)
            self._buffer.clear()
            self._buffered_bytes = 0
            self._last_flush = self._clock()
            try:
                await self._sink.write(chunk)
            except StreamClosedError:
                self.mark_disconnected()

    async def finish(self, frame: OutboundFrame) -> bool:
        """Write the terminal frame, wait the close grace, then close."""
        if not await self._terminate(frame):
            return False
        if not self.disconnected:
            await asyncio.sleep(self.close_grace)
        await self.close()
        return True

    async def fail(self, frame: OutboundFrame) -> bool:
        """Write the error frame and close immediately."""
        if not await self._terminate(frame):
            return False
        await self.close()
        return True

    async def _terminate(self, frame: OutboundFrame) -> bool:
        if not frame.is_terminal:
            raise ValueError(f"{frame.kind.value} is not a terminal frame")
        if self._terminated or self._closed:
            logger.warning(
                "Terminal frame dropped, session already terminated",
                session_id=self.session_id,
                kind=frame.kind.value,
            )
            return False

        self._terminated = True
        self.state = SessionState.FINALIZING
        self.terminal_kind = frame.kind
        self._append(frame)
        await self.flush()
        log_stage(logger, "4.6", "Terminal frame written", session_id=self.session_id, kind=frame.kind.value)
        return True

    async def close(self) -> None:
        if self._closed:
            return

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.flush()
        self._closed = True
        self.state = SessionState.CLOSED
        await self._sink.close()
        self._metrics.decrement_streams()
        log_stage(
            logger,
            "4.7",
            "Stream session closed",
            session_id=self.session_id,
            frames=self.frames_written,
            disconnected=self.disconnected,
        )

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            if self._buffer and self._clock() - self._last_flush >= self.flush_interval:
                await self.flush()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self.state != SessionState.STREAMING or self.disconnected:
                continue
            if await self.send(OutboundFrame.heartbeat(self.session_id)):
                await self.flush()

    async def _processing_loop(self) -> None:
        while not self._answer_started.is_set():
            try:
                await asyncio.wait_for(self._answer_started.wait(), self.processing_interval)
            except TimeoutError:
                if self.state != SessionState.STREAMING or self.disconnected:
                    continue
                if await self.send(OutboundFrame.processing(self.session_id, self.duration)):
                    await self.flush()


# ============================================================================
# Relay
# ============================================================================


@dataclass
class RelayOutcome:
    """What the relay learned from one upstream stream."""

    answer: str = ""
    message_id: str | None = None
    conversation_id: str | None = None
    chat_id: str | None = None
    stream_follow_ups: list[str] = field(default_factory=list)
    completed: bool = False
    disconnected: bool = False
    delta_count: int = 0


_END = object()
_DISCONNECTED = object()


class StreamRelay:
    """
    Drives upstream events into a session.

    Usage:
        relay = StreamRelay()
        async with relay.open_session(sink) as session:
            outcome = await relay.relay(session, events)
    """

    def __init__(
        self,
        buffer_size: int | None = None,
        flush_interval: float | None = None,
        heartbeat_interval: float | None = None,
        processing_interval: float | None = None,
        close_grace: float | None = None,
        disconnect_grace: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = get_settings().stream

        def pick(value, default):
            return default if value is None else value

        self.buffer_size = pick(buffer_size, settings.STREAM_BUFFER_SIZE)
        self.flush_interval = pick(flush_interval, settings.STREAM_FLUSH_INTERVAL)
        self.heartbeat_interval = pick(heartbeat_interval, settings.STREAM_HEARTBEAT_INTERVAL)
        self.processing_interval = pick(processing_interval, settings.STREAM_PROCESSING_INTERVAL)
        self.close_grace = pick(close_grace, settings.STREAM_CLOSE_GRACE)
        self.disconnect_grace = pick(disconnect_grace, settings.STREAM_DISCONNECT_GRACE)
        self._metrics = metrics or get_metrics_collector()

    def open_session(self, sink: FrameSink, session_id: str | None = None) -> StreamSession:
        return StreamSession(
            sink,
            session_id,
            buffer_size=self.buffer_size,
            flush_interval=self.flush_interval,
            heartbeat_interval=self.heartbeat_interval,
            processing_interval=self.processing_interval,
            close_grace=self.close_grace,
            disconnect_grace=self.disconnect_grace,
            metrics=self._metrics,
        )

    async def relay(self, session: StreamSession, events: AsyncIterator[UpstreamEvent]) -> RelayOutcome:
        """
        Consume `events` until terminal, exhaustion or client disconnect.

        Raises:
            UpstreamStreamError: the upstream reported an error mid-stream
        """
        outcome = RelayOutcome()
        accumulator = AnswerAccumulator()
        last_emitted = ""

        iterator = events.__aiter__()
        disconnect_waiter = asyncio.create_task(session.wait_disconnected())
        next_task: asyncio.Task | None = None

        try:
            while True:
                next_task = asyncio.ensure_future(anext(iterator))
                await asyncio.wait({next_task, disconnect_waiter}, return_when=asyncio.FIRST_COMPLETED)

                if not next_task.done():
                    outcome.disconnected = True
                    break
                try:
                    event = next_task.result()
                except StopAsyncIteration:
                    break
                finally:
                    next_task = None

                if event.kind == UpstreamEventKind.DELTA:
                    if event.message_type not in (None, MESSAGE_TYPE_ANSWER):
                        continue
                    accumulator.append(event.content or "")
                    outcome.delta_count += 1
                    if event.message_id:
                        accumulator.message_id = event.message_id
                    session.mark_answer_started()

                    shaped = accumulator.shaped()
                    if len(shaped) >= len(last_emitted) and shaped != last_emitted:
                        await session.send(OutboundFrame.delta_answer(shaped, accumulator.message_id))
                        last_emitted = shaped

                elif event.kind == UpstreamEventKind.COMPLETED:
                    if event.message_type == MESSAGE_TYPE_FOLLOW_UP:
                        outcome.stream_follow_ups.extend(q for q in event.follow_ups if q.strip())
                    elif event.message_type in (None, MESSAGE_TYPE_ANSWER):
                        accumulator.adopt_restatement(event.content or "")
                        if event.message_id:
                            accumulator.message_id = event.message_id

                elif event.kind == UpstreamEventKind.SESSION_COMPLETED:
                    outcome.conversation_id = event.conversation_id or outcome.conversation_id
                    outcome.chat_id = event.chat_id
                    outcome.completed = True

                elif event.kind == UpstreamEventKind.TERMINAL:
                    outcome.completed = True
                    break

                elif event.kind == UpstreamEventKind.ERROR:
                    error = event.error or {}
                    raise UpstreamStreamError(
                        f"Upstream stream failed: {error.get('message', 'unknown error')}",
                        details={"upstream_code": error.get("code"), "chat_id": event.chat_id},
                    )

                else:
                    logger.debug("Skipping upstream event", kind=str(event.kind))

        finally:
            disconnect_waiter.cancel()
            if next_task is not None and not next_task.done():
                next_task.cancel()
                await asyncio.wait({next_task})
            await self.discard(iterator)

        outcome.answer = accumulator.shaped()
        outcome.message_id = accumulator.message_id
        log_stage(
            logger,
            "4.3",
            "Relay finished",
            session_id=session.session_id,
            deltas=outcome.delta_count,
            answer_length=len(outcome.answer),
            completed=outcome.completed,
            disconnected=outcome.disconnected,
        )
        return outcome

    @staticmethod
    async def discard(iterator: Any) -> None:
        """Close an upstream iterator that will not be consumed further."""
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("Closing upstream iterator failed", error=str(e))
