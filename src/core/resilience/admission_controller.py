"""
Admission Controller - bounds load on the upstream.

Every upstream-bound operation (one whole chat request) is submitted here
before it may run. The controller admits it immediately when three ceilings
all have headroom:

    in-flight operations   < ADMISSION_MAX_CONCURRENT
    admissions this second < ADMISSION_MAX_PER_SECOND
    admissions this minute < ADMISSION_MAX_PER_MINUTE

Otherwise the operation waits in a bounded priority queue:

    ┌────────── HIGH (newest first) ──────────┬──────── NORMAL (FIFO) ────────┐
    head                                                                    tail

- a HIGH submission is inserted at the head, ahead of everything already
  queued (including earlier HIGH ones); NORMAL goes to the tail;
- a submission arriving when the queue already holds ADMISSION_QUEUE_MAX_SIZE
  entries is rejected at once with AdmissionCapacityError (never queued);
- a queued submission that is not admitted within its timeout is removed and
  rejected with AdmissionQueueTimeoutError, without running.

The per-second and per-minute windows are FIXED wall-clock windows
(``int(now)`` and ``int(now // 60)``), not sliding ones. Bursts at a window
edge are possible and accepted. When the queue is blocked only by a window
ceiling, a drain is scheduled at the next window boundary.

Slots are released in a ``finally`` around the operation, so success, failure
and cancellation all free the slot and re-evaluate the queue head.

Counters are only mutated on the event loop between suspension points, so no
lock is needed.
"""

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from src.core.config.constants import (
    ADMISSION_DEGRADED_QUEUE_RATIO,
    ADMISSION_DEGRADED_REJECTION_RATIO,
    RequestPriority,
)
from src.core.config.settings import get_settings
from src.core.exceptions import (
    AdmissionCapacityError,
    AdmissionQueueClearedError,
    AdmissionQueueTimeoutError,
)
from src.core.logging.logger import get_logger, log_stage
from src.infrastructure.monitoring.metrics_collector import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class QueuedOperation:
    """An admission slot request waiting in the queue."""

    request_id: str
    priority: RequestPriority
    enqueued_at: float
    timeout: float
    waiter: asyncio.Future
    context: dict[str, Any] = field(default_factory=dict)
    granted: bool = False


class AdmissionController:
    """
    Concurrency/rate gate with a bounded priority queue.

    Usage:
        controller = AdmissionController(max_concurrent=2)
        result = await controller.submit(run_chat, {"user_id": "u-1"}, priority="high", timeout=5)
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        max_per_second: int | None = None,
        max_per_minute: int | None = None,
        queue_max_size: int | None = None,
        default_timeout: float | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings().admission
        self.max_concurrent = max_concurrent or settings.ADMISSION_MAX_CONCURRENT
        self.max_per_second = max_per_second or settings.ADMISSION_MAX_PER_SECOND
        self.max_per_minute = max_per_minute or settings.ADMISSION_MAX_PER_MINUTE
        self.queue_max_size = (
            settings.ADMISSION_QUEUE_MAX_SIZE if queue_max_size is None else queue_max_size
        )
        self.default_timeout = default_timeout or settings.ADMISSION_DEFAULT_TIMEOUT
        self._metrics = metrics or get_metrics_collector()
        self._clock = clock

        self._queue: deque[QueuedOperation] = deque()
        self._in_flight = 0

        self._second_window: int | None = None
        self._second_count = 0
        self._minute_window: int | None = None
        self._minute_count = 0

        self._drain_handle: asyncio.TimerHandle | None = None

        self._stats = {
            "total_requests": 0,
            "queued_requests": 0,
            "rejected_requests": 0,
            "completed_requests": 0,
            "average_wait_time_ms": 0.0,
            "max_queue_size": 0,
        }
        self._admitted_from_queue = 0

        logger.info(
            "Admission controller initialized",
            stage="A.0",
            max_concurrent=self.max_concurrent,
            max_per_second=self.max_per_second,
            max_per_minute=self.max_per_minute,
            queue_max_size=self.queue_max_size,
        )

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    async def submit(
        self,
        operation: Callable[[], Awaitable[T]],
        context: dict[str, Any] | None = None,
        *,
        priority: RequestPriority | str = RequestPriority.NORMAL,
        timeout: float | None = None,
    ) -> T:
        """
        Run ``operation`` once an admission slot is available.

        Raises:
            AdmissionCapacityError: queue already full
            AdmissionQueueTimeoutError: not admitted within ``timeout`` seconds
            AdmissionQueueClearedError: queue cleared while waiting
        """
        context = dict(context or {})
        priority = RequestPriority(priority)
        timeout = timeout or self.default_timeout
        self._stats["total_requests"] += 1

        if not self._queue and self._has_capacity():
            self._take_slot()
            self._metrics.record_admission("immediate")
        else:
            await self._wait_for_slot(context, priority, timeout)
            self._metrics.record_admission("queued")

        try:
            return await operation()
        finally:
            self._release()

    def clear_queue(self, reason: str = "cleared") -> int:
        """Reject every queued operation with AdmissionQueueClearedError."""
        cleared = 0
        while self._queue:
            item = self._queue.popleft()
            if item.waiter.done():
                continue
            item.waiter.set_exception(
                AdmissionQueueClearedError(
                    f"Admission queue cleared: {reason}",
                    details={"request_id": item.request_id, "reason": reason},
                )
            )
            cleared += 1

        if cleared:
            self._stats["rejected_requests"] += cleared
            for _ in range(cleared):
                self._metrics.record_admission_rejection(AdmissionQueueClearedError.error_code)
            log_stage(logger, "A.5", "Admission queue cleared", level="warning", reason=reason, cleared=cleared)

        self._metrics.record_queue_depth(0)
        return cleared

    def close(self) -> None:
        """Cancel the scheduled drain and reject everything still queued."""
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
        self.clear_queue("shutdown")

    def get_status(self) -> dict[str, Any]:
        self._roll_windows()
        return {
            "in_flight": self._in_flight,
            "queue_length": len(self._queue),
            "current_second_requests": self._second_count,
            "current_minute_requests": self._minute_count,
            "limits": {
                "max_concurrent": self.max_concurrent,
                "max_per_second": self.max_per_second,
                "max_per_minute": self.max_per_minute,
                "queue_max_size": self.queue_max_size,
            },
            "stats": dict(self._stats),
        }

    def get_health_status(self) -> dict[str, Any]:
        """Degraded when the queue is ≥ 80% full or ≥ 10% of requests were rejected."""
        total = self._stats["total_requests"]
        rejection_rate = self._stats["rejected_requests"] / total if total else 0.0
        queue_utilization = len(self._queue) / self.queue_max_size if self.queue_max_size else 0.0

        healthy = (
            queue_utilization < ADMISSION_DEGRADED_QUEUE_RATIO
            and rejection_rate < ADMISSION_DEGRADED_REJECTION_RATIO
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "queue_utilization": round(queue_utilization, 3),
            "rejection_rate": round(rejection_rate, 3),
            "in_flight": self._in_flight,
            "queue_length": len(self._queue),
        }

    # ========================================================================
    # Windows and slots
    # ========================================================================

    def _roll_windows(self) -> None:
        now = self._clock()
        second = int(now)
        minute = int(now // 60)
        if second != self._second_window:
            self._second_window = second
            self._second_count = 0
        if minute != self._minute_window:
            self._minute_window = minute
            self._minute_count = 0

    def _has_capacity(self) -> bool:
        self._roll_windows()
        return (
            self._in_flight < self.max_concurrent
            and self._second_count < self.max_per_second
            and self._minute_count < self.max_per_minute
        )

    def _take_slot(self) -> None:
        self._in_flight += 1
        self._second_count += 1
        self._minute_count += 1
        self._metrics.record_in_flight(self._in_flight)

    def _release(self) -> None:
        self._in_flight -= 1
        self._stats["completed_requests"] += 1
        self._metrics.record_in_flight(self._in_flight)
        self._drain()

    # ========================================================================
    # Queue
    # ========================================================================

    def _enqueue(self, item: QueuedOperation) -> None:
        if item.priority == RequestPriority.HIGH:
            self._queue.insert(0, item)
        else:
            self._queue.append(item)

        self._stats["queued_requests"] += 1
        self._stats["max_queue_size"] = max(self._stats["max_queue_size"], len(self._queue))
        self._metrics.record_queue_depth(len(self._queue))

    def _remove(self, item: QueuedOperation) -> None:
        try:
            self._queue.remove(item)
        except ValueError:
            pass
        self._metrics.record_queue_depth(len(self._queue))

    async def _wait_for_slot(
        self, context: dict[str, Any], priority: RequestPriority, timeout: float
    ) -> None:
        if len(self._queue) >= self.queue_max_size:
            self._stats["rejected_requests"] += 1
            self._metrics.record_admission_rejection(AdmissionCapacityError.error_code)
            log_stage(logger, "A.1", "Admission queue full", level="warning", queue_length=len(self._queue))
            raise AdmissionCapacityError(
                "Admission queue is full",
                details={"queue_length": len(self._queue), "queue_max_size": self.queue_max_size},
            )

        loop = asyncio.get_running_loop()
        item = QueuedOperation(
            request_id=str(context.get("request_id") or uuid.uuid4()),
            priority=priority,
            enqueued_at=loop.time(),
            timeout=timeout,
            waiter=loop.create_future(),
            context=context,
        )
        self._enqueue(item)
        log_stage(
            logger,
            "A.2",
            "Operation queued",
            level="debug",
            request_id=item.request_id,
            priority=priority.value,
            queue_length=len(self._queue),
        )
        self._drain()

        try:
            await asyncio.wait_for(asyncio.shield(item.waiter), timeout)
        except TimeoutError:
            if item.granted:
                return
            self._remove(item)
            self._stats["rejected_requests"] += 1
            self._metrics.record_admission_rejection(AdmissionQueueTimeoutError.error_code)
            log_stage(
                logger, "A.3", "Queued operation timed out", level="warning",
                request_id=item.request_id, timeout=timeout,
            )
            raise AdmissionQueueTimeoutError(
                f"Not admitted within {timeout}s",
                details={"request_id": item.request_id, "timeout": timeout},
            ) from None
        except asyncio.CancelledError:
            if item.granted:
                self._release()
            else:
                self._remove(item)
            raise

    def _drain(self) -> None:
        loop = asyncio.get_running_loop()

        while self._queue and self._has_capacity():
            item = self._queue.popleft()
            if item.waiter.done():
                continue
            waited = loop.time() - item.enqueued_at
            if waited > item.timeout:
                # its own timeout handler rejects it
                continue

            self._take_slot()
            item.granted = True
            item.waiter.set_result(None)

            self._admitted_from_queue += 1
            n = self._admitted_from_queue
            average = self._stats["average_wait_time_ms"]
            self._stats["average_wait_time_ms"] = round(average + (waited * 1000 - average) / n, 3)
            self._metrics.record_admission_wait(waited)
            log_stage(logger, "A.4", "Queued operation admitted", level="debug", request_id=item.request_id)

        self._metrics.record_queue_depth(len(self._queue))

        if self._queue and self._in_flight < self.max_concurrent:
            self._schedule_drain(loop)

    def _schedule_drain(self, loop: asyncio.AbstractEventLoop) -> None:
        """Queue is blocked only by a rate window: wake up at the next boundary."""
        if self._drain_handle is not None and not self._drain_handle.cancelled():
            return

        now = self._clock()
        if self._minute_count >= self.max_per_minute:
            delay = 60 - (now % 60)
        else:
            delay = 1 - (now % 1)

        def _wake():
            self._drain_handle = None
            self._drain()

        self._drain_handle = loop.call_later(delay + 0.001, _wake)
