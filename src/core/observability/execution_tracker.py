"""
Centralized Execution Time Tracking Module

Times the stages of a chat request (admission, conversation resolve, upstream
open, relay, follow-up, terminal) and keeps the timings per thread id until the
request finishes, so the final log line of a request carries a complete
breakdown of where its time went.

Architectural Decision: Context manager pattern for automatic timing
- Automatic start/end time capture
- Nested timing support (a stage opened inside another becomes a substage)
- Thread ID correlation for all measurements
- Hash-based sampling to bound memory at scale

Author: System Architect
Date: 2025-12-05
"""

import hashlib
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.core.config.settings import get_settings
from src.core.logging import get_logger, log_stage

logger = get_logger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class StageExecution:
    """
    Represents a single stage execution with timing information.

    Attributes:
        stage_id: Stage identifier (e.g., "2.0_CONVERSATION_RESOLVE")
        stage_name: Human-readable stage name
        thread_id: Thread ID for correlation
        started_at: Start timestamp (ISO format)
        ended_at: End timestamp (ISO format)
        duration_ms: Duration in milliseconds
        success: Whether stage completed successfully
        error_type: Error type if failed
        substages: Nested stage executions
        metadata: Additional metadata
    """

    stage_id: str
    stage_name: str
    thread_id: str
    started_at: str
    ended_at: str | None = None
    duration_ms: float | None = None
    success: bool = True
    error_type: str | None = None
    substages: list["StageExecution"] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        data = asdict(self)
        data["substages"] = [s.to_dict() for s in self.substages]
        return data


class ExecutionTracker:
    """
    Execution time tracker for the stages of a chat request.

    Supports probabilistic sampling:
    - EXECUTION_TRACKING_SAMPLE_RATE of thread ids are tracked (default 10%)
    - The decision is a hash of the thread id, so a request is either tracked
      in every stage or in none of them

    Usage:
        tracker = ExecutionTracker()

        with tracker.track_stage(Stage.CONVERSATION_RESOLVE.value, "Resolve conversation", thread_id):
            handle = await cache.resolve(client_id, token)

        summary = tracker.get_execution_summary(thread_id)
        tracker.clear_thread_data(thread_id)
    """

    def __init__(self, sample_rate: float | None = None, enabled: bool | None = None):
        self._executions: dict[str, list[StageExecution]] = {}
        self._stage_stack: dict[str, list[StageExecution]] = {}

        settings = get_settings()
        self._tracking_enabled = (
            settings.execution_tracking.EXECUTION_TRACKING_ENABLED if enabled is None else enabled
        )
        self._sample_rate = float(
            settings.execution_tracking.EXECUTION_TRACKING_SAMPLE_RATE
            if sample_rate is None
            else sample_rate
        )

        logger.info(
            "Execution tracker initialized",
            stage="ET.1",
            sample_rate=self._sample_rate,
            tracking_enabled=self._tracking_enabled,
        )

    def should_track(self, thread_id: str, force: bool = False) -> bool:
        """
        Consistent hash-based sampling decision for a thread id.

        The MD5 of the thread id is mapped onto a 0-99 bucket and compared with
        ``sample_rate * 100``; the same thread id always lands in the same bucket.
        """
        if force:
            return True
        if not self._tracking_enabled:
            return False
        if self._sample_rate >= 1.0:
            return True

        hash_value = int(hashlib.md5(thread_id.encode()).hexdigest(), 16)
        return hash_value % 100 < self._sample_rate * 100

    @contextmanager
    def track_stage(
        self,
        stage_id: str,
        stage_name: str,
        thread_id: str,
        force_tracking: bool = False,
        **metadata,
    ):
        """
        Context manager for tracking a stage execution.

        ET.2: Track stage execution with automatic timing

        Yields:
            StageExecution, or None when the thread id is not sampled
        """
        if not self.should_track(thread_id, force=force_tracking):
            yield None
            return

        execution = StageExecution(
            stage_id=str(stage_id),
            stage_name=stage_name,
            thread_id=thread_id,
            started_at=_utc_now(),
            metadata=metadata,
        )

        self._executions.setdefault(thread_id, [])
        stack = self._stage_stack.setdefault(thread_id, [])
        stack.append(execution)

        start_time = time.perf_counter()
        log_stage(logger, execution.stage_id, f"Stage started: {stage_name}", level="debug", **metadata)

        try:
            yield execution
            execution.success = True

        except BaseException as e:
            execution.success = False
            execution.error_type = type(e).__name__
            raise

        finally:
            execution.ended_at = _utc_now()
            execution.duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

            stack.pop()
            if stack:
                stack[-1].substages.append(execution)
            else:
                self._executions.setdefault(thread_id, []).append(execution)

            log_stage(
                logger,
                execution.stage_id,
                f"Stage completed: {stage_name}",
                level="info" if execution.success else "warning",
                duration_ms=execution.duration_ms,
                success=execution.success,
                error_type=execution.error_type,
            )

    def get_execution_summary(self, thread_id: str) -> dict[str, Any]:
        """
        Get execution summary for a thread.

        Returns:
            Dict with total_duration_ms, stage_count, stages, success, failed_stages
        """
        executions = self._executions.get(thread_id, [])

        failed_stages = [
            {"stage_id": e.stage_id, "stage_name": e.stage_name, "error_type": e.error_type}
            for e in executions
            if not e.success
        ]

        return {
            "thread_id": thread_id,
            "total_duration_ms": round(
                sum(e.duration_ms for e in executions if e.duration_ms is not None), 2
            ),
            "stage_count": len(executions),
            "stages": [e.to_dict() for e in executions],
            "success": not failed_stages,
            "failed_stages": failed_stages,
        }

    def clear_thread_data(self, thread_id: str) -> None:
        """
        Clear execution data for a thread.

        ET.6: Called once the request finished to prevent unbounded growth.
        """
        self._executions.pop(thread_id, None)
        self._stage_stack.pop(thread_id, None)


# Global execution tracker instance (singleton)
_tracker: ExecutionTracker | None = None


def get_tracker() -> ExecutionTracker:
    """
    Get the global execution tracker instance (singleton).

    Returns:
        ExecutionTracker: Global tracker instance
    """
    global _tracker

    if _tracker is None:
        _tracker = ExecutionTracker()

    return _tracker
