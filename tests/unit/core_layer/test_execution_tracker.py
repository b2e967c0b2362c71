"""
Unit Tests for ExecutionTracker

Tests the hash-based sampling algorithm and per-thread stage timing used for
the chat request breakdown.
"""

import time

import pytest

from src.core.config.constants import Stage
from src.core.observability.execution_tracker import ExecutionTracker


@pytest.mark.unit
class TestExecutionTrackerSampling:
    def test_should_track_is_deterministic_for_same_thread_id(self):
        """
        Same thread_id must always produce the same decision so every stage of
        a request is either tracked or not.
        """
        tracker = ExecutionTracker(sample_rate=0.5, enabled=True)

        results = {tracker.should_track("thread-abc-123") for _ in range(10)}

        assert len(results) == 1

    def test_should_track_distribution_approximates_sample_rate(self):
        tracker = ExecutionTracker(sample_rate=0.1, enabled=True)

        tracked = sum(1 for i in range(10000) if tracker.should_track(f"thread-{i}"))

        assert 0.08 <= tracked / 10000 <= 0.12

    def test_full_sample_rate_tracks_everything(self):
        tracker = ExecutionTracker(sample_rate=1.0, enabled=True)
        assert all(tracker.should_track(f"thread-{i}") for i in range(100))

    def test_zero_sample_rate_tracks_nothing_unless_forced(self):
        tracker = ExecutionTracker(sample_rate=0.0, enabled=True)

        assert not any(tracker.should_track(f"thread-{i}") for i in range(100))
        assert tracker.should_track("thread-1", force=True) is True

    def test_disabled_tracker_tracks_nothing(self):
        tracker = ExecutionTracker(sample_rate=1.0, enabled=False)
        assert tracker.should_track("thread-1") is False

    @pytest.mark.parametrize("thread_id", ["thread-测试", "thread-🚀", "a" * 1000, ""])
    def test_unusual_thread_ids_are_handled(self, thread_id):
        tracker = ExecutionTracker(sample_rate=0.5, enabled=True)
        assert tracker.should_track(thread_id) == tracker.should_track(thread_id)


@pytest.mark.unit
class TestExecutionTrackerStageTracking:
    @pytest.fixture
    def tracker(self):
        return ExecutionTracker(sample_rate=1.0, enabled=True)

    def test_track_stage_creates_execution_record(self, tracker):
        with tracker.track_stage(Stage.CONVERSATION_RESOLVE.value, "Resolve conversation", "t-1"):
            pass

        summary = tracker.get_execution_summary("t-1")

        assert summary["stage_count"] == 1
        assert summary["stages"][0]["stage_id"] == "2.0_CONVERSATION_RESOLVE"
        assert summary["stages"][0]["stage_name"] == "Resolve conversation"
        assert summary["success"] is True

    def test_track_stage_records_duration(self, tracker):
        with tracker.track_stage("1", "Sleep", "t-1"):
            time.sleep(0.01)

        stage = tracker.get_execution_summary("t-1")["stages"][0]
        assert stage["duration_ms"] >= 10

    def test_nested_stage_becomes_substage(self, tracker):
        with tracker.track_stage("3.0", "Open upstream", "t-1"):
            with tracker.track_stage("CB", "Call chat_stream", "t-1"):
                pass

        stages = tracker.get_execution_summary("t-1")["stages"]

        assert len(stages) == 1
        assert stages[0]["substages"][0]["stage_id"] == "CB"

    def test_exception_in_stage_is_recorded_and_propagated(self, tracker):
        with pytest.raises(ValueError):
            with tracker.track_stage("4.0", "Relay", "t-1"):
                raise ValueError("boom")

        summary = tracker.get_execution_summary("t-1")

        assert summary["success"] is False
        assert summary["failed_stages"] == [
            {"stage_id": "4.0", "stage_name": "Relay", "error_type": "ValueError"}
        ]

    def test_untracked_thread_yields_none(self):
        tracker = ExecutionTracker(sample_rate=0.0, enabled=True)

        with tracker.track_stage("1", "Stage", "t-1") as execution:
            assert execution is None

        assert tracker.get_execution_summary("t-1")["stage_count"] == 0

    def test_threads_are_tracked_independently_and_cleared(self, tracker):
        with tracker.track_stage("1", "Stage A", "t-1"):
            pass
        with tracker.track_stage("1", "Stage B", "t-2"):
            pass

        tracker.clear_thread_data("t-1")

        assert tracker.get_execution_summary("t-1")["stage_count"] == 0
        assert tracker.get_execution_summary("t-2")["stages"][0]["stage_name"] == "Stage B"

    def test_clear_unknown_thread_is_a_no_op(self, tracker):
        tracker.clear_thread_data("unknown-thread")
