"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


# ============================================================================
# Pytest Configuration
# ============================================================================

# pytest-asyncio is automatically loaded via pyproject.toml configuration


@pytest.fixture(autouse=True)
def reset_breaker_registry():
    """
    Give every test a fresh global circuit breaker registry.

    Breakers are process-wide, so a test that opens one would otherwise leak
    the open state into the next test.
    """
    import src.core.resilience.circuit_breaker as circuit_breaker

    circuit_breaker._cb_manager = None
    yield
    circuit_breaker._cb_manager = None


# ============================================================================
# Mock Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def mock_metrics():
    """
    Mock MetricsCollector so tests can assert on recorded metrics.
    """
    from src.infrastructure.monitoring.metrics_collector import MetricsCollector

    return MagicMock(spec=MetricsCollector)


@pytest.fixture
def mock_execution_tracker():
    """
    Mock ExecutionTracker for testing.

    Provides context manager for stage tracking.
    """
    from src.core.observability.execution_tracker import ExecutionTracker

    tracker = MagicMock(spec=ExecutionTracker)

    # Mock context manager for track_stage
    tracker.track_stage = MagicMock()
    tracker.track_stage.return_value.__enter__ = MagicMock()
    # Return None from __exit__ so exceptions are NOT swallowed
    tracker.track_stage.return_value.__exit__ = MagicMock(return_value=None)

    tracker.get_execution_summary = MagicMock(return_value={"total_duration_ms": 100, "stage_count": 0})
    tracker.clear_thread_data = MagicMock()
    tracker.should_track = MagicMock(return_value=True)

    return tracker


@pytest.fixture
def breaker_manager(mock_metrics):
    """Isolated circuit breaker registry."""
    from src.core.resilience.circuit_breaker import CircuitBreakerManager

    return CircuitBreakerManager(metrics=mock_metrics)


@pytest.fixture
def no_sleep():
    """Retry sleep that returns immediately and records requested delays."""
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays
    return sleep


# ============================================================================
# Upstream Fixtures
# ============================================================================


@pytest.fixture
def fake_upstream():
    """
    Factory for scripted fake upstream clients.

    Usage:
        client = fake_upstream(script=[delta("Hi"), terminal()])
    """
    from src.upstream.fake_client import FakeUpstreamClient

    def _make(**kwargs):
        return FakeUpstreamClient(**kwargs)

    return _make


# ============================================================================
# Streaming Fixtures
# ============================================================================


@pytest.fixture
def fast_relay(mock_metrics):
    """
    StreamRelay with short timers so background tasks never fire by surprise
    and finish() does not wait.
    """
    from src.chat.services.stream_relay import StreamRelay

    return StreamRelay(
        buffer_size=1,
        flush_interval=0.01,
        heartbeat_interval=60.0,
        processing_interval=60.0,
        close_grace=0.0,
        disconnect_grace=0.0,
        metrics=mock_metrics,
    )


@pytest.fixture
def sample_chat_request():
    """Sample ChatRequest for testing."""
    from src.chat.models.chat_request import ChatRequest

    return ChatRequest(
        query="What is our leave policy?",
        user_id="user-456",
        access_token="token-abc",
        thread_id="test-thread-123",
    )
