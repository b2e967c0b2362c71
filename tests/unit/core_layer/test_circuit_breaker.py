"""
Unit Tests for CircuitBreaker and ResilientCall

Tests the resilience logic including state transitions (closed -> open -> half-open),
error classification, backoff bounds and the retry/fallback orchestration.
"""

import asyncio

import httpx
import pytest

from src.core.config.constants import CircuitState
from src.core.exceptions import (
    CircuitBreakerOpenError,
    UpstreamHTTPError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from src.core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    ResilientCall,
    classify_error,
    compute_backoff_delay,
    get_circuit_breaker_manager,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock, mock_metrics):
    return CircuitBreaker(
        "chat_stream",
        failure_threshold=3,
        reset_timeout=30.0,
        success_threshold=2,
        metrics=mock_metrics,
        clock=clock,
    )


@pytest.fixture
def make_call(breaker, mock_metrics, no_sleep):
    def _make(**kwargs):
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("base_delay", 0.5)
        kwargs.setdefault("max_delay", 4.0)
        return ResilientCall("chat_stream", breaker=breaker, metrics=mock_metrics, sleep=no_sleep, **kwargs)

    return _make


def _failing(*errors, result="ok"):
    """Operation that raises the given errors in order, then returns `result`."""
    remaining = list(errors)
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if remaining:
            raise remaining.pop(0)
        return result

    operation.calls = calls
    return operation


@pytest.mark.unit
class TestErrorClassification:
    @pytest.mark.parametrize("status_code", [500, 502, 503, 504, 429, 408])
    def test_transient_http_status_is_retryable(self, status_code):
        error = UpstreamHTTPError("busy", status_code=status_code)
        assert classify_error(error).retryable is True

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_other_client_errors_are_permanent(self, status_code):
        error = UpstreamHTTPError("bad", status_code=status_code)
        classification = classify_error(error)
        assert classification.retryable is False
        assert classification.category == "http"

    def test_timeouts_and_network_errors_are_retryable(self):
        assert classify_error(UpstreamTimeoutError("slow")).retryable is True
        assert classify_error(httpx.ConnectError("refused")).category == "network"
        assert classify_error(httpx.ReadTimeout("slow")).category == "timeout"
        assert classify_error(ConnectionResetError()).retryable is True

    def test_malformed_response_is_permanent(self):
        assert classify_error(UpstreamResponseError("not json")).retryable is False
        assert classify_error(ValueError("whatever")).retryable is False


@pytest.mark.unit
class TestBackoff:
    def test_unjittered_delay_is_non_decreasing_and_capped(self):
        delays = [compute_backoff_delay(n, 0.5, 4.0, jitter_ratio=0.0) for n in range(1, 10)]

        assert delays[:4] == [0.5, 1.0, 2.0, 4.0]
        assert all(a <= b for a, b in zip(delays, delays[1:], strict=False))
        assert max(delays) == 4.0

    @pytest.mark.parametrize("rng_value", [0.0, 0.5, 0.999])
    def test_jitter_stays_within_a_quarter_of_the_delay(self, rng_value):
        delay = compute_backoff_delay(3, 0.5, 4.0, jitter_ratio=0.25, rng=lambda: rng_value)

        assert 2.0 * 0.75 <= delay <= 2.0 * 1.25

    def test_jitter_never_exceeds_the_cap_by_more_than_the_ratio(self):
        delay = compute_backoff_delay(20, 1.0, 10.0, jitter_ratio=0.25, rng=lambda: 0.999)
        assert delay <= 12.5


@pytest.mark.unit
class TestCircuitBreakerStates:
    def test_breaker_initial_state_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_opens_after_consecutive_failures(self, breaker):
        for _ in range(3):
            breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_half_open_after_reset_timeout(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()

        clock.advance(29.9)
        assert breaker.allow_request() is False

        clock.advance(0.2)
        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_closes_after_success_threshold(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_half_open_admits_one_probe_at_a_time(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False
        assert breaker.get_status()["probe_in_flight"] is True

        breaker.record_success()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True

    def test_released_probe_lets_the_next_call_through(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        breaker.allow_request()

        breaker.release_probe()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True

    def test_status_reports_time_until_reset(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(10)

        status = breaker.get_status()
        assert status["state"] == "open"
        assert status["time_until_reset"] == 20.0

    def test_state_changes_are_exported(self, breaker, mock_metrics):
        for _ in range(3):
            breaker.record_failure()

        mock_metrics.set_circuit_state.assert_called_with("chat_stream", "open")


@pytest.mark.unit
class TestCircuitBreakerManager:
    def test_get_breaker_returns_existing_instance(self, breaker_manager):
        assert breaker_manager.get_breaker("a") is breaker_manager.get_breaker("a")
        assert breaker_manager.get_breaker("a") is not breaker_manager.get_breaker("b")

    def test_health_reflects_open_breakers(self, breaker_manager):
        breaker = breaker_manager.get_breaker("create_conversation")
        assert breaker_manager.get_health_status()["status"] == "healthy"

        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        health = breaker_manager.get_health_status()
        assert health["status"] == "unhealthy"
        assert health["breakers"]["create_conversation"]["state"] == "open"

    def test_reset_all_closes_every_breaker(self, breaker_manager):
        breaker = breaker_manager.get_breaker("list_conversations")
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        breaker_manager.reset_all()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_global_manager_is_a_singleton(self):
        assert get_circuit_breaker_manager() is get_circuit_breaker_manager()
        assert isinstance(get_circuit_breaker_manager(), CircuitBreakerManager)


@pytest.mark.unit
class TestResilientCall:
    @pytest.mark.asyncio
    async def test_two_transient_failures_then_success(self, make_call, breaker, no_sleep):
        operation = _failing(
            UpstreamHTTPError("busy", status_code=503),
            UpstreamHTTPError("busy", status_code=503),
            result="stream",
        )

        result = await make_call().execute(operation)

        assert result == "stream"
        assert operation.calls["count"] == 3
        assert len(no_sleep.delays) == 2
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_backoff_grows_between_attempts(self, make_call, no_sleep):
        operation = _failing(*(UpstreamTimeoutError("slow") for _ in range(4)))

        with pytest.raises(UpstreamTimeoutError):
            await make_call(max_retries=4, jitter_ratio=0.0).execute(operation)

        assert no_sleep.delays == [0.5, 1.0, 2.0]
        assert operation.calls["count"] == 4

    @pytest.mark.asyncio
    async def test_lambda_returning_coroutine_is_awaited_and_retried(self, make_call, breaker, no_sleep):
        operation = _failing(
            UpstreamHTTPError("busy", status_code=503),
            UpstreamHTTPError("busy", status_code=503),
            result={"id": "conv-1"},
        )

        result = await make_call().execute(lambda: operation())

        assert result == {"id": "conv-1"}
        assert operation.calls["count"] == 3
        assert len(no_sleep.delays) == 2
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_as_one_breaker_failure(self, make_call, breaker):
        operation = _failing(*(UpstreamHTTPError("busy", status_code=502) for _ in range(3)))

        with pytest.raises(UpstreamHTTPError):
            await make_call().execute(operation)

        assert operation.calls["count"] == 3
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried_and_leaves_breaker_alone(self, make_call, breaker):
        operation = _failing(UpstreamHTTPError("unauthorized", status_code=401))

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await make_call().execute(operation)

        assert exc_info.value.status_code == 401
        assert operation.calls["count"] == 1
        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_without_calling(self, make_call, breaker):
        for _ in range(3):
            breaker.record_failure()
        operation = _failing()

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await make_call().execute(operation)

        assert operation.calls["count"] == 0
        assert exc_info.value.details["operation"] == "chat_stream"
        assert exc_info.value.details["retry_after"] > 0

    @pytest.mark.asyncio
    async def test_open_circuit_skips_fallback(self, make_call, breaker):
        for _ in range(3):
            breaker.record_failure()
        fallback_calls = []

        async def fallback(error, context):
            fallback_calls.append(error)
            return "fallback"

        with pytest.raises(CircuitBreakerOpenError):
            await make_call().execute(_failing(), fallback=fallback)

        assert fallback_calls == []

    @pytest.mark.asyncio
    async def test_fallback_receives_error_and_context(self, make_call):
        seen = {}

        async def fallback(error, context):
            seen["error"] = error
            seen["context"] = context
            return []

        result = await make_call().execute(
            _failing(UpstreamResponseError("garbage")),
            fallback=fallback,
            context={"client_id": "u-1"},
        )

        assert result == []
        assert isinstance(seen["error"], UpstreamResponseError)
        assert seen["context"] == {"client_id": "u-1"}

    @pytest.mark.asyncio
    async def test_failing_fallback_reraises_original_error(self, make_call):
        async def fallback(error, context):
            raise RuntimeError("fallback broke")

        with pytest.raises(UpstreamResponseError):
            await make_call().execute(_failing(UpstreamResponseError("garbage")), fallback=fallback)

    @pytest.mark.asyncio
    async def test_consecutive_failed_calls_open_the_circuit(self, make_call, breaker):
        call = make_call(max_retries=1)

        for _ in range(3):
            with pytest.raises(UpstreamHTTPError):
                await call.execute(_failing(UpstreamHTTPError("down", status_code=500)))

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await call.execute(_failing())

    @pytest.mark.asyncio
    async def test_call_wrapper_forwards_arguments(self, make_call):
        async def create(name, *, suffix):
            await asyncio.sleep(0)
            return f"{name}{suffix}"

        assert await make_call().call(create, "conv", suffix="-1") == "conv-1"

    @pytest.mark.asyncio
    async def test_concurrent_calls_fail_fast_while_half_open_probe_runs(self, make_call, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)
        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "ok"

        call = make_call()
        probe = asyncio.create_task(call.execute(slow_probe))
        await asyncio.sleep(0)

        with pytest.raises(CircuitBreakerOpenError):
            await call.execute(_failing())

        release.set()
        assert await probe == "ok"
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True

    @pytest.mark.asyncio
    async def test_permanent_error_during_probe_frees_the_probe(self, make_call, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(31)

        with pytest.raises(UpstreamHTTPError):
            await make_call().execute(_failing(UpstreamHTTPError("unauthorized", status_code=401)))

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.get_status()["probe_in_flight"] is False
