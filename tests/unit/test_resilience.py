"""Tests for resilience module."""

import asyncio
import logging

import pydantic
import pytest

from llm_resilience.errors import (
    CircuitOpenError,
    ClassifiedError,
    ErrorKind,
    RateLimitExceededError,
    classify_error,
)
from llm_resilience.resilience import (
    DEFAULT_TEMPLATES,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitEvent,
    CircuitState,
    ErrorHandler,
    ErrorHandlingConfig,
    FallbackStrategies,
    RateLimitConfig,
    RateLimiter,
    RetryConfig,
    RetryManager,
    next_state,
)
from llm_resilience.telemetry import get_log_context
from tests.conftest import FakeAPIError, FakeClock


def fast_retry(max_retries: int = 2) -> RetryConfig:
    """Retry config with millisecond delays and no jitter."""
    return RetryConfig(max_retries=max_retries, base_delay_ms=1, max_delay_ms=5, jitter=False)


class TestRetryManager:
    """Tests for RetryManager."""

    def test_default_config(self) -> None:
        """Test default retry configuration."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.exponential_base == 2
        assert config.jitter is True
        assert config.retryable_kinds == {
            ErrorKind.RATE_LIMIT,
            ErrorKind.SERVICE_UNAVAILABLE,
            ErrorKind.TIMEOUT,
            ErrorKind.NETWORK_ERROR,
            ErrorKind.MODEL_UNAVAILABLE,
        }

    def test_no_retry_config(self) -> None:
        """Test no-retry configuration."""
        assert RetryConfig.no_retry().max_retries == 0

    def test_calculate_delay_exponential(self) -> None:
        """Test exponential backoff calculation."""
        manager = RetryManager(RetryConfig(jitter=False))
        assert manager.calculate_delay(1) == 1000
        assert manager.calculate_delay(2) == 2000
        assert manager.calculate_delay(3) == 4000

    def test_calculate_delay_monotonic_and_capped(self) -> None:
        """Test delays never decrease and never exceed the cap."""
        config = RetryConfig(base_delay_ms=500, max_delay_ms=5000, jitter=False)
        manager = RetryManager(config)
        delays = [manager.calculate_delay(attempt) for attempt in range(1, 12)]
        assert delays == sorted(delays)
        assert max(delays) == 5000

    def test_calculate_delay_jitter_bounds(self) -> None:
        """Test jitter adds at most 10%."""
        manager = RetryManager(RetryConfig(base_delay_ms=1000, jitter=True))
        for _ in range(50):
            delay = manager.calculate_delay(2)
            assert 2000 <= delay <= 2200

    def test_calculate_delay_respects_retry_after(self) -> None:
        """Test that the retry-after hint wins and is capped."""
        manager = RetryManager(RetryConfig(max_delay_ms=30000))
        error = classify_error(
            FakeAPIError("Slow down", status_code=429, headers={"retry-after": "5"})
        )
        assert manager.calculate_delay(1, error) == 5000

        long_wait = classify_error(
            FakeAPIError("Slow down", status_code=429, headers={"retry-after": "120"})
        )
        assert manager.calculate_delay(1, long_wait) == 30000

    def test_should_retry(self) -> None:
        """Test retry eligibility combines flag and kind."""
        manager = RetryManager(RetryConfig(retryable_kinds={ErrorKind.RATE_LIMIT}))
        rate_limited = classify_error(FakeAPIError("Slow down", status_code=429))
        unavailable = classify_error(FakeAPIError("Down", status_code=503))
        assert manager.should_retry(rate_limited) is True
        assert manager.should_retry(unavailable) is False

    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        """Test successful execution."""
        manager = RetryManager(fast_retry())

        async def success_op() -> str:
            return "success"

        assert await manager.execute_with_retry(success_op) == "success"

    @pytest.mark.asyncio
    async def test_retry_then_success(self) -> None:
        """Test two transient failures then success."""
        manager = RetryManager(fast_retry(max_retries=2))
        calls = [0]

        async def flaky_op() -> str:
            calls[0] += 1
            if calls[0] < 3:
                raise FakeAPIError("Server error", status_code=500)
            return "success"

        assert await manager.execute_with_retry(flaky_op) == "success"
        assert calls[0] == 3

    @pytest.mark.asyncio
    async def test_all_retries_fail(self) -> None:
        """Test exhausted retries raise with the attempt count."""
        manager = RetryManager(fast_retry(max_retries=2))
        calls = [0]
        raw = FakeAPIError("Server error", status_code=503)

        async def always_fail() -> str:
            calls[0] += 1
            raise raw

        with pytest.raises(ClassifiedError) as exc_info:
            await manager.execute_with_retry(always_fail)

        assert calls[0] == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.kind == ErrorKind.SERVICE_UNAVAILABLE
        assert exc_info.value.__cause__ is raw

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, fatal_error: FakeAPIError) -> None:
        """Test non-retryable errors are not retried."""
        manager = RetryManager(fast_retry(max_retries=5))
        calls = [0]

        async def auth_fail() -> str:
            calls[0] += 1
            raise fatal_error

        with pytest.raises(ClassifiedError) as exc_info:
            await manager.execute_with_retry(auth_fail)

        assert calls[0] == 1
        assert exc_info.value.attempts == 1
        assert exc_info.value.kind == ErrorKind.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_kind_outside_retryable_kinds(self) -> None:
        """Test a retryable error whose kind is not configured is not retried."""
        config = RetryConfig(
            max_retries=3, base_delay_ms=1, jitter=False, retryable_kinds={ErrorKind.TIMEOUT}
        )
        manager = RetryManager(config)
        calls = [0]

        async def unavailable() -> str:
            calls[0] += 1
            raise FakeAPIError("Down", status_code=503)

        with pytest.raises(ClassifiedError):
            await manager.execute_with_retry(unavailable)
        assert calls[0] == 1

    @pytest.mark.asyncio
    async def test_cancellation_stops_retrying(self) -> None:
        """Test cancellation propagates without further attempts."""
        manager = RetryManager(fast_retry(max_retries=3))
        calls = [0]

        async def cancelled() -> str:
            calls[0] += 1
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await manager.execute_with_retry(cancelled)
        assert calls[0] == 1

    @pytest.mark.asyncio
    async def test_logs_retries_and_recovery(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test retry warnings and the recovery message are logged."""
        manager = RetryManager(fast_retry(max_retries=1))
        calls = [0]

        async def flaky_op() -> str:
            calls[0] += 1
            if calls[0] == 1:
                raise FakeAPIError("Server error", status_code=500)
            return "ok"

        with caplog.at_level(logging.INFO, logger="llm_resilience.retry"):
            await manager.execute_with_retry(flaky_op, context="Chat completion")

        messages = [r.getMessage() for r in caplog.records]
        assert any("Chat completion failed (attempt 1/2)" in m for m in messages)
        assert any("Chat completion succeeded on attempt 2" in m for m in messages)


class TestCircuitTransitions:
    """Tests for the pure transition function."""

    def test_closed_failure_below_threshold(self) -> None:
        """Test failures accumulate below the threshold."""
        config = CircuitBreakerConfig(failure_threshold=3)
        state = next_state(CircuitBreakerState(), CircuitEvent.FAILURE, config, 1000.0)
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 1
        assert state.last_failure_time_ms == 1000.0

    def test_closed_trips_at_threshold(self) -> None:
        """Test reaching the threshold opens the circuit."""
        config = CircuitBreakerConfig(failure_threshold=2)
        current = CircuitBreakerState(failure_count=1, last_failure_time_ms=900.0)
        state = next_state(current, CircuitEvent.FAILURE, config, 1000.0)
        assert state.state == CircuitState.OPEN
        assert state.last_failure_time_ms == 1000.0

    def test_closed_success_resets_failures(self) -> None:
        """Test success fully resets the failure count."""
        config = CircuitBreakerConfig()
        current = CircuitBreakerState(failure_count=4)
        state = next_state(current, CircuitEvent.SUCCESS, config, 1000.0)
        assert state.failure_count == 0

    def test_timeout_elapsed_only_from_open(self) -> None:
        """Test the timeout event only affects an open circuit."""
        config = CircuitBreakerConfig()
        closed = CircuitBreakerState()
        assert next_state(closed, CircuitEvent.TIMEOUT_ELAPSED, config, 0.0) is closed

        opened = CircuitBreakerState(state=CircuitState.OPEN, success_count=7)
        state = next_state(opened, CircuitEvent.TIMEOUT_ELAPSED, config, 0.0)
        assert state.state == CircuitState.HALF_OPEN
        assert state.success_count == 0
        assert state.half_open_calls_in_flight == 0

    def test_half_open_failure_reopens(self) -> None:
        """Test any failure in half-open reopens."""
        config = CircuitBreakerConfig()
        current = CircuitBreakerState(state=CircuitState.HALF_OPEN, success_count=2)
        state = next_state(current, CircuitEvent.FAILURE, config, 5000.0)
        assert state.state == CircuitState.OPEN
        assert state.last_failure_time_ms == 5000.0

    def test_half_open_successes_close(self) -> None:
        """Test enough half-open successes close the circuit."""
        config = CircuitBreakerConfig(half_open_max_calls=2)
        current = CircuitBreakerState(state=CircuitState.HALF_OPEN, failure_count=5)
        state = next_state(current, CircuitEvent.SUCCESS, config, 0.0)
        assert state.state == CircuitState.HALF_OPEN
        state = next_state(state, CircuitEvent.SUCCESS, config, 0.0)
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 0
        assert state.success_count == 0

    def test_stale_failures_do_not_accumulate(self) -> None:
        """Test failures outside the monitoring period restart the count."""
        config = CircuitBreakerConfig(failure_threshold=2, monitoring_period_ms=1000)
        current = CircuitBreakerState(failure_count=1, last_failure_time_ms=0.0)
        state = next_state(current, CircuitEvent.FAILURE, config, 5000.0)
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 1


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_initial_state_closed(self) -> None:
        """Test initial state is closed."""
        breaker = CircuitBreaker()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed is True

    def test_default_config(self) -> None:
        """Test default breaker configuration."""
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.recovery_timeout_ms == 60000
        assert config.monitoring_period_ms == 300000
        assert config.half_open_max_calls == 3

    @pytest.mark.asyncio
    async def test_failures_open_and_reject(self, clock: FakeClock) -> None:
        """Test two failures open the circuit and the next call is rejected."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2), clock=clock)
        calls = [0]

        async def fail_op() -> str:
            calls[0] += 1
            raise FakeAPIError("Down", status_code=503)

        for _ in range(2):
            with pytest.raises(FakeAPIError):
                await breaker.execute(fail_op)
        assert breaker.is_open is True

        clock.advance(30)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(fail_op)

        assert calls[0] == 2
        assert exc_info.value.time_until_retry_ms == pytest.approx(30000)
        assert breaker.get_metrics().failure_count == 2

    @pytest.mark.asyncio
    async def test_rejected_at_exact_timeout(self, clock: FakeClock) -> None:
        """Test the recovery timeout must be strictly exceeded."""
        breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout_ms=1000), clock=clock
        )

        async def fail_op() -> str:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await breaker.execute(fail_op)

        clock.advance(1.0)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(fail_op)

    @pytest.mark.asyncio
    async def test_recovery_through_half_open(self, clock: FakeClock) -> None:
        """Test OPEN -> HALF_OPEN -> CLOSED after consecutive successes."""
        config = CircuitBreakerConfig(failure_threshold=2, half_open_max_calls=3)
        breaker = CircuitBreaker(config, clock=clock)

        async def fail_op() -> str:
            raise RuntimeError("boom")

        async def success_op() -> str:
            return "ok"

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(fail_op)

        clock.advance(61)
        assert await breaker.execute(success_op) == "ok"
        assert breaker.is_half_open is True
        assert await breaker.execute(success_op) == "ok"
        assert breaker.is_half_open is True
        assert await breaker.execute(success_op) == "ok"
        assert breaker.is_closed is True

        metrics = breaker.get_metrics()
        assert metrics.failure_count == 0
        assert metrics.success_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock: FakeClock) -> None:
        """Test a failed trial call reopens the circuit."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), clock=clock)

        async def fail_op() -> str:
            raise RuntimeError("boom")

        async def success_op() -> str:
            return "ok"

        with pytest.raises(RuntimeError):
            await breaker.execute(fail_op)
        clock.advance(61)

        await breaker.execute(success_op)
        assert breaker.is_half_open is True

        with pytest.raises(RuntimeError):
            await breaker.execute(fail_op)
        assert breaker.is_open is True

        with pytest.raises(CircuitOpenError):
            await breaker.execute(success_op)

    @pytest.mark.asyncio
    async def test_half_open_limits_concurrent_trials(self, clock: FakeClock) -> None:
        """Test no more than half_open_max_calls trial calls run at once."""
        config = CircuitBreakerConfig(failure_threshold=1, half_open_max_calls=2)
        breaker = CircuitBreaker(config, clock=clock)
        gate = asyncio.Event()
        running = [0]
        peak = [0]

        async def fail_op() -> str:
            raise RuntimeError("boom")

        async def slow_op() -> str:
            running[0] += 1
            peak[0] = max(peak[0], running[0])
            await gate.wait()
            running[0] -= 1
            return "ok"

        with pytest.raises(RuntimeError):
            await breaker.execute(fail_op)
        clock.advance(61)

        first = asyncio.create_task(breaker.execute(slow_op))
        second = asyncio.create_task(breaker.execute(slow_op))
        await asyncio.sleep(0.01)

        with pytest.raises(CircuitOpenError, match="HALF_OPEN limit reached"):
            await breaker.execute(slow_op)

        gate.set()
        assert await asyncio.gather(first, second) == ["ok", "ok"]
        assert peak[0] == 2
        assert breaker.is_closed is True

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock: FakeClock) -> None:
        """Test a success in CLOSED clears earlier failures."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3), clock=clock)

        async def fail_op() -> str:
            raise RuntimeError("boom")

        async def success_op() -> str:
            return "ok"

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(fail_op)
        await breaker.execute(success_op)
        assert breaker.get_metrics().failure_count == 0

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(fail_op)
        assert breaker.is_closed is True

    @pytest.mark.asyncio
    async def test_logs_transitions(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test state transitions are logged."""
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), clock=clock)

        async def fail_op() -> str:
            raise RuntimeError("boom")

        with caplog.at_level(logging.INFO, logger="llm_resilience.circuit_breaker"):
            with pytest.raises(RuntimeError):
                await breaker.execute(fail_op)

        assert any("moving to OPEN" in r.getMessage() for r in caplog.records)

    def test_reset(self) -> None:
        """Test resetting the circuit."""
        breaker = CircuitBreaker()
        breaker._state = CircuitBreakerState(state=CircuitState.OPEN, failure_count=10)

        breaker.reset()

        assert breaker.is_closed is True
        assert breaker.get_metrics().failure_count == 0

    def test_metrics_snapshot(self) -> None:
        """Test the metrics snapshot."""
        data = CircuitBreaker().get_metrics().to_dict()
        assert data == {
            "state": "CLOSED",
            "failure_count": 0,
            "success_count": 0,
            "last_failure_time_ms": None,
        }


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_default_config(self) -> None:
        """Test default budgets."""
        config = RateLimitConfig()
        assert config.requests_per_minute == 60
        assert config.tokens_per_minute == 90000
        assert config.requests_per_hour == 3000
        assert config.tokens_per_hour == 250000

    @pytest.mark.asyncio
    async def test_minute_request_window(self, clock: FakeClock) -> None:
        """Test one request per minute is enforced and renews."""
        limiter = RateLimiter(RateLimitConfig(requests_per_minute=1), clock=clock)

        await limiter.check_rate_limit(10)
        await limiter.record_request(10)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check_rate_limit(10)
        assert exc_info.value.window == "minute"
        assert exc_info.value.limit_type == "requests"

        clock.advance(61)
        await limiter.check_rate_limit(10)

    @pytest.mark.asyncio
    async def test_entry_expires_at_window_boundary(self, clock: FakeClock) -> None:
        """Test an entry exactly one window old no longer counts."""
        limiter = RateLimiter(RateLimitConfig(requests_per_minute=1), clock=clock)
        await limiter.record_request(1)

        clock.advance(59.5)
        with pytest.raises(RateLimitExceededError):
            await limiter.check_rate_limit(1)

        clock.advance(0.5)
        await limiter.check_rate_limit(1)

    @pytest.mark.asyncio
    async def test_minute_token_budget(self, clock: FakeClock) -> None:
        """Test the token estimate counts against the minute budget."""
        limiter = RateLimiter(RateLimitConfig(tokens_per_minute=100), clock=clock)
        await limiter.record_request(60)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check_rate_limit(50)
        assert exc_info.value.limit_type == "tokens"

        await limiter.check_rate_limit(40)

    @pytest.mark.asyncio
    async def test_hour_request_budget_reports_wait(self, clock: FakeClock) -> None:
        """Test the hourly cap reports time until the oldest entry expires."""
        config = RateLimitConfig(requests_per_minute=100, requests_per_hour=2)
        limiter = RateLimiter(config, clock=clock)

        await limiter.record_request(1)
        clock.advance(600)
        await limiter.record_request(1)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check_rate_limit(1)

        assert exc_info.value.window == "hour"
        assert exc_info.value.retry_after_ms == 3_000_000
        assert "Wait 3000 seconds" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_hour_token_budget(self, clock: FakeClock) -> None:
        """Test the hourly token cap."""
        config = RateLimitConfig(tokens_per_minute=1000, tokens_per_hour=1500)
        limiter = RateLimiter(config, clock=clock)
        await limiter.record_request(1000)
        clock.advance(120)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check_rate_limit(600)
        assert exc_info.value.window == "hour"
        assert exc_info.value.limit_type == "tokens"

    @pytest.mark.asyncio
    async def test_usage_prunes_windows(self, clock: FakeClock) -> None:
        """Test usage reflects only the trailing windows."""
        limiter = RateLimiter(clock=clock)
        await limiter.record_request(100)
        await limiter.record_request(200)

        usage = limiter.get_usage()
        assert usage.requests_per_minute == 2
        assert usage.tokens_per_minute == 300

        clock.advance(90)
        usage = limiter.get_usage()
        assert usage.requests_per_minute == 0
        assert usage.tokens_per_minute == 0
        assert usage.requests_per_hour == 2
        assert usage.tokens_per_hour == 300

    @pytest.mark.asyncio
    async def test_reset(self, clock: FakeClock) -> None:
        """Test reset forgets usage."""
        limiter = RateLimiter(clock=clock)
        await limiter.record_request(100)
        limiter.reset()
        assert limiter.get_usage().to_dict() == {
            "requests_per_minute": 0,
            "tokens_per_minute": 0,
            "requests_per_hour": 0,
            "tokens_per_hour": 0,
        }


class TestFallbackStrategies:
    """Tests for FallbackStrategies."""

    @pytest.mark.asyncio
    async def test_template_by_context(self) -> None:
        """Test templates match by case-insensitive substring."""
        strategies = FallbackStrategies()
        text = await strategies.text_generation_fallback("prompt", "Draft MARKET_ANALYSIS")
        assert text == DEFAULT_TEMPLATES["market_analysis"]

    @pytest.mark.asyncio
    async def test_generic_text(self) -> None:
        """Test the generic message names the context."""
        strategies = FallbackStrategies()
        text = await strategies.text_generation_fallback("prompt", "text generation")
        assert text.startswith("Unable to generate custom content at this time.")
        assert text.endswith("assistance with: text generation")

    def test_custom_templates(self) -> None:
        """Test custom template tables."""
        strategies = FallbackStrategies(templates={"summary": "No summary available."})
        assert strategies.get_template_response("weekly summary") == "No summary available."
        assert strategies.get_template_response("cover_letter") is None

    @pytest.mark.asyncio
    async def test_json_schema(self) -> None:
        """Test minimal values per property type."""
        schema = {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "price": {"type": "number"},
                "count": {"type": "integer"},
                "approved": {"type": "boolean"},
                "tags": {"type": "array"},
                "meta": {"type": "object"},
            },
        }
        result = await FallbackStrategies().json_generation_fallback(schema, "JSON generation")
        assert result == {
            "title": "Generated title",
            "price": 0,
            "count": 0,
            "approved": False,
            "tags": [],
            "meta": None,
        }

    @pytest.mark.asyncio
    async def test_json_without_properties(self) -> None:
        """Test non-object schemas give an empty object."""
        strategies = FallbackStrategies()
        assert await strategies.json_generation_fallback({"type": "array"}) == {}
        assert await strategies.json_generation_fallback({"type": "object"}) == {}

    @pytest.mark.asyncio
    async def test_json_from_pydantic_model(self) -> None:
        """Test pydantic models are read through their JSON schema."""

        class Offer(pydantic.BaseModel):
            summary: str
            amount: float
            contingent: bool
            notes: list[str]

        result = await FallbackStrategies().json_generation_fallback(Offer)
        assert result == {
            "summary": "Generated summary",
            "amount": 0,
            "contingent": False,
            "notes": [],
        }


def fast_handler_config(**overrides: object) -> ErrorHandlingConfig:
    config = ErrorHandlingConfig(retry=fast_retry())
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class TestErrorHandler:
    """Tests for ErrorHandler."""

    def test_default_config(self) -> None:
        """Test default handler configuration."""
        config = ErrorHandlingConfig.default()
        assert config.enable_fallbacks is True
        assert config.log_errors is True
        assert config.report_metrics is True
        assert config.retry.max_retries == 3

    @pytest.mark.asyncio
    async def test_protection_success(self, clock: FakeClock) -> None:
        """Test a successful call records usage and the success metric."""
        handler = ErrorHandler(fast_handler_config(), clock=clock)

        async def op() -> str:
            return "ok"

        assert await handler.execute_with_protection(op, "chat", estimated_tokens=250) == "ok"
        assert handler.get_metrics() == {"success": 1}
        usage = handler.get_rate_limit_usage()
        assert usage.requests_per_minute == 1
        assert usage.tokens_per_minute == 250

    @pytest.mark.asyncio
    async def test_rate_limit_rejection_bypasses_breaker(self, clock: FakeClock) -> None:
        """Test rate-limit rejections never reach retry or the breaker."""
        config = fast_handler_config(rate_limit=RateLimitConfig(requests_per_minute=1))
        handler = ErrorHandler(config, clock=clock)
        calls = [0]

        async def op() -> str:
            calls[0] += 1
            return "ok"

        await handler.execute_with_protection(op)
        with pytest.raises(RateLimitExceededError):
            await handler.execute_with_protection(op)

        assert calls[0] == 1
        assert handler.get_circuit_breaker_metrics().failure_count == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_once(self, clock: FakeClock) -> None:
        """Test one protected call counts as one breaker failure."""
        handler = ErrorHandler(fast_handler_config(), clock=clock)
        calls = [0]

        async def op() -> str:
            calls[0] += 1
            raise FakeAPIError("Down", status_code=503)

        with pytest.raises(ClassifiedError) as exc_info:
            await handler.execute_with_protection(op)

        assert calls[0] == 3
        assert exc_info.value.attempts == 3
        assert handler.get_circuit_breaker_metrics().failure_count == 1
        assert handler.get_rate_limit_usage().requests_per_minute == 0

    @pytest.mark.asyncio
    async def test_breaker_opens_through_handler(self, clock: FakeClock) -> None:
        """Test repeated failures open the breaker and stop invocations."""
        config = ErrorHandlingConfig(
            retry=RetryConfig.no_retry(),
            circuit_breaker=CircuitBreakerConfig(failure_threshold=2),
        )
        handler = ErrorHandler(config, clock=clock)
        calls = [0]

        async def op() -> str:
            calls[0] += 1
            raise FakeAPIError("Down", status_code=503)

        for _ in range(2):
            with pytest.raises(ClassifiedError):
                await handler.execute_with_protection(op)
        with pytest.raises(CircuitOpenError):
            await handler.execute_with_protection(op)

        assert calls[0] == 2
        assert handler.get_circuit_breaker_metrics().state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_records_carry_dependency(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test retry and breaker records are tagged with the handler name."""
        config = ErrorHandlingConfig(
            retry=fast_retry(max_retries=1),
            circuit_breaker=CircuitBreakerConfig(failure_threshold=1),
        )
        handler = ErrorHandler(config, clock=clock, name="openai")

        async def op() -> str:
            raise FakeAPIError("Down", status_code=503)

        with caplog.at_level(logging.INFO):
            with pytest.raises(ClassifiedError):
                await handler.execute_with_protection(op)

        records = [
            r
            for r in caplog.records
            if r.name in ("llm_resilience.retry", "llm_resilience.circuit_breaker")
        ]
        assert {r.name for r in records} == {
            "llm_resilience.retry",
            "llm_resilience.circuit_breaker",
        }
        assert all(r.log_context["dependency"] == "openai" for r in records)
        assert get_log_context() == {}

    @pytest.mark.asyncio
    async def test_fallback_used(self, clock: FakeClock, fatal_error: FakeAPIError) -> None:
        """Test the fallback result replaces a failed primary."""
        handler = ErrorHandler(fast_handler_config(), clock=clock)

        async def primary() -> str:
            raise fatal_error

        async def fallback() -> str:
            return "degraded"

        assert await handler.execute_with_fallback(primary, fallback) == "degraded"
        assert handler.get_metrics()["fallback_used"] == 1

    @pytest.mark.asyncio
    async def test_fallback_failure_raises_primary_error(self, clock: FakeClock) -> None:
        """Test the primary error is re-raised when the fallback fails too."""
        handler = ErrorHandler(fast_handler_config(), clock=clock)
        primary_error = classify_error(FakeAPIError("Unauthorized", status_code=401))

        async def primary() -> str:
            raise primary_error

        fallback_error = ValueError("fallback broke")

        async def fallback() -> str:
            raise fallback_error

        with pytest.raises(ClassifiedError) as exc_info:
            await handler.execute_with_fallback(primary, fallback)

        assert exc_info.value is primary_error
        assert exc_info.value.__context__ is not fallback_error
        metrics = handler.get_metrics()
        assert metrics["fallback_used"] == 1
        assert metrics["fallback_failed"] == 1

    @pytest.mark.asyncio
    async def test_fallback_failure_keeps_primary_chain(self, clock: FakeClock) -> None:
        """Test the re-raised primary error still chains to the API error."""
        handler = ErrorHandler(fast_handler_config(), clock=clock)
        api_error = FakeAPIError("Unauthorized", status_code=401)

        async def primary() -> str:
            raise api_error

        async def fallback() -> str:
            raise ValueError("fallback broke")

        with pytest.raises(ClassifiedError) as exc_info:
            await handler.execute_with_fallback(primary, fallback)

        assert exc_info.value.__cause__ is api_error
        assert exc_info.value.__context__ is api_error

    @pytest.mark.asyncio
    async def test_rate_limit_rejection_survives_failed_fallback(self, clock: FakeClock) -> None:
        """Test a rejected primary is not chained to the fallback failure."""
        config = fast_handler_config(rate_limit=RateLimitConfig(requests_per_minute=1))
        handler = ErrorHandler(config, clock=clock)
        fallback_error = ValueError("fallback broke")

        async def primary() -> str:
            return "fresh"

        async def fallback() -> str:
            raise fallback_error

        await handler.execute_with_protection(primary)
        with pytest.raises(RateLimitExceededError) as exc_info:
            await handler.execute_with_fallback(primary, fallback)

        assert exc_info.value.__context__ is not fallback_error
        assert handler.get_metrics()["fallback_failed"] == 1

    @pytest.mark.asyncio
    async def test_fallbacks_disabled(self, clock: FakeClock, fatal_error: FakeAPIError) -> None:
        """Test disabled fallbacks surface the classified error."""
        handler = ErrorHandler(fast_handler_config(enable_fallbacks=False), clock=clock)
        fallback_calls = [0]

        async def primary() -> str:
            raise fatal_error

        async def fallback() -> str:
            fallback_calls[0] += 1
            return "degraded"

        with pytest.raises(ClassifiedError) as exc_info:
            await handler.execute_with_fallback(primary, fallback)

        assert exc_info.value.kind == ErrorKind.AUTHENTICATION
        assert fallback_calls[0] == 0
        assert "fallback_used" not in handler.get_metrics()

    @pytest.mark.asyncio
    async def test_fallback_on_rate_limit(self, clock: FakeClock) -> None:
        """Test a rate-limit rejection is masked by the fallback."""
        config = fast_handler_config(rate_limit=RateLimitConfig(tokens_per_minute=10))
        handler = ErrorHandler(config, clock=clock)

        async def primary() -> str:
            return "fresh"

        async def fallback() -> str:
            return "degraded"

        result = await handler.execute_with_fallback(primary, fallback, estimated_tokens=100)
        assert result == "degraded"

    @pytest.mark.asyncio
    async def test_metrics_disabled(self, clock: FakeClock) -> None:
        """Test nothing is counted when metrics are off."""
        handler = ErrorHandler(fast_handler_config(report_metrics=False), clock=clock)

        async def op() -> str:
            return "ok"

        await handler.execute_with_protection(op)
        assert handler.get_metrics() == {}

    @pytest.mark.asyncio
    async def test_log_errors_disabled(
        self,
        clock: FakeClock,
        fatal_error: FakeAPIError,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test fallback logs are silenced when log_errors is off."""
        handler = ErrorHandler(fast_handler_config(log_errors=False), clock=clock)

        async def primary() -> str:
            raise fatal_error

        async def fallback() -> str:
            return "degraded"

        with caplog.at_level(logging.DEBUG, logger="llm_resilience.handler"):
            await handler.execute_with_fallback(primary, fallback)

        assert not [r for r in caplog.records if r.name == "llm_resilience.handler"]

    @pytest.mark.asyncio
    async def test_reset(self, clock: FakeClock) -> None:
        """Test reset clears metrics and usage."""
        handler = ErrorHandler(fast_handler_config(), clock=clock)

        async def op() -> str:
            return "ok"

        await handler.execute_with_protection(op)
        handler.reset()

        assert handler.get_metrics() == {}
        assert handler.get_rate_limit_usage().requests_per_minute == 0
