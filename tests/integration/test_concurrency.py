"""
Integration tests for concurrent callers.

Many tasks share one handler; its breaker and rate limiter state must stay
consistent under interleaving.
"""

import asyncio

import pytest

from llm_resilience import (
    CircuitOpenError,
    ClassifiedError,
    ErrorHandler,
    ErrorHandlingConfig,
    RateLimitExceededError,
    create_protected_client,
)
from llm_resilience.resilience import CircuitBreakerConfig, RateLimitConfig, RetryConfig
from llm_resilience.telemetry import LogContext, get_log_context, set_log_context
from tests.conftest import FakeAPIError, FakeClock


class TestConcurrency:
    """Tests for concurrent request handling."""

    @pytest.mark.asyncio
    async def test_concurrent_requests(self, clock: FakeClock) -> None:
        """Test concurrent calls all succeed and are all recorded."""

        async def complete(messages, *, model, max_tokens, temperature) -> str:
            await asyncio.sleep(0)
            return f"Reply to {messages[-1]['content']}"

        client = create_protected_client(complete, clock=clock)

        replies = await asyncio.gather(
            *(client.generate_text(f"Request {i}", "gpt-4o") for i in range(5))
        )

        assert replies == [f"Reply to Request {i}" for i in range(5)]
        usage = client.error_handler.get_rate_limit_usage()
        assert usage.requests_per_minute == 5
        assert client.error_handler.get_metrics() == {"success": 5}

    @pytest.mark.asyncio
    async def test_concurrent_failures_open_breaker(self, clock: FakeClock) -> None:
        """Test failures from many callers trip the shared breaker."""
        config = ErrorHandlingConfig(
            retry=RetryConfig.no_retry(),
            circuit_breaker=CircuitBreakerConfig(failure_threshold=3),
        )
        handler = ErrorHandler(config, clock=clock)
        calls = [0]

        async def failing() -> str:
            calls[0] += 1
            await asyncio.sleep(0)
            raise FakeAPIError("Down", status_code=503)

        results = await asyncio.gather(
            *(handler.execute_with_protection(failing) for _ in range(10)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ClassifiedError) for r in results)
        assert handler.circuit_breaker.is_open is True

        with pytest.raises(CircuitOpenError):
            await handler.execute_with_protection(failing)
        assert calls[0] == 10

    @pytest.mark.asyncio
    async def test_rate_limit_shared_across_callers(self, clock: FakeClock) -> None:
        """Test the budget is shared by every caller of a handler."""
        config = ErrorHandlingConfig(rate_limit=RateLimitConfig(requests_per_minute=3))
        handler = ErrorHandler(config, clock=clock)

        async def op() -> str:
            return "ok"

        for _ in range(3):
            await handler.execute_with_protection(op, estimated_tokens=10)

        results = await asyncio.gather(
            *(handler.execute_with_protection(op, estimated_tokens=10) for _ in range(4)),
            return_exceptions=True,
        )
        assert all(isinstance(r, RateLimitExceededError) for r in results)

        clock.advance(61)
        assert await handler.execute_with_protection(op, estimated_tokens=10) == "ok"

    @pytest.mark.asyncio
    async def test_log_context_is_task_local(self) -> None:
        """Test each task sees only its own log context."""

        async def worker(request_id: str) -> dict:
            set_log_context(LogContext(request_id=request_id))
            await asyncio.sleep(0)
            return get_log_context()

        contexts = await asyncio.gather(
            *(asyncio.create_task(worker(f"req-{i}")) for i in range(3))
        )

        assert contexts == [{"request_id": f"req-{i}"} for i in range(3)]
