"""Root pytest fixtures for llm-resilience tests."""

from __future__ import annotations

from typing import Any

import pytest


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAPIError(Exception):
    """Provider SDK style error carrying status, headers and code."""

    def __init__(
        self,
        message: str = "API error",
        *,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
        code: str | None = None,
        body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.headers = headers or {}
        self.code = code
        self.body = body


@pytest.fixture
def clock() -> FakeClock:
    """Fresh fake clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture
def retryable_error() -> FakeAPIError:
    """A 503 that the default retry policy treats as transient."""
    return FakeAPIError("Service unavailable", status_code=503)


@pytest.fixture
def fatal_error() -> FakeAPIError:
    """A 401 that is never retried."""
    return FakeAPIError("Invalid API key", status_code=401)
