"""
Base error classes for llm-resilience.

Provides a layered error hierarchy:
- ResilienceError: Base class for all library errors
- ClassifiedError: A failure of the protected operation, typed and retry-annotated
- CircuitOpenError: Call rejected by the circuit breaker
- RateLimitExceededError: Call rejected by the outbound rate limiter
- ConfigurationError: Invalid or unreadable configuration
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from llm_resilience.errors.classification import ErrorKind


@dataclass
class ErrorContext:
    """Structured error context for diagnostics.

    Provides actionable information for debugging and error handling.
    """

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    source: str | None = None
    """Error source (e.g., 'retry', 'circuit_breaker', 'rate_limiter')"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class ResilienceError(Exception):
    """Base class for all llm-resilience errors.

    Attributes:
        message: Human-readable error message
        context: Optional structured error context
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
    ) -> None:
        self.message = message
        self.error_context = context or ErrorContext()
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message."""
        ctx_str = str(self.error_context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    def with_hint(self, hint: str) -> ResilienceError:
        """Add a hint to this error."""
        self.error_context.hint = hint
        return self


class ClassifiedError(ResilienceError):
    """A failure of a protected operation, classified for retry decisions.

    Everything except ``attempts`` is fixed at classification time; the
    retry manager stamps ``attempts`` with the number of invocations made.

    Attributes:
        kind: Error classification
        code: Provider-specific error code, if any
        status_code: HTTP status code, if any
        retryable: Whether a retry may plausibly succeed
        retry_after_ms: Server-suggested delay before retrying
        attempts: Number of operation invocations made so far
        timestamp: Wall-clock classification time (seconds since epoch)
        context: Free-form diagnostic data, including ``original_error``
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        retryable: bool = False,
        code: str | None = None,
        status_code: int | None = None,
        retry_after_ms: int | None = None,
        attempts: int = 1,
        timestamp: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = ErrorContext(source="classifier")
        ctx.details["kind"] = kind.value
        ctx.details["retryable"] = retryable
        if status_code is not None:
            ctx.details["status_code"] = status_code
        if code:
            ctx.details["code"] = code

        super().__init__(message, ctx)

        self.kind = kind
        self.retryable = retryable
        self.code = code
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms
        self.attempts = attempts
        self.timestamp = timestamp if timestamp is not None else time.time()
        self.context: dict[str, Any] = context or {}

    @property
    def original_error(self) -> BaseException | None:
        """The raw failure this error was classified from."""
        return self.context.get("original_error")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary (original error as text)."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
            "attempts": self.attempts,
            "timestamp": self.timestamp,
            "context": {k: str(v) for k, v in self.context.items()},
        }

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(kind={self.kind.value}, retryable={self.retryable}, "
            f"attempts={self.attempts}, message={self.message!r})"
        )


class CircuitOpenError(ResilienceError):
    """Raised when the circuit breaker rejects a call without invoking it."""

    def __init__(
        self,
        message: str = "Circuit breaker is OPEN - requests are being rejected",
        time_until_retry_ms: float | None = None,
    ) -> None:
        ctx = ErrorContext(source="circuit_breaker")
        if time_until_retry_ms is not None:
            ctx.details["time_until_retry_ms"] = time_until_retry_ms
        super().__init__(message, ctx)
        self.time_until_retry_ms = time_until_retry_ms


class RateLimitExceededError(ResilienceError):
    """Raised when a call would exceed an outbound request or token budget.

    Attributes:
        window: Which budget was hit ('minute' or 'hour')
        limit_type: What was counted ('requests' or 'tokens')
        limit: Configured cap for that budget
        retry_after_ms: Wait until the oldest entry ages out (hour request cap only)
    """

    def __init__(
        self,
        message: str,
        *,
        window: str,
        limit_type: str,
        limit: int,
        retry_after_ms: int | None = None,
    ) -> None:
        ctx = ErrorContext(source="rate_limiter")
        ctx.details["window"] = window
        ctx.details["limit_type"] = limit_type
        ctx.details["limit"] = limit
        if retry_after_ms is not None:
            ctx.details["retry_after_ms"] = retry_after_ms
        super().__init__(message, ctx)
        self.window = window
        self.limit_type = limit_type
        self.limit = limit
        self.retry_after_ms = retry_after_ms


class ConfigurationError(ResilienceError):
    """Invalid or unreadable configuration.

    Raised when:
    - A config file is missing or is not valid YAML
    - A config value has the wrong type
    - An unknown error kind is named
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        path: str | None = None,
    ) -> None:
        ctx = context or ErrorContext(source="config")
        if path:
            ctx.details["path"] = path
        super().__init__(message, ctx)
        self.path = path
