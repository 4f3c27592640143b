"""
Health check for a protected LLM dependency.

Sends a minimal round-trip completion and reports whether the dependency
answered as expected.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from llm_resilience.telemetry.logger import get_logger

if TYPE_CHECKING:
    from llm_resilience.client.protected import CompletionFn

logger = get_logger("llm_resilience.health")

HEALTH_CHECK_PROMPT = 'Say "OK" if you can hear me.'


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a health check.

    Attributes:
        status: Health status
        latency_ms: Round-trip latency in milliseconds
        errors: Problems observed during the check
        timestamp: Check timestamp
    """

    status: HealthStatus
    latency_ms: float = 0.0
    errors: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "errors": list(self.errors),
            "timestamp": self.timestamp,
        }


async def check_completion_health(
    complete: CompletionFn,
    model: str = "gpt-3.5-turbo",
) -> HealthCheckResult:
    """Check a completion dependency with a tiny request.

    The request goes straight to the dependency, bypassing retry, breaker and
    rate limiter, so the result reflects the dependency itself.

    Args:
        complete: Async completion function
        model: Model to check

    Returns:
        HEALTHY if the reply contains "ok", DEGRADED for any other reply,
        UNHEALTHY if the call raised.
    """
    start = time.monotonic()
    errors: list[str] = []

    try:
        reply = await complete(
            [{"role": "user", "content": HEALTH_CHECK_PROMPT}],
            model=model,
            max_tokens=10,
            temperature=0.0,
        )
    except Exception as e:
        latency_ms = (time.monotonic() - start) * 1000
        errors.append(f"Health check failed: {e}")
        logger.warning("Health check failed", model=model, error=str(e))
        return HealthCheckResult(
            status=HealthStatus.UNHEALTHY, latency_ms=latency_ms, errors=errors
        )

    latency_ms = (time.monotonic() - start) * 1000
    if reply and "ok" in reply.lower():
        return HealthCheckResult(status=HealthStatus.HEALTHY, latency_ms=latency_ms)

    errors.append("Unexpected response from completion service")
    return HealthCheckResult(
        status=HealthStatus.DEGRADED, latency_ms=latency_ms, errors=errors
    )
