"""
Circuit breaker for a protected dependency.

Implements the circuit breaker pattern with three states:
- Closed: Normal operation, requests pass through
- Open: Circuit tripped, requests are rejected without being attempted
- Half-Open: A bounded number of trial requests test for recovery

State transitions are computed by the pure ``next_state`` function; the
breaker applies them under its lock.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from llm_resilience._config import (
    drop_unset,
    env_int,
    normalize_keys,
    require_count,
    require_number,
)
from llm_resilience.errors import CircuitOpenError
from llm_resilience.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

T = TypeVar("T")

logger = get_logger("llm_resilience.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitEvent(str, Enum):
    """Events that drive state transitions."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT_ELAPSED = "timeout_elapsed"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker.

    Attributes:
        failure_threshold: Failures that trip the circuit from CLOSED
        recovery_timeout_ms: Time OPEN before a trial call is allowed
        monitoring_period_ms: Failure window for CLOSED. This departs from a
            plain consecutive-failure count: a failure arriving more than
            this long after the previous one restarts the count at 1, so
            only failures closer together than the window can trip the
            circuit. Set it very large to get a plain consecutive count.
        half_open_max_calls: Concurrent trial calls allowed in HALF_OPEN,
            and successes needed to close again
    """

    failure_threshold: int = 5
    recovery_timeout_ms: int = 60000
    monitoring_period_ms: int = 300000
    half_open_max_calls: int = 3

    def __post_init__(self) -> None:
        require_count("circuit_breaker", "failure_threshold", self.failure_threshold, 1)
        require_count("circuit_breaker", "half_open_max_calls", self.half_open_max_calls, 1)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CircuitBreakerConfig:
        """Create config from a mapping, filling missing keys with defaults.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        values = normalize_keys(
            data,
            allowed={
                "failure_threshold",
                "recovery_timeout_ms",
                "monitoring_period_ms",
                "half_open_max_calls",
            },
            section="circuit_breaker",
            aliases={
                "recovery_timeout": "recovery_timeout_ms",
                "monitoring_period": "monitoring_period_ms",
            },
        )
        for name, value in values.items():
            require_number("circuit_breaker", name, value)
        return cls(**values)

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        """Create configuration from environment variables."""
        return cls(
            **drop_unset(
                failure_threshold=env_int("BREAKER_FAILURE_THRESHOLD"),
                recovery_timeout_ms=env_int("BREAKER_RECOVERY_TIMEOUT_MS"),
                monitoring_period_ms=env_int("BREAKER_MONITORING_PERIOD_MS"),
                half_open_max_calls=env_int("BREAKER_HALF_OPEN_MAX_CALLS"),
            )
        )


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of the breaker's mutable state."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time_ms: float | None = None
    half_open_calls_in_flight: int = 0


@dataclass
class CircuitBreakerSnapshot:
    """Read-only view of breaker state for metrics.

    Attributes:
        state: Current state
        failure_count: Failures counted toward the threshold
        success_count: Successes counted in HALF_OPEN
        last_failure_time_ms: Clock time of the last failure, if any
    """

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time_ms: float | None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time_ms": self.last_failure_time_ms,
        }


def next_state(
    current: CircuitBreakerState,
    event: CircuitEvent,
    config: CircuitBreakerConfig,
    now_ms: float,
) -> CircuitBreakerState:
    """Compute the state that follows an event.

    Args:
        current: Current state
        event: What happened
        config: Breaker configuration
        now_ms: Current clock time in milliseconds

    Returns:
        The new state (``current`` itself if nothing changes)
    """
    state = current.state

    if event == CircuitEvent.TIMEOUT_ELAPSED:
        if state != CircuitState.OPEN:
            return current
        return dataclasses.replace(
            current,
            state=CircuitState.HALF_OPEN,
            success_count=0,
            half_open_calls_in_flight=0,
        )

    if event == CircuitEvent.SUCCESS:
        if state == CircuitState.HALF_OPEN:
            successes = current.success_count + 1
            if successes >= config.half_open_max_calls:
                return CircuitBreakerState(
                    state=CircuitState.CLOSED,
                    last_failure_time_ms=current.last_failure_time_ms,
                )
            return dataclasses.replace(current, success_count=successes)
        if state == CircuitState.CLOSED and current.failure_count:
            return dataclasses.replace(current, failure_count=0)
        return current

    # CircuitEvent.FAILURE
    failures = current.failure_count + 1
    if (
        state == CircuitState.CLOSED
        and current.last_failure_time_ms is not None
        and now_ms - current.last_failure_time_ms > config.monitoring_period_ms
    ):
        failures = 1

    if state == CircuitState.HALF_OPEN or (
        state == CircuitState.CLOSED and failures >= config.failure_threshold
    ):
        return dataclasses.replace(
            current,
            state=CircuitState.OPEN,
            failure_count=failures,
            success_count=0,
            last_failure_time_ms=now_ms,
            half_open_calls_in_flight=0,
        )
    return dataclasses.replace(
        current, failure_count=failures, last_failure_time_ms=now_ms
    )


class CircuitBreaker:
    """Circuit breaker for fault isolation.

    One instance per protected dependency; all state changes happen under
    an asyncio lock so concurrent callers see consistent transitions.

    Example:
        >>> breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
        >>> try:
        ...     result = await breaker.execute(call_model)
        ... except CircuitOpenError:
        ...     print("Service unavailable")
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
        name: str = "default",
    ) -> None:
        """Initialize circuit breaker.

        Args:
            config: Circuit breaker configuration
            clock: Monotonic clock in seconds (defaults to time.monotonic)
            name: Dependency name used in log fields
        """
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or time.monotonic
        self._name = name
        self._lock = asyncio.Lock()
        self._state = CircuitBreakerState()
        # Bumped on every entry into HALF_OPEN so stale trials release nothing
        self._half_open_generation = 0

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _apply(self, event: CircuitEvent) -> None:
        """Apply an event; caller must hold the lock."""
        previous = self._state
        self._state = next_state(previous, event, self._config, self._now_ms())
        if self._state.state == previous.state:
            return

        if self._state.state == CircuitState.HALF_OPEN:
            self._half_open_generation += 1

        log = logger.warning if self._state.state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker moving to {self._state.state.value} state "
            f"from {previous.state.value}",
            breaker=self._name,
            event=event.value,
            failure_count=self._state.failure_count,
        )

    def get_time_until_retry_ms(self) -> float | None:
        """Get time until an OPEN circuit admits a trial call.

        Returns:
            Milliseconds until retry, or None if not open
        """
        last_failure = self._state.last_failure_time_ms
        if self._state.state != CircuitState.OPEN or last_failure is None:
            return None
        remaining = self._config.recovery_timeout_ms - (self._now_ms() - last_failure)
        return max(0.0, remaining)

    async def _admit(self) -> int | None:
        """Admit a call or raise CircuitOpenError.

        Returns:
            The HALF_OPEN generation for a trial call, None for a normal call
        """
        async with self._lock:
            if self._state.state == CircuitState.OPEN:
                last_failure = self._state.last_failure_time_ms or 0.0
                if self._now_ms() - last_failure > self._config.recovery_timeout_ms:
                    self._apply(CircuitEvent.TIMEOUT_ELAPSED)
                else:
                    raise CircuitOpenError(
                        time_until_retry_ms=self.get_time_until_retry_ms()
                    )

            if self._state.state != CircuitState.HALF_OPEN:
                return None

            if self._state.half_open_calls_in_flight >= self._config.half_open_max_calls:
                raise CircuitOpenError("Circuit breaker HALF_OPEN limit reached")
            self._state = dataclasses.replace(
                self._state,
                half_open_calls_in_flight=self._state.half_open_calls_in_flight + 1,
            )
            return self._half_open_generation

    async def _release(self, generation: int | None) -> None:
        if generation is None:
            return
        async with self._lock:
            if (
                generation == self._half_open_generation
                and self._state.state == CircuitState.HALF_OPEN
                and self._state.half_open_calls_in_flight > 0
            ):
                self._state = dataclasses.replace(
                    self._state,
                    half_open_calls_in_flight=self._state.half_open_calls_in_flight - 1,
                )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute an operation through the circuit breaker.

        Args:
            operation: Async operation to execute

        Returns:
            Operation result

        Raises:
            CircuitOpenError: If the circuit rejects the call; the operation
                is not invoked and the rejection is not counted as a failure
        """
        generation = await self._admit()

        try:
            result = await operation()
        except Exception:
            async with self._lock:
                self._apply(CircuitEvent.FAILURE)
            raise
        else:
            async with self._lock:
                self._apply(CircuitEvent.SUCCESS)
            return result
        finally:
            await self._release(generation)

    def get_metrics(self) -> CircuitBreakerSnapshot:
        """Get a snapshot of the breaker state."""
        return CircuitBreakerSnapshot(
            state=self._state.state,
            failure_count=self._state.failure_count,
            success_count=self._state.success_count,
            last_failure_time_ms=self._state.last_failure_time_ms,
        )

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self._state = CircuitBreakerState()

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(state={self._state.state.value}, "
            f"failures={self._state.failure_count}/{self._config.failure_threshold})"
        )
