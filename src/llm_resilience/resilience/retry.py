"""
Retry manager with exponential backoff and jitter.

This is the only retry policy in the package: failures are classified,
retryable ones are re-attempted after a bounded exponential delay, and the
final failure surfaces as a ClassifiedError carrying the attempt count.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from llm_resilience._config import (
    drop_unset,
    env_bool,
    env_float,
    env_int,
    normalize_keys,
    require_bool,
    require_count,
    require_number,
)
from llm_resilience.errors import (
    RETRYABLE_KINDS,
    ClassifiedError,
    ConfigurationError,
    ErrorKind,
    classify_error,
)
from llm_resilience.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

T = TypeVar("T")

logger = get_logger("llm_resilience.retry")

# Jitter adds up to this fraction of the computed delay
JITTER_FRACTION = 0.1


@dataclass
class RetryConfig:
    """Configuration for the retry manager.

    Attributes:
        max_retries: Maximum number of retries after the first attempt
        base_delay_ms: Delay before the first retry in milliseconds
        max_delay_ms: Upper bound for any single delay in milliseconds
        exponential_base: Growth factor between consecutive delays
        jitter: Whether to add up to 10% random jitter to computed delays
        retryable_kinds: Error kinds eligible for retry
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential_base: float = 2
    jitter: bool = True
    retryable_kinds: set[ErrorKind] = field(
        default_factory=lambda: set(RETRYABLE_KINDS)
    )

    def __post_init__(self) -> None:
        require_count("retry", "max_retries", self.max_retries)

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Create a config that disables retries."""
        return cls(max_retries=0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RetryConfig:
        """Create config from a mapping, filling missing keys with defaults.

        Accepts camelCase keys and the ``baseDelay``/``maxDelay``/
        ``retryableErrors`` spellings.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        values = normalize_keys(
            data,
            allowed={
                "max_retries",
                "base_delay_ms",
                "max_delay_ms",
                "exponential_base",
                "jitter",
                "retryable_kinds",
            },
            section="retry",
            aliases={
                "base_delay": "base_delay_ms",
                "max_delay": "max_delay_ms",
                "retryable_errors": "retryable_kinds",
            },
        )
        for name, value in values.items():
            if name == "jitter":
                require_bool("retry", name, value)
            elif name != "retryable_kinds":
                require_number("retry", name, value)

        if "retryable_kinds" in values:
            try:
                values["retryable_kinds"] = {
                    ErrorKind(kind) for kind in values["retryable_kinds"]
                }
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid 'retry.retryable_kinds': {values['retryable_kinds']!r}"
                ) from e

        return cls(**values)

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Create config from LLM_RESILIENCE_* environment variables."""
        return cls(
            **drop_unset(
                max_retries=env_int("MAX_RETRIES"),
                base_delay_ms=env_int("BASE_DELAY_MS"),
                max_delay_ms=env_int("MAX_DELAY_MS"),
                exponential_base=env_float("EXPONENTIAL_BASE"),
                jitter=env_bool("JITTER"),
            )
        )


class RetryManager:
    """Retries an async operation with exponential backoff.

    Example:
        >>> manager = RetryManager(RetryConfig(max_retries=2))
        >>> try:
        ...     result = await manager.execute_with_retry(call_model, "chat")
        ... except ClassifiedError as e:
        ...     print(f"{e.kind.value} after {e.attempts} attempts")
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def should_retry(self, error: ClassifiedError) -> bool:
        """Check whether a classified error is eligible for another attempt.

        The attempt budget is checked separately by the caller.
        """
        return error.retryable and error.kind in self._config.retryable_kinds

    def calculate_delay(
        self, attempt: int, error: ClassifiedError | None = None
    ) -> float:
        """Calculate the delay before retrying after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)
            error: The classified failure, consulted for a retry-after hint

        Returns:
            Delay in milliseconds, never above max_delay_ms
        """
        if error is not None and error.retry_after_ms:
            return float(min(error.retry_after_ms, self._config.max_delay_ms))

        delay = self._config.base_delay_ms * (
            self._config.exponential_base ** (attempt - 1)
        )

        if self._config.jitter:
            delay += random.random() * delay * JITTER_FRACTION

        return float(min(delay, self._config.max_delay_ms))

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "LLM API call",
    ) -> T:
        """Execute an operation, retrying transient failures.

        Cancellation (asyncio.CancelledError) is never caught, so a cancelled
        caller stops further attempts immediately.

        Args:
            operation: Zero-argument coroutine function to invoke
            context: Label used in log messages

        Returns:
            The operation result

        Raises:
            ClassifiedError: The final failure, with ``attempts`` equal to the
                number of invocations made
        """
        max_attempts = self._config.max_retries + 1
        attempt = 1

        while True:
            try:
                result = await operation()
            except Exception as e:
                error = classify_error(e)
                error.attempts = attempt

                if attempt > self._config.max_retries or not self.should_retry(error):
                    if error is e:
                        raise
                    raise error from e

                delay_ms = self.calculate_delay(attempt, error)
                logger.warning(
                    f"{context} failed (attempt {attempt}/{max_attempts}): "
                    f"{error.message}. Retrying in {delay_ms:.0f}ms...",
                    kind=error.kind.value,
                    attempt=attempt,
                    delay_ms=round(delay_ms),
                )
                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1
                continue

            if attempt > 1:
                logger.info(f"{context} succeeded on attempt {attempt}", attempt=attempt)
            return result
