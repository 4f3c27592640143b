"""
Error handler: rate limiting, circuit breaking, retry and fallback in one place.

Calls flow through the layers in a fixed order:
1. RateLimiter admission check (rejections go straight back to the caller)
2. CircuitBreaker gate
3. RetryManager around the operation itself
On failure of the whole protected path an optional fallback is invoked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import yaml

from llm_resilience._config import (
    drop_unset,
    env_bool,
    normalize_keys,
    require_bool,
)
from llm_resilience.errors import ConfigurationError
from llm_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerSnapshot,
)
from llm_resilience.resilience.rate_limiter import (
    RateLimitConfig,
    RateLimiter,
    RateLimitUsage,
)
from llm_resilience.resilience.retry import RetryConfig, RetryManager
from llm_resilience.telemetry.logger import LogContext, get_logger, log_context
from llm_resilience.telemetry.metrics import MetricName, MetricsCounter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

T = TypeVar("T")

logger = get_logger("llm_resilience.handler")

DEFAULT_ESTIMATED_TOKENS = 1000


@dataclass
class ErrorHandlingConfig:
    """Combined configuration for the error handler.

    Attributes:
        retry: Retry configuration
        circuit_breaker: Circuit breaker configuration
        rate_limit: Rate limiter configuration
        enable_fallbacks: Whether execute_with_fallback uses the fallback
        log_errors: Whether fallback warnings and errors are logged
        report_metrics: Whether counters are recorded
    """

    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    enable_fallbacks: bool = True
    log_errors: bool = True
    report_metrics: bool = True

    @classmethod
    def default(cls) -> ErrorHandlingConfig:
        """Create default configuration."""
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ErrorHandlingConfig:
        """Create config from a nested mapping.

        Missing sections and keys keep their defaults, so a partial mapping
        acts as an override.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        values = normalize_keys(
            data,
            allowed={
                "retry",
                "circuit_breaker",
                "rate_limit",
                "enable_fallbacks",
                "log_errors",
                "report_metrics",
            },
            section="error_handling",
        )

        kwargs: dict[str, Any] = {}
        if values.get("retry") is not None:
            kwargs["retry"] = RetryConfig.from_dict(values["retry"])
        if values.get("circuit_breaker") is not None:
            kwargs["circuit_breaker"] = CircuitBreakerConfig.from_dict(
                values["circuit_breaker"]
            )
        if values.get("rate_limit") is not None:
            kwargs["rate_limit"] = RateLimitConfig.from_dict(values["rate_limit"])
        for flag in ("enable_fallbacks", "log_errors", "report_metrics"):
            if flag in values:
                kwargs[flag] = require_bool("error_handling", flag, values[flag])

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ErrorHandlingConfig:
        """Load config from a YAML file.

        The file may hold the mapping at top level or under an
        ``error_handling`` key.

        Raises:
            ConfigurationError: If the file is missing, unparsable, or invalid
        """
        path = Path(path)
        try:
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Config file not found: {path}", path=str(path)
            ) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in config file: {e}", path=str(path)
            ) from e

        if data is None:
            return cls()
        if isinstance(data, dict) and "error_handling" in data:
            data = data["error_handling"]
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> ErrorHandlingConfig:
        """Create config from LLM_RESILIENCE_* environment variables."""
        return cls(
            retry=RetryConfig.from_env(),
            circuit_breaker=CircuitBreakerConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            **drop_unset(
                enable_fallbacks=env_bool("ENABLE_FALLBACKS"),
                log_errors=env_bool("LOG_ERRORS"),
                report_metrics=env_bool("REPORT_METRICS"),
            ),
        )


class ErrorHandler:
    """Protects calls to one dependency with every resilience layer.

    One instance per protected dependency; its breaker and rate limiter
    state is shared by all callers of that instance.

    Example:
        >>> handler = ErrorHandler(ErrorHandlingConfig())
        >>> text = await handler.execute_with_fallback(
        ...     call_model,
        ...     lambda: strategies.text_generation_fallback(prompt, "chat"),
        ...     context="Chat completion",
        ...     estimated_tokens=1200,
        ... )
    """

    def __init__(
        self,
        config: ErrorHandlingConfig | None = None,
        clock: Callable[[], float] | None = None,
        name: str = "default",
    ) -> None:
        """Initialize error handler.

        Args:
            config: Combined configuration
            clock: Monotonic clock in seconds shared by breaker and limiter
            name: Dependency name used in log fields
        """
        self._config = config or ErrorHandlingConfig()
        self._name = name
        self._retry_manager = RetryManager(self._config.retry)
        self._circuit_breaker = CircuitBreaker(
            self._config.circuit_breaker, clock=clock, name=name
        )
        self._rate_limiter = RateLimiter(self._config.rate_limit, clock=clock)
        self._metrics = MetricsCounter()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> ErrorHandlingConfig:
        return self._config

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def execute_with_protection(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "LLM API call",
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    ) -> T:
        """Execute an operation through rate limiter, breaker and retry.

        Args:
            operation: Zero-argument coroutine function
            context: Label used in log messages
            estimated_tokens: Tokens charged against the rate-limit budgets

        Returns:
            Operation result

        Raises:
            RateLimitExceededError: If a budget would be exceeded (never
                retried, never counted by the breaker)
            CircuitOpenError: If the breaker rejects the call
            ClassifiedError: If the operation failed after retries
        """
        with log_context(LogContext(dependency=self._name)):
            await self._rate_limiter.check_rate_limit(estimated_tokens)

            result = await self._circuit_breaker.execute(
                lambda: self._retry_manager.execute_with_retry(operation, context)
            )

            await self._rate_limiter.record_request(estimated_tokens)
            self._record_metric(MetricName.SUCCESS)
            return result

    async def execute_with_fallback(
        self,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        context: str = "LLM API call",
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    ) -> T:
        """Execute the protected path, substituting the fallback on failure.

        If the fallback also fails, the primary error object itself is
        re-raised so callers see the root cause; the fallback failure is
        only logged and counted.

        Args:
            primary: Zero-argument coroutine function to protect
            fallback: Zero-argument coroutine function producing a substitute
            context: Label used in log messages
            estimated_tokens: Tokens charged against the rate-limit budgets

        Returns:
            Primary result, or the fallback result
        """
        if not self._config.enable_fallbacks:
            return await self.execute_with_protection(primary, context, estimated_tokens)

        with log_context(LogContext(dependency=self._name)):
            try:
                return await self.execute_with_protection(primary, context, estimated_tokens)
            except Exception as error:
                if self._config.log_errors:
                    logger.warning(
                        f"Primary operation failed, attempting fallback: {error}",
                        context=context,
                        error_type=type(error).__name__,
                    )
                self._record_metric(MetricName.FALLBACK_USED)

                try:
                    return await fallback()
                except Exception as fallback_error:
                    if self._config.log_errors:
                        logger.error(
                            f"Fallback operation also failed: {fallback_error}",
                            context=context,
                            error_type=type(fallback_error).__name__,
                        )
                    self._record_metric(MetricName.FALLBACK_FAILED)
                # Re-raised outside the fallback handler so its __context__ is left alone
                raise error

    def _record_metric(self, name: MetricName) -> None:
        if self._config.report_metrics:
            self._metrics.increment(name)

    def get_metrics(self) -> dict[str, int]:
        """Get counters recorded so far."""
        return self._metrics.snapshot()

    def get_circuit_breaker_metrics(self) -> CircuitBreakerSnapshot:
        """Get a snapshot of the circuit breaker state."""
        return self._circuit_breaker.get_metrics()

    def get_rate_limit_usage(self) -> RateLimitUsage:
        """Get current rate-limit window usage."""
        return self._rate_limiter.get_usage()

    def reset(self) -> None:
        """Clear metrics and rate-limit usage. Breaker state is kept."""
        self._metrics.clear()
        self._rate_limiter.reset()
