"""
Sliding-window rate limiter for outbound requests and tokens.

Tracks request counts and token volume over the trailing minute and hour.
Admission is checked before a call is attempted and fails fast; nothing
here waits.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from llm_resilience._config import (
    drop_unset,
    env_int,
    normalize_keys,
    require_number,
)
from llm_resilience.errors import RateLimitExceededError
from llm_resilience.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

logger = get_logger("llm_resilience.rate_limiter")

MINUTE_MS = 60_000
HOUR_MS = 3_600_000


@dataclass
class RateLimitConfig:
    """Configuration for rate limiter.

    Attributes:
        requests_per_minute: Maximum requests in any trailing minute
        tokens_per_minute: Maximum tokens in any trailing minute
        requests_per_hour: Maximum requests in any trailing hour
        tokens_per_hour: Maximum tokens in any trailing hour
    """

    requests_per_minute: int = 60
    tokens_per_minute: int = 90000
    requests_per_hour: int = 3000
    tokens_per_hour: int = 250000

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RateLimitConfig:
        """Create config from a mapping, filling missing keys with defaults.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        values = normalize_keys(
            data,
            allowed={
                "requests_per_minute",
                "tokens_per_minute",
                "requests_per_hour",
                "tokens_per_hour",
            },
            section="rate_limit",
        )
        for name, value in values.items():
            require_number("rate_limit", name, value)
        return cls(**values)

    @classmethod
    def from_env(cls) -> RateLimitConfig:
        """Create configuration from environment variables."""
        return cls(
            **drop_unset(
                requests_per_minute=env_int("REQUESTS_PER_MINUTE"),
                tokens_per_minute=env_int("TOKENS_PER_MINUTE"),
                requests_per_hour=env_int("REQUESTS_PER_HOUR"),
                tokens_per_hour=env_int("TOKENS_PER_HOUR"),
            )
        )


@dataclass
class RateLimitUsage:
    """Current usage in each window.

    Attributes:
        requests_per_minute: Requests recorded in the trailing minute
        tokens_per_minute: Tokens recorded in the trailing minute
        requests_per_hour: Requests recorded in the trailing hour
        tokens_per_hour: Tokens recorded in the trailing hour
    """

    requests_per_minute: int = 0
    tokens_per_minute: int = 0
    requests_per_hour: int = 0
    tokens_per_hour: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "requests_per_minute": self.requests_per_minute,
            "tokens_per_minute": self.tokens_per_minute,
            "requests_per_hour": self.requests_per_hour,
            "tokens_per_hour": self.tokens_per_hour,
        }


class SlidingWindow:
    """Timestamped weights kept for a trailing window.

    Entries are appended in clock order, so pruning pops from the left.
    A running total keeps ``total`` O(1).
    """

    def __init__(self, length_ms: int) -> None:
        self.length_ms = length_ms
        self._entries: deque[tuple[float, int]] = deque()
        self._total = 0

    def prune(self, now_ms: float) -> None:
        """Drop entries at or before ``now - length``."""
        cutoff = now_ms - self.length_ms
        while self._entries and self._entries[0][0] <= cutoff:
            _, weight = self._entries.popleft()
            self._total -= weight

    def add(self, now_ms: float, weight: int = 1) -> None:
        self._entries.append((now_ms, weight))
        self._total += weight

    def clear(self) -> None:
        self._entries.clear()
        self._total = 0

    @property
    def count(self) -> int:
        return len(self._entries)

    @property
    def total(self) -> int:
        return self._total

    @property
    def oldest_ms(self) -> float | None:
        return self._entries[0][0] if self._entries else None

    def wait_ms(self, now_ms: float) -> int:
        """Milliseconds until the oldest entry ages out."""
        oldest = self.oldest_ms
        if oldest is None:
            return 0
        return max(0, math.ceil(self.length_ms - (now_ms - oldest)))


class RateLimiter:
    """Sliding-window admission control over requests and tokens.

    Example:
        >>> limiter = RateLimiter(RateLimitConfig(requests_per_minute=10))
        >>> await limiter.check_rate_limit(estimated_tokens=800)
        >>> result = await call_model()
        >>> await limiter.record_request(actual_tokens=800)
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize rate limiter.

        Args:
            config: Rate limiter configuration
            clock: Monotonic clock in seconds (defaults to time.monotonic)
        """
        self._config = config or RateLimitConfig()
        self._clock = clock or time.monotonic
        self._lock = asyncio.Lock()

        self._minute_requests = SlidingWindow(MINUTE_MS)
        self._minute_tokens = SlidingWindow(MINUTE_MS)
        self._hour_requests = SlidingWindow(HOUR_MS)
        self._hour_tokens = SlidingWindow(HOUR_MS)

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prune(self, now_ms: float) -> None:
        for window in (
            self._minute_requests,
            self._minute_tokens,
            self._hour_requests,
            self._hour_tokens,
        ):
            window.prune(now_ms)

    def _reject(
        self,
        message: str,
        window: str,
        limit_type: str,
        limit: int,
        retry_after_ms: int | None = None,
    ) -> RateLimitExceededError:
        logger.warning(
            message, window=window, limit_type=limit_type, limit=limit
        )
        return RateLimitExceededError(
            message,
            window=window,
            limit_type=limit_type,
            limit=limit,
            retry_after_ms=retry_after_ms,
        )

    async def check_rate_limit(self, estimated_tokens: int = 0) -> None:
        """Check that a call with the estimated token count fits every budget.

        Args:
            estimated_tokens: Tokens the upcoming call is expected to use

        Raises:
            RateLimitExceededError: If any budget would be exceeded
        """
        async with self._lock:
            now_ms = self._now_ms()
            self._prune(now_ms)
            cfg = self._config

            if self._minute_requests.count >= cfg.requests_per_minute:
                raise self._reject(
                    "Rate limit exceeded: too many requests per minute",
                    "minute", "requests", cfg.requests_per_minute,
                )

            if self._minute_tokens.total + estimated_tokens > cfg.tokens_per_minute:
                raise self._reject(
                    "Rate limit exceeded: too many tokens per minute",
                    "minute", "tokens", cfg.tokens_per_minute,
                )

            if self._hour_requests.count >= cfg.requests_per_hour:
                wait_ms = self._hour_requests.wait_ms(now_ms)
                raise self._reject(
                    "Rate limit exceeded: too many requests per hour. "
                    f"Wait {math.ceil(wait_ms / 1000)} seconds",
                    "hour", "requests", cfg.requests_per_hour,
                    retry_after_ms=wait_ms,
                )

            if self._hour_tokens.total + estimated_tokens > cfg.tokens_per_hour:
                wait_ms = self._hour_tokens.wait_ms(now_ms)
                raise self._reject(
                    "Rate limit exceeded: too many tokens per hour",
                    "hour", "tokens", cfg.tokens_per_hour,
                    retry_after_ms=wait_ms,
                )

    async def record_request(self, actual_tokens: int = 0) -> None:
        """Record a completed request and the tokens it used.

        Args:
            actual_tokens: Tokens consumed by the request
        """
        async with self._lock:
            now_ms = self._now_ms()
            self._minute_requests.add(now_ms)
            self._minute_tokens.add(now_ms, actual_tokens)
            self._hour_requests.add(now_ms)
            self._hour_tokens.add(now_ms, actual_tokens)

    def get_usage(self) -> RateLimitUsage:
        """Get current usage per window, after pruning expired entries."""
        self._prune(self._now_ms())
        return RateLimitUsage(
            requests_per_minute=self._minute_requests.count,
            tokens_per_minute=self._minute_tokens.total,
            requests_per_hour=self._hour_requests.count,
            tokens_per_hour=self._hour_tokens.total,
        )

    def reset(self) -> None:
        """Forget all recorded usage."""
        for window in (
            self._minute_requests,
            self._minute_tokens,
            self._hour_requests,
            self._hour_tokens,
        ):
            window.clear()
