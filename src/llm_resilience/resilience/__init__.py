"""
Resilience layer - Retry, rate limiting, circuit breaker, and fallback.

This module provides the protection layers for a remote LLM dependency:
- RetryManager: Exponential backoff with jitter over classified failures
- CircuitBreaker: Closed/Open/Half-Open state machine
- RateLimiter: Sliding-window request and token budgets
- FallbackStrategies: Degraded substitute responses
- ErrorHandler: Orchestrator composing all of the above
"""

from llm_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerSnapshot,
    CircuitBreakerState,
    CircuitEvent,
    CircuitState,
    next_state,
)
from llm_resilience.resilience.fallback import (
    DEFAULT_TEMPLATES,
    FallbackStrategies,
    minimal_instance,
)
from llm_resilience.resilience.handler import (
    DEFAULT_ESTIMATED_TOKENS,
    ErrorHandler,
    ErrorHandlingConfig,
)
from llm_resilience.resilience.rate_limiter import (
    RateLimitConfig,
    RateLimiter,
    RateLimitUsage,
    SlidingWindow,
)
from llm_resilience.resilience.retry import RetryConfig, RetryManager

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerSnapshot",
    "CircuitBreakerState",
    "CircuitEvent",
    "CircuitState",
    # Fallback
    "DEFAULT_ESTIMATED_TOKENS",
    "DEFAULT_TEMPLATES",
    # Handler
    "ErrorHandler",
    "ErrorHandlingConfig",
    "FallbackStrategies",
    # Rate limiting
    "RateLimitConfig",
    "RateLimitUsage",
    "RateLimiter",
    # Retry
    "RetryConfig",
    "RetryManager",
    "SlidingWindow",
    "minimal_instance",
    "next_state",
]
