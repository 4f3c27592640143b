"""
llm-resilience: a resilience layer for remote LLM completion APIs.

Classifies failures, retries transient ones with bounded exponential
backoff, trips a circuit breaker on a failing dependency, enforces
request/token budgets before calls are attempted, and substitutes degraded
responses when the protected path is exhausted.
"""
from __future__ import annotations

from llm_resilience.client import CompletionFn, ProtectedClient, create_protected_client
from llm_resilience.errors import (
    CircuitOpenError,
    ClassifiedError,
    ConfigurationError,
    ErrorKind,
    RateLimitExceededError,
    ResilienceError,
    classify_error,
)
from llm_resilience.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    ErrorHandler,
    ErrorHandlingConfig,
    FallbackStrategies,
    RateLimitConfig,
    RateLimiter,
    RetryConfig,
    RetryManager,
)
from llm_resilience.telemetry import HealthCheckResult, HealthStatus, check_completion_health
from llm_resilience.tokens import estimate_token_count

__version__ = "0.1.0"

__all__ = [
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    # Errors
    "CircuitOpenError",
    "CircuitState",
    "ClassifiedError",
    # Client
    "CompletionFn",
    "ConfigurationError",
    "ErrorHandler",
    "ErrorHandlingConfig",
    "ErrorKind",
    "FallbackStrategies",
    # Telemetry
    "HealthCheckResult",
    "HealthStatus",
    "ProtectedClient",
    "RateLimitConfig",
    "RateLimitExceededError",
    "RateLimiter",
    "ResilienceError",
    "RetryConfig",
    "RetryManager",
    "__version__",
    "check_completion_health",
    "classify_error",
    "create_protected_client",
    # Tokens
    "estimate_token_count",
]
