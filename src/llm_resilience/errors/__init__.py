"""
Error hierarchy for llm-resilience.

Provides structured error types and the classifier that turns raw
failures into retry-annotated ClassifiedError instances.
"""

from llm_resilience.errors.base import (
    CircuitOpenError,
    ClassifiedError,
    ConfigurationError,
    ErrorContext,
    RateLimitExceededError,
    ResilienceError,
)
from llm_resilience.errors.classification import (
    RETRYABLE_KINDS,
    ErrorKind,
    classify_error,
    extract_retry_after_ms,
    is_retryable,
)

__all__ = [
    "RETRYABLE_KINDS",
    "CircuitOpenError",
    # Classification
    "ClassifiedError",
    "ConfigurationError",
    "ErrorContext",
    "ErrorKind",
    "RateLimitExceededError",
    # Base errors
    "ResilienceError",
    "classify_error",
    "extract_retry_after_ms",
    "is_retryable",
]
