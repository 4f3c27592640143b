"""
Telemetry module for llm-resilience.

Provides structured logging, metric counters, and the dependency health check.
"""

from llm_resilience.telemetry.health import (
    HEALTH_CHECK_PROMPT,
    HealthCheckResult,
    HealthStatus,
    check_completion_health,
)
from llm_resilience.telemetry.logger import (
    JsonFormatter,
    LogContext,
    LogLevel,
    ResilienceLogger,
    SensitiveDataMasker,
    TextFormatter,
    clear_log_context,
    get_log_context,
    get_logger,
    log_context,
    set_log_context,
)
from llm_resilience.telemetry.metrics import MetricName, MetricsCounter

__all__ = [
    # Health
    "HEALTH_CHECK_PROMPT",
    "HealthCheckResult",
    "HealthStatus",
    # Logging
    "JsonFormatter",
    "LogContext",
    "LogLevel",
    # Metrics
    "MetricName",
    "MetricsCounter",
    "ResilienceLogger",
    "SensitiveDataMasker",
    "TextFormatter",
    "check_completion_health",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_context",
    "set_log_context",
]
