"""
Structured logging for llm-resilience.

Every module logs through ``get_logger``. A record carries its keyword
fields plus the call-scoped LogContext (which dependency, model and request
it belongs to), and credentials are masked before anything is written.
All module loggers propagate to the ``llm_resilience`` package logger,
which owns the single output handler.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

PACKAGE_LOGGER = "llm_resilience"
REDACTED = "***REDACTED***"

_log_context: ContextVar[dict[str, Any] | None] = ContextVar(
    "llm_resilience_log_context", default=None
)


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    def to_logging_level(self) -> int:
        return getattr(logging, self.value)


@dataclass
class LogContext:
    """Fields identifying the call a record belongs to.

    Attributes:
        dependency: Name of the protected dependency (the handler name)
        model: Model the call targets
        request_id: Caller-supplied request identifier
        extra: Any other fields to attach
    """

    dependency: str | None = None
    model: str | None = None
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            name: value
            for name, value in (
                ("dependency", self.dependency),
                ("model", self.model),
                ("request_id", self.request_id),
            )
            if value
        }
        result.update(self.extra)
        return result


def get_log_context() -> dict[str, Any]:
    """Get a copy of the fields bound in the current task."""
    return dict(_log_context.get() or {})


def set_log_context(context: LogContext) -> Token[dict[str, Any] | None]:
    """Replace the context of the current task.

    Returns:
        Token that can be passed to ``ContextVar.reset`` by the caller
    """
    return _log_context.set(context.to_dict())


def clear_log_context() -> None:
    _log_context.set(None)


@contextmanager
def log_context(context: LogContext) -> Iterator[dict[str, Any]]:
    """Bind context fields for the duration of a block.

    Fields are layered over the enclosing context, so a client binding the
    model and a handler binding the dependency both show up on records
    emitted inside.
    """
    merged = {**get_log_context(), **context.to_dict()}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


class SensitiveDataMasker:
    """Redacts API keys and auth headers from messages and fields."""

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        (r"sk-[A-Za-z0-9_-]{20,}", "sk-" + REDACTED),
        (r"(Bearer\s+)\S+", r"\g<1>" + REDACTED),
        (
            r"((?:api[_-]?key|authorization|OPENAI_API_KEY)[\"']?\s*[:=]\s*[\"']?)[^\"'\s]+",
            r"\g<1>" + REDACTED,
        ),
    )
    SENSITIVE_KEYS: tuple[str, ...] = ("key", "secret", "password", "auth")

    def __init__(self, patterns: tuple[tuple[str, str], ...] | None = None) -> None:
        self._patterns = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in (patterns or self.DEFAULT_PATTERNS)
        ]

    def mask(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def mask_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Mask a field mapping.

        Values under credential-looking keys are replaced outright; strings
        elsewhere go through the text patterns, nested mappings recursively.
        """
        masked: dict[str, Any] = {}
        for key, value in fields.items():
            if any(word in key.lower() for word in self.SENSITIVE_KEYS):
                masked[key] = REDACTED
            elif isinstance(value, str):
                masked[key] = self.mask(value)
            elif isinstance(value, dict):
                masked[key] = self.mask_fields(value)
            else:
                masked[key] = value
        return masked


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    # Records from ResilienceLogger carry the context captured at emit time
    context = getattr(record, "log_context", None)
    return dict(context) if context is not None else get_log_context()


class JsonFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message, context, fields."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_timestamp: bool = True,
    ) -> None:
        super().__init__()
        self._masker = masker or SensitiveDataMasker()
        self._include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {}
        if self._include_timestamp:
            payload["timestamp"] = (
                time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
                + f".{int(record.msecs):03d}Z"
            )
        payload["level"] = record.levelname
        payload["logger"] = record.name
        payload["message"] = self._masker.mask(record.getMessage())

        context = _record_context(record)
        if context:
            payload["context"] = self._masker.mask_fields(context)
        payload.update(self._masker.mask_fields(getattr(record, "extra_fields", {})))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """``time | LEVEL | logger | message | key=value ...``"""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_context: bool = True,
    ) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self._masker = masker or SensitiveDataMasker()
        self._include_context = include_context

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = self._masker.mask(super().formatMessage(record))

        fields: dict[str, Any] = {}
        if self._include_context:
            fields.update(_record_context(record))
        fields.update(getattr(record, "extra_fields", {}))
        if not fields:
            return line
        masked = self._masker.mask_fields(fields)
        return line + " | " + " ".join(f"{k}={v}" for k, v in masked.items())


class ResilienceLogger:
    """Stdlib logger wrapper that takes keyword fields.

    Example:
        >>> logger = get_logger("llm_resilience.retry")
        >>> logger.warning("Retrying", attempt=2, delay_ms=2000)
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    @staticmethod
    def configure(
        level: LogLevel = LogLevel.INFO,
        format: str = "json",
        stream: Any = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        """Replace the package handler.

        Args:
            level: Minimum level for all llm_resilience loggers
            format: 'json' or 'text'
            stream: Output stream (default: stderr)
            masker: Sensitive data masker
        """
        formatter: logging.Formatter
        if format == "json":
            formatter = JsonFormatter(masker=masker)
        else:
            formatter = TextFormatter(masker=masker)

        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(formatter)

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        for old in list(package_logger.handlers):
            package_logger.removeHandler(old)
        package_logger.addHandler(handler)
        package_logger.setLevel(level.to_logging_level())

    def _log(self, level: int, msg: str, exc_info: bool = False, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            msg,
            exc_info=exc_info,
            extra={"extra_fields": fields, "log_context": get_log_context()},
        )

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, exc_info: bool = False, **fields: Any) -> None:
        self._log(logging.ERROR, msg, exc_info=exc_info, **fields)


def _install_default_handler() -> None:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if package_logger.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(TextFormatter())
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)


def get_logger(name: str) -> ResilienceLogger:
    """Get a structured logger; ``name`` should sit under ``llm_resilience``."""
    _install_default_handler()
    return ResilienceLogger(logging.getLogger(name))
