"""
Error classification for LLM completion APIs.

Maps an arbitrary raw failure (SDK exception, httpx error, builtin OS error,
JSON decode error, ...) into a typed, retry-annotated ClassifiedError.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
import time
from enum import Enum
from typing import Any

import httpx
import pydantic

from llm_resilience.errors.base import ClassifiedError


class ErrorKind(str, Enum):
    """Failure classification for LLM API calls."""

    RATE_LIMIT = "rate_limit"
    """Throttled by the provider (HTTP 429)."""

    QUOTA_EXCEEDED = "quota_exceeded"
    """Account quota or billing limit exhausted."""

    AUTHENTICATION = "authentication"
    """Missing or invalid credentials."""

    INVALID_REQUEST = "invalid_request"
    """Malformed request or invalid parameters."""

    SERVICE_UNAVAILABLE = "service_unavailable"
    """Transient provider-side failure (5xx)."""

    TIMEOUT = "timeout"
    """Request timed out or deadline exceeded."""

    NETWORK_ERROR = "network_error"
    """Connection could not be established or was dropped."""

    PARSING_ERROR = "parsing_error"
    """Response could not be parsed."""

    TOKEN_LIMIT = "token_limit"
    """Prompt plus completion exceed the model context window."""

    CONTENT_FILTER = "content_filter"
    """Request or response blocked by the provider's content policy."""

    MODEL_UNAVAILABLE = "model_unavailable"
    """Requested model not found or not currently served."""

    UNKNOWN = "unknown"
    """Unrecognized failure."""


# Kinds that are retryable by default. UNKNOWN is decided per error.
RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.TIMEOUT,
        ErrorKind.NETWORK_ERROR,
        ErrorKind.MODEL_UNAVAILABLE,
    }
)

_STATUS_MAPPING: dict[int, ErrorKind] = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.QUOTA_EXCEEDED,
    429: ErrorKind.RATE_LIMIT,
}

_CODE_MAPPING: dict[str, ErrorKind] = {
    "context_length_exceeded": ErrorKind.TOKEN_LIMIT,
    "content_filter": ErrorKind.CONTENT_FILTER,
    "model_not_found": ErrorKind.MODEL_UNAVAILABLE,
    "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
}

_NETWORK_CODES = {"ECONNREFUSED", "ECONNRESET", "ENOTFOUND"}
_TIMEOUT_CODES = {"ETIMEDOUT"}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def is_retryable(kind: ErrorKind) -> bool:
    """Check if an error kind is retryable by default.

    Args:
        kind: The error kind to check

    Returns:
        True if failures of this kind are typically transient
    """
    return kind in RETRYABLE_KINDS


def classify_error(
    error: BaseException,
    context: dict[str, Any] | None = None,
) -> ClassifiedError:
    """Classify a raw failure.

    Signals are applied in order (HTTP status, provider code, network or
    timeout signature, parse failure); a later match overrides an earlier one.

    Args:
        error: The raw failure raised by the protected operation
        context: Extra diagnostic fields to attach

    Returns:
        ClassifiedError describing the failure. An error that is already
        classified is returned unchanged.
    """
    if isinstance(error, ClassifiedError):
        if context:
            error.context.update(context)
        return error

    kind = ErrorKind.UNKNOWN
    retryable = False
    retry_after_ms: int | None = None

    status_code = _extract_status_code(error)
    if status_code is not None:
        if status_code in _STATUS_MAPPING:
            kind = _STATUS_MAPPING[status_code]
        elif 500 <= status_code < 600:
            kind = ErrorKind.SERVICE_UNAVAILABLE
        retryable = is_retryable(kind) if kind != ErrorKind.UNKNOWN else status_code >= 500
        if kind == ErrorKind.RATE_LIMIT:
            retry_after_ms = extract_retry_after_ms(_extract_headers(error))

    code = _extract_code(error)
    if code in _CODE_MAPPING:
        kind = _CODE_MAPPING[code]
        retryable = is_retryable(kind)

    if _is_network_error(error, code):
        kind = ErrorKind.NETWORK_ERROR
        retryable = True

    if _is_timeout_error(error, code):
        kind = ErrorKind.TIMEOUT
        retryable = True

    message = _extract_message(error)
    if isinstance(error, (json.JSONDecodeError, pydantic.ValidationError)) or "JSON" in message:
        kind = ErrorKind.PARSING_ERROR
        retryable = False

    details: dict[str, Any] = {"original_error": error}
    if context:
        details.update(context)

    classified = ClassifiedError(
        message,
        kind=kind,
        retryable=retryable,
        code=code,
        status_code=status_code,
        retry_after_ms=retry_after_ms,
        timestamp=time.time(),
        context=details,
    )
    classified.__cause__ = error
    return classified


def extract_retry_after_ms(
    headers: dict[str, str] | None,
    now_ms: float | None = None,
) -> int | None:
    """Extract a retry delay from rate-limit response headers.

    ``retry-after`` is read as seconds. ``x-ratelimit-reset`` may be an
    epoch timestamp (milliseconds or seconds), a delta in seconds, or a
    duration such as ``6m0s`` or ``250ms``.

    Args:
        headers: Response headers (keys compared case-insensitively)
        now_ms: Current wall-clock time in milliseconds

    Returns:
        Delay in milliseconds, or None if no usable header is present
    """
    if not headers:
        return None
    lowered = {str(k).lower(): str(v).strip() for k, v in headers.items()}

    retry_after = lowered.get("retry-after")
    if retry_after:
        try:
            seconds = float(retry_after)
        except ValueError:
            return None
        return _to_ms(seconds * 1000)

    reset = lowered.get("x-ratelimit-reset")
    if not reset:
        return None

    try:
        value = float(reset)
    except ValueError:
        return _parse_duration_ms(reset)
    if not math.isfinite(value):
        return None

    if now_ms is None:
        now_ms = time.time() * 1000
    if value >= 1e12:
        return _to_ms(max(0.0, value - now_ms))
    if value >= 1e9:
        return _to_ms(max(0.0, value * 1000 - now_ms))
    return _to_ms(value * 1000)


def _to_ms(value: float) -> int | None:
    """Round a delay to whole milliseconds; None if negative or not finite."""
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


def _parse_duration_ms(value: str) -> int | None:
    """Parse a duration like '1m30s' or '250ms' into milliseconds."""
    parts = _DURATION_PART.findall(value)
    if not parts or "".join(n + u for n, u in parts) != value:
        return None
    scale = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}
    return _to_ms(sum(float(n) * scale[u] for n, u in parts))


def _extract_status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def _extract_headers(error: BaseException) -> dict[str, str] | None:
    headers = getattr(error, "headers", None)
    if headers is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    if headers is None:
        return None
    try:
        return dict(headers.items())
    except AttributeError:
        return None


def _extract_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict):
            code = inner.get("code") or inner.get("type")
        else:
            code = body.get("code")
        if isinstance(code, str) and code:
            return code
    return None


def _extract_message(error: BaseException) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or "Unknown error occurred"


def _is_network_error(error: BaseException, code: str | None) -> bool:
    if isinstance(error, (ConnectionError, httpx.NetworkError)):
        return True
    return type(error).__name__ == "NetworkError" or code in _NETWORK_CODES


def _is_timeout_error(error: BaseException, code: str | None) -> bool:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return code in _TIMEOUT_CODES
