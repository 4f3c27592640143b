"""Helpers shared by the config dataclasses: key normalization and env parsing."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Any

from llm_resilience.errors import ConfigurationError

ENV_PREFIX = "LLM_RESILIENCE_"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake_case(name: str) -> str:
    """Convert 'maxRetries' or 'max-retries' to 'max_retries'."""
    return _CAMEL_BOUNDARY.sub("_", name).replace("-", "_").lower()


def normalize_keys(
    data: Mapping[str, Any],
    allowed: set[str],
    section: str,
    aliases: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Normalize mapping keys to dataclass field names.

    Args:
        data: Raw mapping (camelCase or snake_case keys)
        allowed: Field names accepted by the target dataclass
        section: Section name used in error messages
        aliases: Extra spellings mapped onto field names

    Returns:
        Mapping keyed by field name

    Raises:
        ConfigurationError: If data is not a mapping or holds unknown keys
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError(
            f"'{section}' must be a mapping, got {type(data).__name__}"
        )

    result: dict[str, Any] = {}
    for key, value in data.items():
        name = to_snake_case(str(key))
        if aliases:
            name = aliases.get(name, name)
        if name not in allowed:
            raise ConfigurationError(f"Unknown key '{key}' in '{section}'")
        result[name] = value
    return result


def require_number(section: str, name: str, value: Any) -> float | int:
    """Validate that a config value is a non-negative number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"'{section}.{name}' must be a number, got {value!r}"
        )
    if value < 0:
        raise ConfigurationError(f"'{section}.{name}' must be >= 0, got {value}")
    return value


def require_count(section: str, name: str, value: Any, minimum: int = 0) -> int:
    """Validate that a config value is an integer count of at least ``minimum``."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(
            f"'{section}.{name}' must be an integer, got {value!r}"
        )
    if value < minimum:
        raise ConfigurationError(
            f"'{section}.{name}' must be >= {minimum}, got {value}"
        )
    return value


def require_bool(section: str, name: str, value: Any) -> bool:
    """Validate that a config value is a boolean."""
    if not isinstance(value, bool):
        raise ConfigurationError(
            f"'{section}.{name}' must be a boolean, got {value!r}"
        )
    return value


def env_int(name: str) -> int | None:
    """Read an integer from ``LLM_RESILIENCE_<name>``, None if unset."""
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Environment variable {ENV_PREFIX + name} must be an integer, got {raw!r}"
        ) from e


def env_float(name: str) -> float | None:
    """Read a float from ``LLM_RESILIENCE_<name>``, None if unset."""
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Environment variable {ENV_PREFIX + name} must be a number, got {raw!r}"
        ) from e


def env_bool(name: str) -> bool | None:
    """Read a boolean from ``LLM_RESILIENCE_<name>``, None if unset."""
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return None
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(
        f"Environment variable {ENV_PREFIX + name} must be a boolean, got {raw!r}"
    )


def drop_unset(**values: Any) -> dict[str, Any]:
    """Keep only the keyword arguments that are not None."""
    return {k: v for k, v in values.items() if v is not None}
