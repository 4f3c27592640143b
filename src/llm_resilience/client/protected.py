"""
Protected completion client.

Wraps a caller-supplied async completion function with the full
resilience stack and the default fallbacks for text and JSON generation.
The client owns no transport; ``complete`` does the actual call.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, overload

import pydantic

from llm_resilience.resilience.fallback import FallbackStrategies
from llm_resilience.resilience.handler import ErrorHandler, ErrorHandlingConfig
from llm_resilience.telemetry.health import HealthCheckResult, check_completion_health
from llm_resilience.tokens import estimate_token_count

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)

# Added to the prompt estimate to budget for the completion itself
RESPONSE_TOKEN_ESTIMATE = 500

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_JSON_SYSTEM_PROMPT = "You are a helpful assistant. Respond with valid JSON only."


class CompletionFn(Protocol):
    """Async chat completion returning the reply text."""

    def __call__(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> Awaitable[str]: ...


class ProtectedClient:
    """Completion client guarded by an ErrorHandler.

    Example:
        >>> client = create_protected_client(openai_complete)
        >>> text = await client.generate_text("Summarize ...", "gpt-4o")
        >>> data = await client.generate_json("List ...", schema, "gpt-4o")
    """

    def __init__(
        self,
        complete: CompletionFn,
        error_handler: ErrorHandler,
        fallbacks: FallbackStrategies | None = None,
    ) -> None:
        self._complete = complete
        self._error_handler = error_handler
        self._fallbacks = fallbacks or FallbackStrategies()

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    @property
    def fallbacks(self) -> FallbackStrategies:
        return self._fallbacks

    async def generate_text(
        self,
        prompt: str,
        model: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> str:
        """Generate text, degrading to a canned response on failure."""
        messages = [
            {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        async def primary() -> str:
            reply = await self._complete(
                messages, model=model, max_tokens=max_tokens, temperature=temperature
            )
            return reply or ""

        return await self._error_handler.execute_with_fallback(
            primary,
            lambda: self._fallbacks.text_generation_fallback(prompt, "text generation"),
            context="Text generation",
            estimated_tokens=estimate_token_count(prompt) + RESPONSE_TOKEN_ESTIMATE,
        )

    @overload
    async def generate_json(
        self,
        prompt: str,
        schema: type[ModelT],
        model: str,
        *,
        system_prompt: str | None = ...,
        max_tokens: int = ...,
        temperature: float = ...,
    ) -> ModelT: ...

    @overload
    async def generate_json(
        self,
        prompt: str,
        schema: dict[str, Any],
        model: str,
        *,
        system_prompt: str | None = ...,
        max_tokens: int = ...,
        temperature: float = ...,
    ) -> dict[str, Any]: ...

    async def generate_json(
        self,
        prompt: str,
        schema: dict[str, Any] | type[pydantic.BaseModel],
        model: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ) -> Any:
        """Generate a JSON object, degrading to a minimal structure on failure.

        A reply that is not valid JSON, or that fails validation against a
        pydantic model schema, is a non-retryable parsing error and goes
        straight to the fallback.

        Args:
            prompt: User prompt
            schema: JSON schema dict, or a pydantic model class to validate into
            model: Model name passed to the completion function

        Returns:
            Parsed dict, or a model instance when ``schema`` is a model class
        """
        messages = [
            {"role": "system", "content": system_prompt or DEFAULT_JSON_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        model_cls = _model_class(schema)

        async def primary() -> Any:
            reply = await self._complete(
                messages, model=model, max_tokens=max_tokens, temperature=temperature
            )
            data = json.loads(reply or "{}")
            if model_cls is not None:
                return model_cls.model_validate(data)
            return data

        async def fallback() -> Any:
            data = await self._fallbacks.json_generation_fallback(schema, "JSON generation")
            if model_cls is not None:
                return model_cls.model_construct(**data)
            return data

        return await self._error_handler.execute_with_fallback(
            primary,
            fallback,
            context="JSON generation",
            estimated_tokens=estimate_token_count(prompt) + RESPONSE_TOKEN_ESTIMATE,
        )

    async def health_check(self, model: str = "gpt-3.5-turbo") -> HealthCheckResult:
        """Check the completion dependency directly."""
        return await check_completion_health(self._complete, model=model)


def _model_class(
    schema: dict[str, Any] | type[pydantic.BaseModel],
) -> type[pydantic.BaseModel] | None:
    if isinstance(schema, type) and issubclass(schema, pydantic.BaseModel):
        return schema
    return None


def create_protected_client(
    complete: CompletionFn,
    config: ErrorHandlingConfig | Mapping[str, Any] | None = None,
    *,
    clock: Callable[[], float] | None = None,
    fallbacks: FallbackStrategies | None = None,
) -> ProtectedClient:
    """Create a protected client around a completion function.

    Args:
        complete: Async completion function
        config: Handler config, or a partial mapping merged over the defaults
        clock: Monotonic clock for breaker and rate limiter
        fallbacks: Custom fallback strategies

    Returns:
        ProtectedClient
    """
    if config is None:
        config = ErrorHandlingConfig()
    elif isinstance(config, Mapping):
        config = ErrorHandlingConfig.from_dict(config)

    handler = ErrorHandler(config, clock=clock)
    return ProtectedClient(complete, handler, fallbacks)

