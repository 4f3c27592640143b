"""
Fallback strategies for degraded responses.

When the protected path is exhausted these produce a best-effort value of
the expected shape: canned text chosen by context label, or a minimally
populated structure matching a JSON schema. No network calls.
"""

from __future__ import annotations

from typing import Any

import pydantic

# Context label -> canned response, matched by case-insensitive substring
DEFAULT_TEMPLATES: dict[str, str] = {
    "cover_letter": (
        "Thank you for considering our offer. We are excited about the "
        "opportunity to purchase your property and believe our offer represents "
        "fair market value. We are committed to a smooth closing process and "
        "look forward to hearing from you."
    ),
    "market_analysis": (
        "Based on current market conditions, the property is positioned "
        "competitively. Market trends suggest stable values with normal "
        "transaction timelines."
    ),
    "negotiation_strategy": (
        "Recommended approach: Present a fair offer based on comparable sales, "
        "maintain flexibility on closing timeline, and be prepared to negotiate "
        "on price and terms."
    ),
    "offer_analysis": (
        "The offer appears to be within market range. Key considerations include "
        "financing terms, closing timeline, and contingency structure."
    ),
}

JsonSchema = dict[str, Any]


class FallbackStrategies:
    """Stateless producers of degraded substitute results.

    Example:
        >>> strategies = FallbackStrategies()
        >>> await strategies.text_generation_fallback(prompt, "market_analysis")
        'Based on current market conditions, ...'
    """

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        """Initialize strategies.

        Args:
            templates: Context label to canned text; defaults to DEFAULT_TEMPLATES
        """
        self._templates = dict(DEFAULT_TEMPLATES if templates is None else templates)

    def get_template_response(self, context: str) -> str | None:
        """Find a canned response whose label occurs in the context.

        Returns:
            The first matching template, or None
        """
        lowered = context.lower()
        for key, template in self._templates.items():
            if key in lowered:
                return template
        return None

    async def text_generation_fallback(self, original_prompt: str, context: str) -> str:
        """Produce substitute text for a failed generation.

        Args:
            original_prompt: The prompt that could not be served (unused by the
                default templates, kept for custom strategies)
            context: Label describing what was being generated

        Returns:
            A canned template, or a generic apology naming the context
        """
        template = self.get_template_response(context)
        if template:
            return template

        return (
            "Unable to generate custom content at this time. Please try again "
            f"later or contact support for assistance with: {context}"
        )

    async def json_generation_fallback(
        self,
        schema: JsonSchema | type[pydantic.BaseModel],
        context: str = "JSON generation",
    ) -> dict[str, Any]:
        """Produce a minimal structure honoring an object schema.

        Args:
            schema: JSON schema dict, or a pydantic model class
            context: Label describing what was being generated

        Returns:
            One entry per schema property: strings become ``"Generated <key>"``,
            numbers 0, booleans False, arrays [], anything else None. Schemas
            without properties yield ``{}``.
        """
        return minimal_instance(schema)


def minimal_instance(schema: JsonSchema | type[pydantic.BaseModel]) -> dict[str, Any]:
    """Build the minimal object for a schema (see json_generation_fallback)."""
    if isinstance(schema, type) and issubclass(schema, pydantic.BaseModel):
        schema = schema.model_json_schema()

    if not isinstance(schema, dict):
        return {}
    properties = schema.get("properties")
    if schema.get("type") != "object" or not isinstance(properties, dict):
        return {}

    result: dict[str, Any] = {}
    for key, prop in properties.items():
        prop_type = prop.get("type") if isinstance(prop, dict) else None
        if prop_type == "string":
            result[key] = f"Generated {key}"
        elif prop_type in ("number", "integer"):
            result[key] = 0
        elif prop_type == "boolean":
            result[key] = False
        elif prop_type == "array":
            result[key] = []
        else:
            result[key] = None
    return result
