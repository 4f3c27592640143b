#!/usr/bin/env python3
"""
Resilience example.

Wraps an OpenAI-compatible chat completions endpoint, called with httpx,
in a ProtectedClient and shows:
- Classified errors, retries and fallbacks during text and JSON generation
- Circuit breaker and rate-limit state after the calls
- A direct health check of the endpoint

Usage:
    export OPENAI_API_KEY="your-api-key"
    python examples/resilience.py
"""

import asyncio
import os

import httpx
import pydantic

from llm_resilience import create_protected_client
from llm_resilience.telemetry import LogLevel, ResilienceLogger

API_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1") + "/chat/completions"


class OfferAnalysis(pydantic.BaseModel):
    summary: str
    risk_score: int
    contingencies: list[str]


def make_completion(http: httpx.AsyncClient):
    """Build a completion function over an httpx client."""

    async def complete(messages, *, model, max_tokens, temperature) -> str:
        response = await http.post(
            API_URL,
            json={
                "model": model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        # HTTPStatusError carries status and headers for classification
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"] or ""

    return complete


async def main() -> None:
    ResilienceLogger.configure(level=LogLevel.INFO, format="text")

    headers = {"Authorization": f"Bearer {os.getenv('OPENAI_API_KEY', '')}"}
    async with httpx.AsyncClient(headers=headers, timeout=30.0) as http:
        client = create_protected_client(
            make_completion(http),
            {
                "retry": {"maxRetries": 2, "baseDelay": 500},
                "circuitBreaker": {"failureThreshold": 3, "recoveryTimeout": 30000},
                "rateLimit": {"requestsPerMinute": 20},
            },
        )

        health = await client.health_check("gpt-4o-mini")
        print(f"Health: {health.status.value} ({health.latency_ms:.0f}ms) {health.errors}")
        print()

        text = await client.generate_text(
            "Write a two-sentence market_analysis for a 3-bed house in Austin.",
            "gpt-4o-mini",
            max_tokens=120,
        )
        print(f"Text: {text}")
        print()

        analysis = await client.generate_json(
            "Analyze an offer of $410,000 with inspection and financing contingencies.",
            OfferAnalysis,
            "gpt-4o-mini",
        )
        print(f"JSON: {analysis!r}")
        print()

        handler = client.error_handler
        print(f"Circuit: {handler.get_circuit_breaker_metrics().to_dict()}")
        print(f"Rate limit usage: {handler.get_rate_limit_usage().to_dict()}")
        print(f"Metrics: {handler.get_metrics()}")


if __name__ == "__main__":
    asyncio.run(main())
