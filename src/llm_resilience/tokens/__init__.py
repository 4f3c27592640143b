"""Token estimation helpers."""

from llm_resilience.tokens.estimator import CHARS_PER_TOKEN, estimate_token_count

__all__ = [
    "CHARS_PER_TOKEN",
    "estimate_token_count",
]
