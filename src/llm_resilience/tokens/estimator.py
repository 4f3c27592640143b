"""
Rough token estimation for rate-limit budgeting.

Budgets are checked before a request is sent, so the estimate only needs to
be in the right range, not tokenizer-exact.
"""

from __future__ import annotations

import math

# Roughly four characters per token for English text
CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Estimate the token count of a text.

    Args:
        text: Input text

    Returns:
        ceil(len(text) / 4)
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)
