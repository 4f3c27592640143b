"""
Client module for llm-resilience.

Provides ProtectedClient, a completion client guarded by the full
resilience stack.
"""

from llm_resilience.client.protected import (
    CompletionFn,
    ProtectedClient,
    create_protected_client,
)

__all__ = [
    "CompletionFn",
    "ProtectedClient",
    "create_protected_client",
]
