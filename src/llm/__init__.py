"""
LLM provider clients.

Usage:
    from src.llm import build_clients
    clients = build_clients()
    resp = clients["claude"].invoke([{"role": "user", "content": "hi"}])
    print(resp.text)
"""

from src.llm.providers import (
    AnthropicClient,
    DryRunClient,
    PerplexityClient,
    ProviderClient,
    ProviderConfig,
    ProviderResponse,
    build_client,
    build_clients,
    classify_status,
)

__all__ = [
    "AnthropicClient",
    "DryRunClient",
    "PerplexityClient",
    "ProviderClient",
    "ProviderConfig",
    "ProviderResponse",
    "build_client",
    "build_clients",
    "classify_status",
]
