"""Chat-completion backends the gateway forwards to."""

from __future__ import annotations

import httpx

from lmproxy.backends.anthropic_backend import AnthropicBackend
from lmproxy.backends.base import BaseBackend, ChatBackend
from lmproxy.backends.openai_backend import OpenAIBackend
from lmproxy.core.config import GatewayConfig


def create_backend(
    config: GatewayConfig,
    http_client: httpx.AsyncClient | None = None,
) -> ChatBackend:
    """Instantiate the backend named by ``config.backend``.

    Raises:
        ValueError: If the backend kind is unknown.
    """
    if config.backend == "openai":
        return OpenAIBackend(
            api_key=config.backend_api_key,
            base_url=config.backend_base_url,
            http_client=http_client,
        )
    if config.backend == "anthropic":
        return AnthropicBackend(
            api_key=config.backend_api_key,
            base_url=config.backend_base_url,
            http_client=http_client,
        )
    raise ValueError(f"Unknown backend: {config.backend}")


__all__ = [
    "AnthropicBackend",
    "BaseBackend",
    "ChatBackend",
    "OpenAIBackend",
    "create_backend",
]
