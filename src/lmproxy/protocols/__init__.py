"""Wire-format adapters, one per supported API."""

from __future__ import annotations

from lmproxy.protocols.anthropic import AnthropicAdapter
from lmproxy.protocols.base import ApiFormat, ProtocolAdapter, ResponseContext
from lmproxy.protocols.gemini import GeminiAdapter
from lmproxy.protocols.openai_chat import OpenAIChatAdapter
from lmproxy.protocols.openai_responses import OpenAIResponsesAdapter

ADAPTERS: dict[ApiFormat, ProtocolAdapter] = {
    ApiFormat.OPENAI_CHAT: OpenAIChatAdapter(),
    ApiFormat.OPENAI_RESPONSES: OpenAIResponsesAdapter(),
    ApiFormat.ANTHROPIC: AnthropicAdapter(),
    ApiFormat.GEMINI: GeminiAdapter(),
}


def get_adapter(api_format: ApiFormat) -> ProtocolAdapter:
    """Return the adapter for ``api_format``."""
    return ADAPTERS[api_format]


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "ApiFormat",
    "GeminiAdapter",
    "OpenAIChatAdapter",
    "OpenAIResponsesAdapter",
    "ProtocolAdapter",
    "ResponseContext",
    "get_adapter",
]
