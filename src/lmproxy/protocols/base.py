"""Base protocol for wire-format adapters."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from lmproxy.core.auth import WireProtocol
from lmproxy.core.errors import GatewayError
from lmproxy.core.models import (
    ChatRequest,
    CompletionResult,
    ToolChoicePolicy,
    ToolSpec,
    UnifiedMessage,
    Usage,
    estimate_tokens,
)
from lmproxy.streaming import StreamEncoder


class ApiFormat(str, enum.Enum):
    """Every request/response format the gateway speaks."""

    OPENAI_CHAT = "openai_chat"
    OPENAI_RESPONSES = "openai_responses"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"

    @property
    def wire_protocol(self) -> WireProtocol:
        """The protocol family whose credential location applies."""
        if self in (ApiFormat.OPENAI_CHAT, ApiFormat.OPENAI_RESPONSES):
            return WireProtocol.OPENAI
        return WireProtocol(self.value)


@dataclass
class ResponseContext:
    """Per-request values the output side needs besides the completion.

    Attributes:
        model: Model name echoed back to the client.
        body: The original wire request.
        input_tokens: Estimated prompt tokens, used when the backend
            reports none.
        created: UNIX timestamp (seconds) of the request.
    """

    model: str
    body: dict[str, Any] = field(default_factory=dict)
    input_tokens: int = 0
    created: int = field(default_factory=lambda: int(time.time()))

    def usage_for(self, usage: Usage | None, output_text: str = "") -> Usage:
        """Fill gaps in backend-reported usage with estimates."""
        usage = usage or Usage()
        return Usage(
            input_tokens=usage.input_tokens or self.input_tokens,
            output_tokens=usage.output_tokens or estimate_tokens(output_text),
        )


def output_text_of(result: CompletionResult) -> str:
    """Text used to estimate output tokens of a completion."""
    return result.text + "".join(c.name + c.arguments_json() for c in result.tool_calls)


@runtime_checkable
class ProtocolAdapter(Protocol):
    """Protocol that all wire-format adapters must satisfy.

    Each adapter translates one wire format's requests into a
    ``ChatRequest`` and the backend's results back into that format.
    """

    api_format: ApiFormat

    def to_unified(self, body: dict[str, Any]) -> list[UnifiedMessage]:
        """Convert the request's conversation into unified messages."""
        ...

    def tools_to_unified(self, tools: list[Any] | None) -> list[ToolSpec]:
        """Keep callable function declarations, skipping everything else."""
        ...

    def choice_to_unified(self, choice: Any) -> ToolChoicePolicy:
        """Map the wire tool-choice field onto a policy."""
        ...

    def build_request(self, body: dict[str, Any], model: str) -> ChatRequest:
        """Validate ``body`` and produce the backend call.

        Raises:
            ValidationError: If the body is malformed or unsupported.
        """
        ...

    def from_completion(
        self, result: CompletionResult, context: ResponseContext
    ) -> dict[str, Any]:
        """Render a non-streaming response body."""
        ...

    def stream_encoder(self, context: ResponseContext) -> StreamEncoder:
        """Create the streaming encoder for one request."""
        ...

    def error_body(self, error: GatewayError) -> dict[str, Any]:
        """Render an error in the protocol's native shape."""
        ...
