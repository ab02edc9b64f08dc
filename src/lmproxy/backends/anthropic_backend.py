"""Backend for the Anthropic Messages API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from lmproxy.backends.base import BaseBackend
from lmproxy.core.errors import UpstreamError, error_from_status
from lmproxy.core.models import (
    ChatRequest,
    CompletionResult,
    DataPart,
    End,
    Failed,
    Role,
    StreamFragment,
    TextDelta,
    TextPart,
    ToolCallDelta,
    ToolCallPart,
    ToolCallResult,
    ToolChoicePolicy,
    ToolResultPart,
    UnifiedMessage,
    Usage,
)
from lmproxy.protocols.content import encode_data

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096

_TOOL_CHOICE = {
    ToolChoicePolicy.AUTO: {"type": "auto"},
    ToolChoicePolicy.REQUIRED: {"type": "any"},
}


class AnthropicBackend(BaseBackend):
    """Runs completions through ``client.messages.create()``.

    Args:
        api_key: Backend credential; the SDK reads ``ANTHROPIC_API_KEY``
            when omitted.
        base_url: Endpoint override.
        http_client: Custom ``httpx.AsyncClient`` handed to the SDK.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        import anthropic

        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            http_client=http_client,
        )

    def backend_name(self) -> str:
        return "anthropic"

    # -----------------------------------------------------------------
    # Request mapping
    # -----------------------------------------------------------------

    @staticmethod
    def _map_part(part: Any) -> dict[str, Any] | None:
        if isinstance(part, TextPart):
            # The API rejects empty text blocks
            return {"type": "text", "text": part.text} if part.text else None
        if isinstance(part, DataPart):
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": part.mime_type,
                    "data": encode_data(part),
                },
            }
        if isinstance(part, ToolCallPart):
            arguments = part.parsed_arguments()
            if not isinstance(arguments, dict):
                logger.warning("Tool call %s has non-object arguments, wrapping", part.call_id)
                arguments = {"arguments": arguments}
            return {"type": "tool_use", "id": part.call_id, "name": part.name, "input": arguments}
        if isinstance(part, ToolResultPart):
            return {"type": "tool_result", "tool_use_id": part.call_id, "content": part.content}
        return None

    def _map_messages(self, messages: tuple[UnifiedMessage, ...]) -> list[dict[str, Any]]:
        """Map messages, merging consecutive same-role turns.

        Anthropic requires strict user/assistant alternation starting with
        a user turn; roles folded onto ``user`` upstream often repeat.
        """
        result: list[dict[str, Any]] = []
        for msg in messages:
            blocks = [b for b in (self._map_part(p) for p in msg.parts) if b is not None]
            if not blocks:
                continue
            role = "assistant" if msg.role == Role.ASSISTANT else "user"
            if result and result[-1]["role"] == role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": role, "content": blocks})

        if not result or result[0]["role"] != "user":
            result.insert(0, {"role": "user", "content": [{"type": "text", "text": "..."}]})
        return result

    def _build_kwargs(self, request: ChatRequest) -> dict[str, Any]:
        options = dict(request.options)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self._map_messages(request.messages),
            "max_tokens": options.pop("max_tokens", DEFAULT_MAX_TOKENS),
        }
        stop = options.pop("stop", None)
        if stop:
            kwargs["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        kwargs.update(options)
        if request.tools:
            kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
                for tool in request.tools
            ]
            choice = _TOOL_CHOICE.get(request.tool_choice)
            if choice is not None:
                kwargs["tool_choice"] = choice
        return kwargs

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def complete(self, request: ChatRequest) -> CompletionResult:
        """Send a non-streaming Messages request.

        Raises:
            GatewayError: Translated from raw Anthropic SDK exceptions.
        """
        import anthropic

        kwargs = self._build_kwargs(request)
        try:
            raw = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise error_from_status(exc.status_code, str(exc)) from exc
        except anthropic.APIConnectionError as exc:
            raise UpstreamError(str(exc)) from exc

        text = ""
        calls: list[ToolCallResult] = []
        for block in raw.content:
            if block.type == "text":
                text += block.text
            elif block.type == "tool_use":
                calls.append(ToolCallResult(block.id, block.name, block.input))
        usage = Usage(raw.usage.input_tokens, raw.usage.output_tokens)
        return CompletionResult(text=text, tool_calls=tuple(calls), usage=usage)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        """Send a streaming Messages request.

        Yields:
            Text and tool-call fragments, then ``End`` or ``Failed``.

        Raises:
            GatewayError: If the request is rejected before streaming.
        """
        import anthropic

        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True

        try:
            raw_stream = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise error_from_status(exc.status_code, str(exc)) from exc
        except anthropic.APIConnectionError as exc:
            raise UpstreamError(str(exc)) from exc

        current: tuple[str, str] | None = None
        input_tokens = 0
        output_tokens = 0
        try:
            async for event in raw_stream:
                event_type = event.type

                if event_type == "message_start":
                    input_tokens = event.message.usage.input_tokens

                elif event_type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        current = (block.id, block.name)
                        yield ToolCallDelta(block.id, block.name, "")
                    else:
                        current = None

                elif event_type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDelta(delta.text)
                    elif delta.type == "input_json_delta" and current is not None:
                        yield ToolCallDelta(current[0], current[1], delta.partial_json)

                elif event_type == "content_block_stop":
                    current = None

                elif event_type == "message_delta":
                    output_tokens = getattr(event.usage, "output_tokens", 0) or 0
        except anthropic.APIError as exc:
            logger.error("Anthropic stream failed: %s", exc)
            yield Failed(str(exc))
            return
        finally:
            await raw_stream.close()

        yield End(Usage(input_tokens, output_tokens))
