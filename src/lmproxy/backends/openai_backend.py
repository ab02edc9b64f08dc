"""Backend for any OpenAI-compatible Chat Completions endpoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from lmproxy.backends.base import BaseBackend
from lmproxy.core.errors import UpstreamError, error_from_status
from lmproxy.core.ids import IdNamespace, generate_id
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
    ToolCallResult,
    ToolChoicePolicy,
    UnifiedMessage,
    Usage,
)
from lmproxy.protocols.content import encode_data

logger = logging.getLogger(__name__)

_TOOL_CHOICE = {
    ToolChoicePolicy.AUTO: "auto",
    ToolChoicePolicy.REQUIRED: "required",
}


class OpenAIBackend(BaseBackend):
    """Runs completions through ``client.chat.completions.create()``.

    Args:
        api_key: Backend credential; the SDK reads ``OPENAI_API_KEY`` when
            omitted.
        base_url: Endpoint override for OpenAI-compatible servers.
        http_client: Custom ``httpx.AsyncClient`` handed to the SDK.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        import openai

        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            http_client=http_client,
        )

    def backend_name(self) -> str:
        return "openai"

    # -----------------------------------------------------------------
    # Request mapping
    # -----------------------------------------------------------------

    def _map_messages(self, messages: tuple[UnifiedMessage, ...]) -> list[dict[str, Any]]:
        mapped: list[dict[str, Any]] = []
        for msg in messages:
            mapped.extend(self._map_message(msg))
        return mapped

    def _map_message(self, msg: UnifiedMessage) -> list[dict[str, Any]]:
        if msg.role == Role.ASSISTANT:
            out: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            calls = msg.tool_calls
            if calls:
                out["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments_json},
                    }
                    for call in calls
                ]
            elif out["content"] is None:
                out["content"] = ""
            return [out]

        # Tool results travel as separate ``tool`` messages ahead of the
        # rest of the user turn.
        result: list[dict[str, Any]] = [
            {"role": "tool", "tool_call_id": part.call_id, "content": part.content}
            for part in msg.tool_results
        ]
        content: list[dict[str, Any]] = []
        for part in msg.parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, DataPart):
                url = f"data:{part.mime_type};base64,{encode_data(part)}"
                content.append({"type": "image_url", "image_url": {"url": url}})
        if content:
            if all(c["type"] == "text" for c in content):
                result.append({"role": "user", "content": "".join(c["text"] for c in content)})
            else:
                result.append({"role": "user", "content": content})
        elif not result:
            result.append({"role": "user", "content": ""})
        return result

    def _build_kwargs(self, request: ChatRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self._map_messages(request.messages),
        }
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in request.tools
            ]
            choice = _TOOL_CHOICE.get(request.tool_choice)
            if choice is not None:
                kwargs["tool_choice"] = choice
        for key, value in request.options.items():
            kwargs[key] = value
        return kwargs

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def complete(self, request: ChatRequest) -> CompletionResult:
        """Send a non-streaming chat completion.

        Raises:
            GatewayError: Translated from raw OpenAI SDK exceptions.
        """
        import openai

        kwargs = self._build_kwargs(request)
        try:
            raw = await self._client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise error_from_status(exc.status_code, str(exc)) from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError(str(exc)) from exc

        choice = raw.choices[0] if raw.choices else None
        text = ""
        calls: list[ToolCallResult] = []
        if choice is not None:
            text = choice.message.content or ""
            for tc in choice.message.tool_calls or []:
                fn = getattr(tc, "function", None)
                if fn is None:
                    continue
                calls.append(ToolCallResult(tc.id, fn.name, fn.arguments or None))
        usage = Usage()
        if raw.usage is not None:
            usage = Usage(raw.usage.prompt_tokens or 0, raw.usage.completion_tokens or 0)
        return CompletionResult(text=text, tool_calls=tuple(calls), usage=usage)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        """Send a streaming chat completion.

        Yields:
            Text and tool-call fragments, then ``End`` or ``Failed``.

        Raises:
            GatewayError: If the request is rejected before streaming.
        """
        import openai

        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            raw_stream = await self._client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise error_from_status(exc.status_code, str(exc)) from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError(str(exc)) from exc

        # index -> (call id, name); ids only arrive on a call's first chunk
        calls: dict[int, tuple[str, str]] = {}
        usage = Usage()
        try:
            async for chunk in raw_stream:
                if chunk.usage is not None:
                    usage = Usage(
                        chunk.usage.prompt_tokens or 0,
                        chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield TextDelta(delta.content)
                for tc in delta.tool_calls or []:
                    fn = tc.function
                    if tc.index not in calls:
                        calls[tc.index] = (
                            tc.id or generate_id(IdNamespace.CALL),
                            (fn.name if fn else "") or "",
                        )
                    call_id, name = calls[tc.index]
                    yield ToolCallDelta(call_id, name, (fn.arguments if fn else "") or "")
        except openai.APIError as exc:
            logger.error("OpenAI stream failed: %s", exc)
            yield Failed(str(exc))
            return
        finally:
            await raw_stream.close()

        yield End(usage)
