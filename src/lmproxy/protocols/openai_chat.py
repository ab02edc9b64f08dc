"""OpenAI Chat Completions wire format.

Handles ``POST /chat/completions`` request bodies, the ``chat.completion``
response object and the ``chat.completion.chunk`` stream terminated by
``data: [DONE]``.
"""

from __future__ import annotations

import logging
from typing import Any

from lmproxy.core.errors import GatewayError, ValidationError
from lmproxy.core.ids import IdNamespace, generate_id
from lmproxy.core.models import (
    ChatRequest,
    CompletionResult,
    Part,
    TextPart,
    ToolCallPart,
    ToolChoicePolicy,
    ToolResultPart,
    ToolSpec,
    UnifiedMessage,
)
from lmproxy.protocols.base import ApiFormat, ResponseContext, output_text_of
from lmproxy.protocols.content import (
    fallback_text,
    parse_data_uri,
    require_content,
    require_objects,
    sampling_options,
    stringify,
    to_json_text,
)
from lmproxy.streaming import ItemKind, SequenceEvent, SequenceEventKind, WireEvent

logger = logging.getLogger(__name__)


def openai_error_body(error: GatewayError) -> dict[str, Any]:
    """Render an error the way the OpenAI API does."""
    body = error.to_dict()
    body["type"] = "server_error" if error.status_code >= 500 else "invalid_request_error"
    if body["code"] is None and error.status_code == 404:
        body["code"] = "model_not_found"
    return {"error": body}


def openai_choice_to_unified(choice: Any) -> ToolChoicePolicy:
    """Map ``tool_choice`` (shared by both OpenAI APIs) onto a policy.

    A named function (``{"type": "function", ...}``) cannot be forced
    individually and becomes ``REQUIRED``.
    """
    if choice is None or choice == "none":
        return ToolChoicePolicy.NONE
    if choice == "auto":
        return ToolChoicePolicy.AUTO
    if choice == "required":
        return ToolChoicePolicy.REQUIRED
    if isinstance(choice, dict):
        if choice.get("type") == "allowed_tools":
            mode = choice.get("mode") or (choice.get("allowed_tools") or {}).get("mode")
            return ToolChoicePolicy.REQUIRED if mode == "required" else ToolChoicePolicy.AUTO
        if choice.get("type") in ("function", "custom"):
            return ToolChoicePolicy.REQUIRED
    return ToolChoicePolicy.AUTO


class OpenAIChatAdapter:
    """Adapter for the OpenAI Chat Completions API."""

    api_format = ApiFormat.OPENAI_CHAT

    # -----------------------------------------------------------------
    # Request mapping
    # -----------------------------------------------------------------

    def to_unified(self, body: dict[str, Any]) -> list[UnifiedMessage]:
        return [self._map_message(msg) for msg in body.get("messages") or []]

    def _map_message(self, msg: dict[str, Any]) -> UnifiedMessage:
        role = msg.get("role")
        content = msg.get("content")

        if role in ("system", "developer"):
            if isinstance(content, list):
                return UnifiedMessage.user(
                    *(TextPart(text=p.get("text", "")) for p in content if isinstance(p, dict))
                )
            return UnifiedMessage.user(content or "")

        if role == "user":
            if isinstance(content, list):
                return UnifiedMessage.user(*(self._map_user_part(p) for p in content))
            return UnifiedMessage.user(content or "")

        if role == "assistant":
            parts: list[Part] = []
            if isinstance(content, str):
                if content:
                    parts.append(TextPart(text=content))
            elif isinstance(content, list):
                for p in content:
                    if isinstance(p, dict) and p.get("type") == "text":
                        parts.append(TextPart(text=p.get("text", "")))
                    else:
                        # refusal parts
                        parts.append(TextPart(text=to_json_text(p)))
            for tc in msg.get("tool_calls") or []:
                parts.append(self._map_tool_call(tc))
            return UnifiedMessage.assistant(*parts)

        if role == "tool":
            return UnifiedMessage.user(
                ToolResultPart(
                    call_id=msg.get("tool_call_id", ""),
                    content=self._tool_content(content),
                )
            )

        logger.warning("Unknown chat message role %r", role)
        return UnifiedMessage.assistant("Unknown role message: " + to_json_text(msg))

    @staticmethod
    def _map_user_part(part: Any) -> Part:
        if not isinstance(part, dict):
            return fallback_text(part)
        if part.get("type") == "text":
            return TextPart(text=part.get("text", ""))
        if part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url", "")
            data = parse_data_uri(url)
            if data is not None:
                return data
            return fallback_text(part, "remote image")
        return fallback_text(part)

    @staticmethod
    def _map_tool_call(tc: dict[str, Any]) -> ToolCallPart:
        if tc.get("type") == "custom":
            custom = tc.get("custom") or {}
            return ToolCallPart(
                call_id=tc.get("id", ""),
                name=custom.get("name", ""),
                arguments_json=stringify(custom.get("input", "")),
            )
        fn = tc.get("function") or {}
        return ToolCallPart(
            call_id=tc.get("id", ""),
            name=fn.get("name", ""),
            arguments_json=stringify(fn.get("arguments") or "{}"),
        )

    @staticmethod
    def _tool_content(content: Any) -> str:
        if isinstance(content, list):
            texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
            if len(texts) == len(content):
                return "".join(texts)
        return stringify(content if content is not None else "")

    def tools_to_unified(self, tools: list[Any] | None) -> list[ToolSpec]:
        specs: list[ToolSpec] = []
        for tool in tools or []:
            if isinstance(tool, dict) and tool.get("type") == "function":
                fn = tool.get("function") or {}
                specs.append(
                    ToolSpec(
                        name=fn.get("name", ""),
                        description=fn.get("description") or "",
                        input_schema=fn.get("parameters") or {"type": "object", "properties": {}},
                    )
                )
            else:
                kind = tool.get("type") if isinstance(tool, dict) else type(tool).__name__
                logger.info("Skipping unsupported tool type: %s", kind)
        return specs

    def choice_to_unified(self, choice: Any) -> ToolChoicePolicy:
        return openai_choice_to_unified(choice)

    def build_request(self, body: dict[str, Any], model: str) -> ChatRequest:
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ValidationError(
                "messages is required and must be a non-empty array",
                code="missing_required_parameter",
                param="messages",
            )
        for index, msg in enumerate(require_objects(messages, "messages")):
            require_content(msg.get("content"), f"messages.{index}.content", optional=True)
            require_objects(msg.get("tool_calls"), f"messages.{index}.tool_calls", optional=True)
        require_objects(body.get("tools"), "tools", optional=True)

        choice = body.get("tool_choice")
        tools = self.tools_to_unified(body.get("tools")) if choice != "none" else []
        return ChatRequest(
            model=model,
            messages=tuple(self.to_unified(body)),
            tools=tuple(tools),
            tool_choice=self.choice_to_unified(choice),
            options=sampling_options(body, "max_completion_tokens", "max_tokens"),
        )

    # -----------------------------------------------------------------
    # Response mapping
    # -----------------------------------------------------------------

    def from_completion(
        self, result: CompletionResult, context: ResponseContext
    ) -> dict[str, Any]:
        tool_calls = [
            {
                "id": tc.call_id or generate_id(IdNamespace.CALL),
                "type": "function",
                "function": {"name": tc.name, "arguments": tc.arguments_json()},
            }
            for tc in result.tool_calls
        ]
        message: dict[str, Any] = {
            "role": "assistant",
            "content": result.text or None,
            "refusal": None,
        }
        if tool_calls:
            message["tool_calls"] = tool_calls

        usage = context.usage_for(result.usage, output_text_of(result))
        return {
            "id": generate_id(IdNamespace.CHAT_COMPLETION),
            "object": "chat.completion",
            "created": context.created,
            "model": context.model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": "tool_calls" if tool_calls else "stop",
                    "logprobs": None,
                }
            ],
            "usage": {
                "prompt_tokens": usage.input_tokens,
                "completion_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            },
        }

    def stream_encoder(self, context: ResponseContext) -> ChatStreamEncoder:
        return ChatStreamEncoder(context)

    def error_body(self, error: GatewayError) -> dict[str, Any]:
        return openai_error_body(error)


class ChatStreamEncoder:
    """Encodes grammar events as ``chat.completion.chunk`` objects."""

    def __init__(self, context: ResponseContext) -> None:
        self._context = context
        self._id = generate_id(IdNamespace.CHAT_COMPLETION)
        self._tool_index: dict[str, int] = {}
        stream_options = context.body.get("stream_options") or {}
        self._include_usage = bool(stream_options.get("include_usage"))

    def _chunk(
        self,
        delta: dict[str, Any],
        finish_reason: str | None = None,
        **extra: Any,
    ) -> WireEvent:
        data: dict[str, Any] = {
            "id": self._id,
            "object": "chat.completion.chunk",
            "created": self._context.created,
            "model": self._context.model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                    "logprobs": None,
                }
            ],
        }
        data.update(extra)
        return WireEvent(data=data)

    def encode(self, event: SequenceEvent) -> list[WireEvent]:
        kind = event.kind
        item = event.item

        if kind == SequenceEventKind.CREATED:
            return [self._chunk({"role": "assistant", "content": ""})]

        if kind == SequenceEventKind.TEXT_DELTA:
            return [self._chunk({"content": event.delta})]

        if kind == SequenceEventKind.ITEM_ADDED and item and item.kind == ItemKind.FUNCTION_CALL:
            index = len(self._tool_index)
            self._tool_index[item.item_id] = index
            call = {
                "index": index,
                "id": item.call_id,
                "type": "function",
                "function": {"name": item.name, "arguments": ""},
            }
            return [self._chunk({"tool_calls": [call]})]

        if kind == SequenceEventKind.ARGUMENTS_DELTA and item and event.delta:
            call = {
                "index": self._tool_index[item.item_id],
                "function": {"arguments": event.delta},
            }
            return [self._chunk({"tool_calls": [call]})]

        if kind == SequenceEventKind.COMPLETED:
            finish = "tool_calls" if self._tool_index else "stop"
            extra: dict[str, Any] = {}
            if self._include_usage and event.result is not None:
                usage = self._context.usage_for(event.usage, output_text_of(event.result))
                extra["usage"] = {
                    "prompt_tokens": usage.input_tokens,
                    "completion_tokens": usage.output_tokens,
                    "total_tokens": usage.total_tokens,
                }
            return [self._chunk({}, finish, **extra), WireEvent(data="[DONE]")]

        if kind == SequenceEventKind.FAILED:
            return [self._chunk({"content": f"\n\n[Error: {event.message}]"}, "stop")]

        return []
