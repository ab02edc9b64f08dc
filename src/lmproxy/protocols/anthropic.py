"""Anthropic Messages wire format.

Handles ``POST /v1/messages`` bodies, the ``message`` response object and
the ``message_start`` ... ``message_stop`` event stream. Content blocks are
emitted strictly one at a time: a block is stopped before the next one
starts, and a tool call is never split across blocks.
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
    Role,
    TextPart,
    ToolCallPart,
    ToolChoicePolicy,
    ToolResultPart,
    ToolSpec,
    UnifiedMessage,
)
from lmproxy.protocols.base import ApiFormat, ResponseContext, output_text_of
from lmproxy.protocols.content import (
    decode_base64,
    fallback_text,
    require_content,
    require_objects,
    sampling_options,
    stringify,
    to_json_text,
)
from lmproxy.streaming import ItemKind, SequenceEvent, SequenceEventKind, StreamItem, WireEvent

logger = logging.getLogger(__name__)

# Client tools carry no ``type`` or ``type: "custom"``; everything else is
# a versioned server tool (bash_20250124, web_search_20250305, ...).
_CLIENT_TOOL_TYPES = (None, "custom")


def _usage_body(input_tokens: int, output_tokens: int) -> dict[str, Any]:
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": 0,
    }


class AnthropicAdapter:
    """Adapter for the Anthropic Messages API."""

    api_format = ApiFormat.ANTHROPIC

    # -----------------------------------------------------------------
    # Request mapping
    # -----------------------------------------------------------------

    def system_to_unified(self, system: Any) -> list[UnifiedMessage]:
        """The system prompt becomes leading user message(s)."""
        if not system:
            return []
        if isinstance(system, str):
            return [UnifiedMessage.user(system)]
        return [
            UnifiedMessage.user(block.get("text", ""))
            for block in system
            if isinstance(block, dict)
        ]

    def to_unified(self, body: dict[str, Any]) -> list[UnifiedMessage]:
        messages = self.system_to_unified(body.get("system"))
        for msg in body.get("messages") or []:
            role = Role.ASSISTANT if msg.get("role") == "assistant" else Role.USER
            content = msg.get("content")
            if isinstance(content, str):
                messages.append(UnifiedMessage(role, (TextPart(text=content),)))
            else:
                messages.append(UnifiedMessage(role, self._map_blocks(content or [])))
        return messages

    def _map_blocks(self, blocks: list[Any]) -> tuple[Part, ...]:
        parts = [self._map_block(block) for block in blocks]
        return tuple(parts) if parts else (TextPart(text=""),)

    def _map_block(self, block: Any) -> Part:
        if not isinstance(block, dict):
            return fallback_text(block)

        kind = block.get("type")
        if kind == "text":
            return TextPart(text=block.get("text", ""))

        if kind == "image":
            source = block.get("source") or {}
            if source.get("type") == "base64":
                data = decode_base64(source.get("media_type", ""), source.get("data", ""))
                if data is not None:
                    return data
            return fallback_text(block, "image")

        if kind == "search_result":
            body = "\n".join(
                c.get("text", "") for c in block.get("content") or [] if isinstance(c, dict)
            )
            return TextPart(
                text=f"[Search Result: {block.get('title', '')}]\n"
                f"Source: {block.get('source', '')}\n\n{body}"
            )

        if kind == "thinking":
            return TextPart(text=block.get("thinking", ""))
        if kind == "redacted_thinking":
            return TextPart(text=block.get("data", ""))

        if kind in ("tool_use", "server_tool_use"):
            return ToolCallPart(
                call_id=block.get("id", ""),
                name=block.get("name", ""),
                arguments_json=stringify(block.get("input") or {}),
            )

        if kind == "tool_result":
            return ToolResultPart(
                call_id=block.get("tool_use_id", ""),
                content=self._tool_result_content(block.get("content")),
            )

        if kind == "web_search_tool_result":
            return ToolResultPart(
                call_id=block.get("tool_use_id", ""),
                content=to_json_text(block.get("content")),
            )

        return fallback_text(block, kind or "block")

    @staticmethod
    def _tool_result_content(content: Any) -> str:
        if not content:
            return ""
        if isinstance(content, str):
            return content
        return "".join(
            c.get("text", "") if isinstance(c, dict) and c.get("type") == "text" else to_json_text(c)
            for c in content
        )

    def tools_to_unified(self, tools: list[Any] | None) -> list[ToolSpec]:
        specs: list[ToolSpec] = []
        for tool in tools or []:
            if isinstance(tool, dict) and tool.get("type") in _CLIENT_TOOL_TYPES and tool.get("name"):
                specs.append(
                    ToolSpec(
                        name=tool["name"],
                        description=tool.get("description") or "",
                        input_schema=tool.get("input_schema") or {"type": "object", "properties": {}},
                    )
                )
            else:
                kind = tool.get("type") if isinstance(tool, dict) else type(tool).__name__
                logger.info("Skipping unsupported tool type: %s", kind)
        return specs

    def choice_to_unified(self, choice: Any) -> ToolChoicePolicy:
        kind = choice.get("type") if isinstance(choice, dict) else choice
        if kind == "auto":
            return ToolChoicePolicy.AUTO
        if kind in ("any", "tool"):
            return ToolChoicePolicy.REQUIRED
        return ToolChoicePolicy.NONE

    def build_request(self, body: dict[str, Any], model: str) -> ChatRequest:
        messages = body.get("messages")
        if not isinstance(messages, list):
            raise ValidationError("messages: Field required", param="messages")
        for index, msg in enumerate(require_objects(messages, "messages")):
            require_content(msg.get("content"), f"messages.{index}.content")
        require_content(body.get("system"), "system", optional=True)
        require_objects(body.get("tools"), "tools", optional=True)

        choice = body.get("tool_choice")
        explicit_none = isinstance(choice, dict) and choice.get("type") == "none"
        tools = [] if explicit_none else self.tools_to_unified(body.get("tools"))

        options = sampling_options(body, "max_tokens")
        if body.get("stop_sequences"):
            options["stop"] = body["stop_sequences"]
        return ChatRequest(
            model=model,
            messages=tuple(self.to_unified(body)),
            tools=tuple(tools),
            tool_choice=self.choice_to_unified(choice),
            options=options,
        )

    # -----------------------------------------------------------------
    # Response mapping
    # -----------------------------------------------------------------

    def from_completion(
        self, result: CompletionResult, context: ResponseContext
    ) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        if result.text:
            content.append({"type": "text", "text": result.text, "citations": None})
        for tc in result.tool_calls:
            content.append(
                {
                    "type": "tool_use",
                    "id": tc.call_id or generate_id(IdNamespace.TOOL_USE),
                    "name": tc.name,
                    "input": tc.input_object(),
                }
            )

        usage = context.usage_for(result.usage, output_text_of(result))
        return {
            "id": generate_id(IdNamespace.MESSAGE),
            "type": "message",
            "role": "assistant",
            "model": context.model,
            "content": content,
            "stop_reason": "tool_use" if result.tool_calls else "end_turn",
            "stop_sequence": None,
            "usage": _usage_body(usage.input_tokens, usage.output_tokens),
        }

    def stream_encoder(self, context: ResponseContext) -> AnthropicStreamEncoder:
        return AnthropicStreamEncoder(context)

    def error_body(self, error: GatewayError) -> dict[str, Any]:
        return {
            "type": "error",
            "error": {"type": error.error_type, "message": error.message},
        }


class AnthropicStreamEncoder:
    """Encodes grammar events as Anthropic message stream events.

    The grammar keeps every item open until the end of the stream, while
    Anthropic allows a single open content block. A text block is stopped
    whenever another item starts and reopened as a fresh block if more
    text follows. A ``tool_use`` block is never interrupted: while one is
    open, events for other items are held back and replayed once its
    arguments are done, so every call id appears in exactly one block.
    """

    def __init__(self, context: ResponseContext) -> None:
        self._context = context
        self._next_index = 0
        self._open: tuple[StreamItem, int] | None = None
        self._held: list[SequenceEvent] = []

    @staticmethod
    def _event(event_type: str, **fields: Any) -> WireEvent:
        return WireEvent(data={"type": event_type, **fields}, event=event_type)

    def _is_open(self, item: StreamItem) -> bool:
        return self._open is not None and self._open[0].item_id == item.item_id

    def _holding_for(self, item: StreamItem) -> bool:
        return (
            self._open is not None
            and self._open[0].kind == ItemKind.FUNCTION_CALL
            and not self._is_open(item)
        )

    def _stop_open(self) -> list[WireEvent]:
        if self._open is None:
            return []
        _, index = self._open
        self._open = None
        return [self._event("content_block_stop", index=index)]

    def _release(self) -> list[WireEvent]:
        held, self._held = self._held, []
        events: list[WireEvent] = []
        for event in held:
            events.extend(self.encode(event))
        return events

    def _start(self, item: StreamItem) -> list[WireEvent]:
        events = self._stop_open()
        index = self._next_index
        self._next_index += 1
        self._open = (item, index)
        if item.kind == ItemKind.MESSAGE:
            block: dict[str, Any] = {"type": "text", "text": "", "citations": None}
        else:
            block = {"type": "tool_use", "id": item.call_id, "name": item.name, "input": {}}
        events.append(self._event("content_block_start", index=index, content_block=block))
        return events

    def _ensure_open(self, item: StreamItem) -> tuple[list[WireEvent], int]:
        if self._is_open(item):
            assert self._open is not None
            return [], self._open[1]
        events = self._start(item)
        assert self._open is not None
        return events, self._open[1]

    def encode(self, event: SequenceEvent) -> list[WireEvent]:
        kind = event.kind
        item = event.item

        if item is not None and self._holding_for(item):
            self._held.append(event)
            return []

        if kind == SequenceEventKind.CREATED:
            message = {
                "id": generate_id(IdNamespace.MESSAGE),
                "type": "message",
                "role": "assistant",
                "model": self._context.model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": _usage_body(self._context.input_tokens, 1),
            }
            return [self._event("message_start", message=message)]

        if kind == SequenceEventKind.IN_PROGRESS:
            return [self._event("ping")]

        if kind == SequenceEventKind.ITEM_ADDED and item is not None:
            return self._start(item)

        if kind == SequenceEventKind.TEXT_DELTA and item is not None:
            events, index = self._ensure_open(item)
            events.append(
                self._event(
                    "content_block_delta",
                    index=index,
                    delta={"type": "text_delta", "text": event.delta},
                )
            )
            return events

        if kind == SequenceEventKind.ARGUMENTS_DELTA and item is not None:
            if not event.delta:
                return []
            events, index = self._ensure_open(item)
            events.append(
                self._event(
                    "content_block_delta",
                    index=index,
                    delta={"type": "input_json_delta", "partial_json": event.delta},
                )
            )
            return events

        if kind == SequenceEventKind.ARGUMENTS_DONE and item is not None:
            if self._is_open(item):
                return self._stop_open() + self._release()
            return []

        if kind == SequenceEventKind.ITEM_DONE and item is not None:
            if self._is_open(item):
                return self._stop_open()
            return []

        if kind == SequenceEventKind.COMPLETED:
            result = event.result or CompletionResult()
            usage = self._context.usage_for(event.usage, output_text_of(result))
            events = []
            while self._held:
                events.extend(self._stop_open())
                events.extend(self._release())
            events.extend(self._stop_open())
            events.append(
                self._event(
                    "message_delta",
                    delta={
                        "stop_reason": "tool_use" if result.tool_calls else "end_turn",
                        "stop_sequence": None,
                    },
                    usage=_usage_body(usage.input_tokens, usage.output_tokens),
                )
            )
            events.append(self._event("message_stop"))
            return events

        if kind == SequenceEventKind.FAILED:
            self._held = []
            return [
                self._event(
                    "error",
                    error={"type": "api_error", "message": event.message},
                )
            ]

        return []
