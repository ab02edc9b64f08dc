"""OpenAI Responses wire format.

Handles ``POST /v1/responses``: the ``input`` item list, the ``response``
object and the typed ``response.*`` server-sent events. The gateway keeps
no conversation state, so ``previous_response_id`` and ``conversation``
are rejected and ``item_reference`` inputs are dropped.
"""

from __future__ import annotations

import logging
from typing import Any

from lmproxy.core.errors import GatewayError, StatefulContinuationError, ValidationError
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
    Usage,
)
from lmproxy.protocols.base import ApiFormat, ResponseContext, output_text_of
from lmproxy.protocols.content import (
    fallback_text,
    parse_data_uri,
    require_content,
    require_objects,
    sampling_options,
    stringify,
)
from lmproxy.protocols.openai_chat import openai_choice_to_unified, openai_error_body
from lmproxy.streaming import (
    ItemKind,
    SequenceEvent,
    SequenceEventKind,
    StreamItem,
    WireEvent,
)

logger = logging.getLogger(__name__)

_STATEFUL_PARAMS = ("previous_response_id", "conversation")


# ---------------------------------------------------------------------------
# Output item builders
# ---------------------------------------------------------------------------


def message_item(item_id: str, text: str, status: str = "completed") -> dict[str, Any]:
    return {
        "type": "message",
        "id": item_id,
        "role": "assistant",
        "content": [{"type": "output_text", "text": text, "annotations": []}],
        "status": status,
    }


def function_call_item(
    item_id: str,
    call_id: str,
    name: str,
    arguments: str,
    status: str = "completed",
) -> dict[str, Any]:
    return {
        "type": "function_call",
        "id": item_id,
        "call_id": call_id,
        "name": name,
        "arguments": arguments,
        "status": status,
    }


def build_output(result: CompletionResult) -> list[dict[str, Any]]:
    """Render the output items of a completion: text first, then calls."""
    output: list[dict[str, Any]] = []
    if result.text:
        output.append(message_item(generate_id(IdNamespace.MESSAGE), result.text))
    for tc in result.tool_calls:
        output.append(
            function_call_item(
                generate_id(IdNamespace.FUNCTION_CALL),
                tc.call_id or generate_id(IdNamespace.CALL),
                tc.name,
                tc.arguments_json(),
            )
        )
    return output


def _usage_body(usage: Usage) -> dict[str, Any]:
    return {
        "input_tokens": usage.input_tokens,
        "input_tokens_details": {"cached_tokens": 0},
        "output_tokens": usage.output_tokens,
        "output_tokens_details": {"reasoning_tokens": 0},
        "total_tokens": usage.total_tokens,
    }


class OpenAIResponsesAdapter:
    """Adapter for the OpenAI Responses API."""

    api_format = ApiFormat.OPENAI_RESPONSES

    # -----------------------------------------------------------------
    # Request mapping
    # -----------------------------------------------------------------

    def to_unified(self, body: dict[str, Any]) -> list[UnifiedMessage]:
        messages: list[UnifiedMessage] = []

        instructions = body.get("instructions")
        if isinstance(instructions, str):
            if instructions:
                messages.append(UnifiedMessage.user(instructions))
        elif isinstance(instructions, list):
            messages.extend(self._map_items(instructions))

        input_ = body.get("input")
        if isinstance(input_, str):
            messages.append(UnifiedMessage.user(input_))
        elif isinstance(input_, list):
            messages.extend(self._map_items(input_))
        return messages

    def _map_items(self, items: list[Any]) -> list[UnifiedMessage]:
        messages: list[UnifiedMessage] = []
        for item in items:
            converted = self._map_item(item)
            if converted is not None:
                messages.append(converted)
        return messages

    def _map_item(self, item: Any) -> UnifiedMessage | None:
        if not isinstance(item, dict):
            logger.warning("Skipping non-object input item")
            return None

        item_type = item.get("type")

        if item_type == "function_call":
            return UnifiedMessage.assistant(
                ToolCallPart(
                    call_id=item.get("call_id", ""),
                    name=item.get("name", ""),
                    arguments_json=stringify(item.get("arguments") or "{}"),
                )
            )

        if item_type == "function_call_output":
            return UnifiedMessage.user(
                ToolResultPart(
                    call_id=item.get("call_id", ""),
                    content=stringify(item.get("output", "")),
                )
            )

        if item_type == "item_reference":
            logger.warning(
                "item_reference is not supported without server-side state, skipping"
            )
            return None

        if item_type == "message" or (
            item_type is None and "role" in item and "content" in item
        ):
            return self._map_message(item)

        logger.warning("Unknown input item type, skipping: %s", item_type)
        return None

    def _map_message(self, item: dict[str, Any]) -> UnifiedMessage:
        role = Role.ASSISTANT if item.get("role") == "assistant" else Role.USER
        content = item.get("content")
        if isinstance(content, str):
            parts: tuple[Part, ...] = (TextPart(text=content),)
        else:
            parts = tuple(self._map_content(c) for c in content or [])
        return UnifiedMessage(role, parts)

    @staticmethod
    def _map_content(content: Any) -> Part:
        if not isinstance(content, dict):
            return fallback_text(content)
        kind = content.get("type")
        if kind in ("input_text", "output_text"):
            return TextPart(text=content.get("text", ""))
        if kind == "input_image":
            data = parse_data_uri(content.get("image_url") or "")
            if data is not None:
                return data
            return fallback_text(content, "input_image")
        if kind == "refusal":
            return TextPart(text=content.get("refusal", ""))
        return fallback_text(content, kind or "content")

    def tools_to_unified(self, tools: list[Any] | None) -> list[ToolSpec]:
        specs: list[ToolSpec] = []
        for tool in tools or []:
            if isinstance(tool, dict) and tool.get("type") == "function":
                specs.append(
                    ToolSpec(
                        name=tool.get("name", ""),
                        description=tool.get("description") or "",
                        input_schema=tool.get("parameters") or {"type": "object", "properties": {}},
                    )
                )
            else:
                kind = tool.get("type") if isinstance(tool, dict) else type(tool).__name__
                logger.info("Skipping unsupported tool type: %s", kind)
        return specs

    def choice_to_unified(self, choice: Any) -> ToolChoicePolicy:
        return openai_choice_to_unified(choice)

    def build_request(self, body: dict[str, Any], model: str) -> ChatRequest:
        for param in _STATEFUL_PARAMS:
            if body.get(param):
                raise StatefulContinuationError(param)

        if not body.get("input") and not body.get("instructions"):
            raise ValidationError(
                "Either input or instructions is required",
                code="missing_required_parameter",
                param="input",
            )
        for param in ("input", "instructions"):
            value = body.get(param)
            if value is None or isinstance(value, str):
                continue
            for index, item in enumerate(require_objects(value, param)):
                if item.get("type") in (None, "message"):
                    require_content(
                        item.get("content"), f"{param}.{index}.content", optional=True
                    )

        choice = body.get("tool_choice")
        tools = self.tools_to_unified(body.get("tools")) if choice != "none" else []
        return ChatRequest(
            model=model,
            messages=tuple(self.to_unified(body)),
            tools=tuple(tools),
            tool_choice=self.choice_to_unified(choice),
            options=sampling_options(body, "max_output_tokens"),
        )

    # -----------------------------------------------------------------
    # Response mapping
    # -----------------------------------------------------------------

    def from_completion(
        self, result: CompletionResult, context: ResponseContext
    ) -> dict[str, Any]:
        usage = context.usage_for(result.usage, output_text_of(result))
        return {
            "id": generate_id(IdNamespace.RESPONSE),
            "object": "response",
            "status": "completed",
            "created_at": context.created,
            "model": context.model,
            "output": build_output(result),
            "error": None,
            "incomplete_details": None,
            "usage": _usage_body(usage),
            "metadata": context.body.get("metadata") or {},
        }

    def stream_encoder(self, context: ResponseContext) -> ResponsesStreamEncoder:
        return ResponsesStreamEncoder(context)

    def error_body(self, error: GatewayError) -> dict[str, Any]:
        return openai_error_body(error)


class ResponsesStreamEncoder:
    """Encodes grammar events as ``response.*`` server-sent events.

    Every event carries an ``event:`` line equal to its ``type`` and a
    ``sequence_number``.
    """

    def __init__(self, context: ResponseContext) -> None:
        self._context = context
        self._id = generate_id(IdNamespace.RESPONSE)
        self._sequence = 0

    def _base(self, status: str) -> dict[str, Any]:
        return {
            "id": self._id,
            "object": "response",
            "status": status,
            "created_at": self._context.created,
            "model": self._context.model,
            "output": [],
            "error": None,
            "incomplete_details": None,
            "usage": None,
            "metadata": self._context.body.get("metadata") or {},
        }

    def _event(self, event_type: str, **fields: Any) -> WireEvent:
        data = {"type": event_type, "sequence_number": self._sequence, **fields}
        self._sequence += 1
        return WireEvent(data=data, event=event_type)

    @staticmethod
    def _item_body(item: StreamItem, status: str) -> dict[str, Any]:
        if item.kind == ItemKind.MESSAGE:
            if status == "in_progress":
                return {
                    "type": "message",
                    "id": item.item_id,
                    "role": "assistant",
                    "content": [],
                    "status": status,
                }
            return message_item(item.item_id, item.content, status)
        arguments = item.content if status == "completed" else ""
        return function_call_item(item.item_id, item.call_id, item.name, arguments, status)

    def encode(self, event: SequenceEvent) -> list[WireEvent]:
        kind = event.kind
        item = event.item

        if kind == SequenceEventKind.CREATED:
            return [self._event("response.created", response=self._base("in_progress"))]

        if kind == SequenceEventKind.IN_PROGRESS:
            return [self._event("response.in_progress", response=self._base("in_progress"))]

        if kind == SequenceEventKind.COMPLETED:
            result = event.result or CompletionResult()
            usage = self._context.usage_for(event.usage, output_text_of(result))
            response = self._base("completed")
            response["output"] = [self._item_body(i, "completed") for i in event.items]
            response["usage"] = _usage_body(usage)
            return [self._event("response.completed", response=response)]

        if kind == SequenceEventKind.FAILED:
            response = self._base("failed")
            response["error"] = {"code": "server_error", "message": event.message}
            return [self._event("response.failed", response=response)]

        assert item is not None
        index = item.output_index

        if kind == SequenceEventKind.ITEM_ADDED:
            return [
                self._event(
                    "response.output_item.added",
                    output_index=index,
                    item=self._item_body(item, "in_progress"),
                )
            ]

        if kind == SequenceEventKind.CONTENT_PART_ADDED:
            return [
                self._event(
                    "response.content_part.added",
                    item_id=item.item_id,
                    output_index=index,
                    content_index=0,
                    part={"type": "output_text", "text": "", "annotations": []},
                )
            ]

        if kind == SequenceEventKind.TEXT_DELTA:
            return [
                self._event(
                    "response.output_text.delta",
                    item_id=item.item_id,
                    output_index=index,
                    content_index=0,
                    delta=event.delta,
                )
            ]

        if kind == SequenceEventKind.ARGUMENTS_DELTA:
            return [
                self._event(
                    "response.function_call_arguments.delta",
                    item_id=item.item_id,
                    output_index=index,
                    delta=event.delta,
                )
            ]

        if kind == SequenceEventKind.TEXT_DONE:
            return [
                self._event(
                    "response.output_text.done",
                    item_id=item.item_id,
                    output_index=index,
                    content_index=0,
                    text=item.content,
                )
            ]

        if kind == SequenceEventKind.CONTENT_PART_DONE:
            return [
                self._event(
                    "response.content_part.done",
                    item_id=item.item_id,
                    output_index=index,
                    content_index=0,
                    part={"type": "output_text", "text": item.content, "annotations": []},
                )
            ]

        if kind == SequenceEventKind.ARGUMENTS_DONE:
            return [
                self._event(
                    "response.function_call_arguments.done",
                    item_id=item.item_id,
                    output_index=index,
                    arguments=item.content,
                )
            ]

        if kind == SequenceEventKind.ITEM_DONE:
            return [
                self._event(
                    "response.output_item.done",
                    output_index=index,
                    item=self._item_body(item, "completed"),
                )
            ]

        return []
