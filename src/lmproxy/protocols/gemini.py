"""Google Gemini ``generateContent`` wire format.

The model and the method come from the URL (``models/{model}:{method}``),
so ``build_request`` takes the model from the caller. Both the camelCase
field names of the REST API and the snake_case names some SDKs send are
accepted.
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
    ToolCallResult,
    ToolChoicePolicy,
    ToolResultPart,
    ToolSpec,
    UnifiedMessage,
)
from lmproxy.protocols.base import ApiFormat, ResponseContext, output_text_of
from lmproxy.protocols.content import (
    decode_base64,
    fallback_text,
    require_objects,
    stringify,
    to_json_text,
)
from lmproxy.streaming import ItemKind, SequenceEvent, SequenceEventKind, WireEvent

logger = logging.getLogger(__name__)

# Fields holding user data rather than nested schemas.
_NON_SCHEMA_FIELDS = frozenset({"default", "example", "const", "enum"})
MAX_SCHEMA_DEPTH = 100

_STATUS_NAMES = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
}


def _get(obj: dict[str, Any], camel: str, snake: str) -> Any:
    value = obj.get(camel)
    return value if value is not None else obj.get(snake)


def normalize_schema_types(schema: Any, depth: int = 0) -> Any:
    """Lower-case protobuf-style ``type`` values (``OBJECT`` -> ``object``).

    ``TYPE_UNSPECIFIED`` is dropped. Values under ``default``, ``example``,
    ``const`` and ``enum`` are left untouched. Recursion stops at
    ``MAX_SCHEMA_DEPTH``.
    """
    if not isinstance(schema, (dict, list)):
        return schema
    if depth >= MAX_SCHEMA_DEPTH:
        logger.warning(
            "Schema normalization reached max depth (%d), returning value as-is",
            MAX_SCHEMA_DEPTH,
        )
        return schema
    if isinstance(schema, list):
        return [normalize_schema_types(item, depth + 1) for item in schema]

    normalized: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            if value.upper() == "TYPE_UNSPECIFIED":
                continue
            normalized[key] = value.lower()
        elif key in _NON_SCHEMA_FIELDS:
            normalized[key] = value
        else:
            normalized[key] = normalize_schema_types(value, depth + 1)
    return normalized


class GeminiAdapter:
    """Adapter for the Gemini ``generateContent`` API."""

    api_format = ApiFormat.GEMINI

    # -----------------------------------------------------------------
    # Request mapping
    # -----------------------------------------------------------------

    def to_unified(self, body: dict[str, Any]) -> list[UnifiedMessage]:
        pending: dict[str, list[str]] = {}
        messages: list[UnifiedMessage] = []

        instruction = _get(body, "systemInstruction", "system_instruction")
        if isinstance(instruction, str):
            messages.append(UnifiedMessage.user(instruction))
        elif isinstance(instruction, dict):
            parts = [
                p
                for p in self._map_parts(instruction.get("parts") or [], pending)
                if not isinstance(p, ToolCallPart)
            ]
            if parts:
                messages.append(UnifiedMessage(Role.USER, tuple(parts)))

        for content in body.get("contents") or []:
            messages.append(self._map_content(content, pending))
        return messages

    def _map_content(
        self, content: dict[str, Any], pending: dict[str, list[str]]
    ) -> UnifiedMessage:
        parts = self._map_parts(content.get("parts") or [], pending)
        if content.get("role") == "model":
            role = Role.ASSISTANT
            kept = [p for p in parts if not isinstance(p, ToolResultPart)]
        else:
            role = Role.USER
            kept = [p for p in parts if not isinstance(p, ToolCallPart)]
        return UnifiedMessage(role, tuple(kept) or (TextPart(text=""),))

    def _map_parts(
        self, parts: list[Any], pending: dict[str, list[str]]
    ) -> list[Part]:
        return [self._map_part(part, pending) for part in parts]

    @staticmethod
    def _map_part(part: Any, pending: dict[str, list[str]]) -> Part:
        if not isinstance(part, dict):
            return fallback_text(part)

        if part.get("text") is not None:
            return TextPart(text=part["text"])

        call = _get(part, "functionCall", "function_call")
        if isinstance(call, dict) and call.get("name"):
            call_id = call.get("id") or generate_id(IdNamespace.CALL)
            pending.setdefault(call["name"], []).append(call_id)
            return ToolCallPart(
                call_id=call_id,
                name=call["name"],
                arguments_json=stringify(call.get("args") or {}),
            )

        response = _get(part, "functionResponse", "function_response")
        if isinstance(response, dict):
            name = response.get("name", "")
            queue = pending.get(name) or []
            call_id = response.get("id")
            if call_id:
                if call_id in queue:
                    queue.remove(call_id)
            elif queue:
                call_id = queue.pop(0)
            else:
                call_id = generate_id(IdNamespace.CALL)
            payload = response.get("response")
            return ToolResultPart(
                call_id=call_id,
                content=to_json_text(payload) if payload else "",
            )

        inline = _get(part, "inlineData", "inline_data")
        if isinstance(inline, dict):
            mime = _get(inline, "mimeType", "mime_type") or "application/octet-stream"
            data = decode_base64(mime, inline.get("data") or "")
            if data is not None:
                return data
            return fallback_text(inline, "inlineData")

        return fallback_text(part, "part")

    def tools_to_unified(self, tools: list[Any] | None) -> list[ToolSpec]:
        specs: list[ToolSpec] = []
        for tool in tools or []:
            if not isinstance(tool, dict):
                logger.info("Skipping unsupported tool: %s", type(tool).__name__)
                continue
            for key in tool:
                if key not in ("functionDeclarations", "function_declarations"):
                    logger.info("Skipping unsupported tool type: %s", key)
            for decl in _get(tool, "functionDeclarations", "function_declarations") or []:
                name = decl.get("name")
                if not name:
                    continue
                raw = (
                    decl.get("parameters")
                    or _get(decl, "parametersJsonSchema", "parameters_json_schema")
                    or {}
                )
                schema = normalize_schema_types(raw)
                if not isinstance(schema, dict) or not schema.get("type"):
                    logger.warning(
                        "Skipping Gemini tool '%s': schema structure not supported", name
                    )
                    continue
                specs.append(
                    ToolSpec(
                        name=name,
                        description=decl.get("description") or "",
                        input_schema=schema,
                    )
                )
        return specs

    def choice_to_unified(self, choice: Any) -> ToolChoicePolicy:
        """Map ``toolConfig`` onto a policy."""
        if not isinstance(choice, dict):
            return ToolChoicePolicy.NONE
        config = _get(choice, "functionCallingConfig", "function_calling_config") or {}
        mode = str(config.get("mode") or "").upper()
        if mode in ("AUTO", "VALIDATED"):
            return ToolChoicePolicy.AUTO
        if mode == "ANY":
            return ToolChoicePolicy.REQUIRED
        return ToolChoicePolicy.NONE

    def build_request(self, body: dict[str, Any], model: str) -> ChatRequest:
        for index, content in enumerate(require_objects(body.get("contents"), "contents")):
            require_objects(content.get("parts"), f"contents.{index}.parts", optional=True)
        instruction = _get(body, "systemInstruction", "system_instruction")
        if instruction is not None and not isinstance(instruction, (str, dict)):
            raise ValidationError(
                "systemInstruction: Expected string or object",
                code="invalid_type",
                param="systemInstruction",
            )
        for index, tool in enumerate(require_objects(body.get("tools"), "tools", optional=True)):
            require_objects(
                _get(tool, "functionDeclarations", "function_declarations"),
                f"tools.{index}.functionDeclarations",
                optional=True,
            )

        tool_config = _get(body, "toolConfig", "tool_config")
        choice = self.choice_to_unified(tool_config)
        mode = ""
        if isinstance(tool_config, dict):
            config = _get(tool_config, "functionCallingConfig", "function_calling_config") or {}
            mode = str(config.get("mode") or "").upper()
        tools = [] if mode == "NONE" else self.tools_to_unified(body.get("tools"))

        generation = _get(body, "generationConfig", "generation_config") or {}
        options: dict[str, Any] = {}
        for wire, camel_alt, ours in (
            ("maxOutputTokens", "max_output_tokens", "max_tokens"),
            ("temperature", "temperature", "temperature"),
            ("topP", "top_p", "top_p"),
            ("stopSequences", "stop_sequences", "stop"),
        ):
            value = _get(generation, wire, camel_alt)
            if value is not None:
                options[ours] = value

        return ChatRequest(
            model=model,
            messages=tuple(self.to_unified(body)),
            tools=tuple(tools),
            tool_choice=choice,
            options=options,
        )

    # -----------------------------------------------------------------
    # Response mapping
    # -----------------------------------------------------------------

    @staticmethod
    def _usage_metadata(input_tokens: int, output_tokens: int) -> dict[str, int]:
        return {
            "promptTokenCount": input_tokens,
            "candidatesTokenCount": output_tokens,
            "totalTokenCount": input_tokens + output_tokens,
        }

    def from_completion(
        self, result: CompletionResult, context: ResponseContext
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if result.text:
            parts.append({"text": result.text})
        for tc in result.tool_calls:
            parts.append(
                {
                    "functionCall": {
                        "id": tc.call_id or generate_id(IdNamespace.CALL),
                        "name": tc.name,
                        "args": tc.input_object(),
                    }
                }
            )
        usage = context.usage_for(result.usage, output_text_of(result))
        return {
            "candidates": [
                {
                    "content": {"parts": parts, "role": "model"},
                    "finishReason": "STOP",
                    "index": 0,
                }
            ],
            "usageMetadata": self._usage_metadata(usage.input_tokens, usage.output_tokens),
            "modelVersion": context.model,
        }

    def stream_encoder(self, context: ResponseContext) -> GeminiStreamEncoder:
        return GeminiStreamEncoder(context)

    def error_body(self, error: GatewayError) -> dict[str, Any]:
        return {
            "error": {
                "code": error.status_code,
                "message": error.message,
                "status": _STATUS_NAMES.get(error.status_code, "INTERNAL"),
            }
        }


class GeminiStreamEncoder:
    """Encodes grammar events as ``GenerateContentResponse`` chunks.

    Text is forwarded as it arrives. A function call is sent as one part
    once its arguments are complete, since Gemini has no partial-argument
    form.
    """

    def __init__(self, context: ResponseContext) -> None:
        self._context = context

    def _chunk(self, parts: list[dict[str, Any]]) -> WireEvent:
        return WireEvent(
            data={
                "candidates": [
                    {"content": {"parts": parts, "role": "model"}, "index": 0}
                ],
                "modelVersion": self._context.model,
            }
        )

    def encode(self, event: SequenceEvent) -> list[WireEvent]:
        kind = event.kind
        item = event.item

        if kind == SequenceEventKind.TEXT_DELTA:
            return [self._chunk([{"text": event.delta}])]

        if (
            kind == SequenceEventKind.ARGUMENTS_DONE
            and item is not None
            and item.kind == ItemKind.FUNCTION_CALL
        ):
            args = ToolCallResult(item.call_id, item.name, item.content or None).input_object()
            return [
                self._chunk(
                    [{"functionCall": {"id": item.call_id, "name": item.name, "args": args}}]
                )
            ]

        if kind == SequenceEventKind.COMPLETED:
            result = event.result or CompletionResult()
            usage = self._context.usage_for(event.usage, output_text_of(result))
            return [
                WireEvent(
                    data={
                        "candidates": [{"finishReason": "STOP", "index": 0}],
                        "usageMetadata": GeminiAdapter._usage_metadata(
                            usage.input_tokens, usage.output_tokens
                        ),
                        "modelVersion": self._context.model,
                    }
                )
            ]

        if kind == SequenceEventKind.FAILED:
            return [
                WireEvent(
                    data={
                        "candidates": [
                            {
                                "content": {
                                    "parts": [{"text": event.message}],
                                    "role": "model",
                                },
                                "finishReason": "OTHER",
                                "index": 0,
                            }
                        ],
                        "usageMetadata": GeminiAdapter._usage_metadata(
                            self._context.input_tokens, 0
                        ),
                        "modelVersion": self._context.model,
                    }
                )
            ]

        return []
