"""Core data models for the protocol gateway.

Defines the protocol-agnostic conversation format every wire adapter
converts to and from: messages with ordered parts, tool declarations,
the tool-choice policy, the backend's completion result and the
fragments of a streamed completion.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, enum.Enum):
    """The only two roles the backend understands.

    System, developer and tool roles of the wire protocols collapse onto
    these in the input adapters.
    """

    USER = "user"
    ASSISTANT = "assistant"


class PartKind(str, enum.Enum):
    """Discriminator for the Part tagged union."""

    TEXT = "text"
    DATA = "data"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class ToolChoicePolicy(str, enum.Enum):
    """Whether the backend may, must, or is not asked to call a tool.

    ``REQUIRED`` also stands in for "force this named function"; the
    backend has no per-tool forcing switch.
    """

    NONE = "none"
    AUTO = "auto"
    REQUIRED = "required"


# ---------------------------------------------------------------------------
# Parts (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextPart:
    """Plain text."""

    kind: PartKind = field(default=PartKind.TEXT, init=False)
    text: str = ""


@dataclass(frozen=True)
class DataPart:
    """Inline binary content such as a base64-decoded image."""

    kind: PartKind = field(default=PartKind.DATA, init=False)
    mime_type: str = "application/octet-stream"
    data: bytes = b""


@dataclass(frozen=True)
class ToolCallPart:
    """A tool invocation made by the assistant.

    ``arguments_json`` is kept exactly as the client sent it and may not
    be valid JSON.
    """

    kind: PartKind = field(default=PartKind.TOOL_CALL, init=False)
    call_id: str = ""
    name: str = ""
    arguments_json: str = "{}"

    def parsed_arguments(self) -> Any:
        """Return the decoded arguments, or the raw string if undecodable."""
        try:
            return json.loads(self.arguments_json) if self.arguments_json else {}
        except json.JSONDecodeError:
            return self.arguments_json


@dataclass(frozen=True)
class ToolResultPart:
    """The output of a tool call, as text or serialized JSON."""

    kind: PartKind = field(default=PartKind.TOOL_RESULT, init=False)
    call_id: str = ""
    content: str = ""


Part = TextPart | DataPart | ToolCallPart | ToolResultPart


# ---------------------------------------------------------------------------
# Messages and tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnifiedMessage:
    """A single conversation turn."""

    role: Role
    parts: tuple[Part, ...] = ()

    @staticmethod
    def user(*parts: Part | str) -> UnifiedMessage:
        return UnifiedMessage(Role.USER, _coerce_parts(parts))

    @staticmethod
    def assistant(*parts: Part | str) -> UnifiedMessage:
        return UnifiedMessage(Role.ASSISTANT, _coerce_parts(parts))

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


def _coerce_parts(parts: tuple[Part | str, ...]) -> tuple[Part, ...]:
    return tuple(TextPart(text=p) if isinstance(p, str) else p for p in parts)


@dataclass(frozen=True)
class ToolSpec:
    """A function the model may call."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


# ---------------------------------------------------------------------------
# Backend call contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatRequest:
    """Everything the backend needs for one completion.

    Attributes:
        model: Resolved model identifier.
        messages: Conversation in turn order.
        tools: Callable functions, already filtered to supported kinds.
        tool_choice: Tool forcing policy.
        options: Sampling options (``max_tokens``, ``temperature``,
            ``top_p``, ``stop``) copied from the wire request.
    """

    model: str
    messages: tuple[UnifiedMessage, ...]
    tools: tuple[ToolSpec, ...] = ()
    tool_choice: ToolChoicePolicy = ToolChoicePolicy.NONE
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    """A tool call produced by the backend."""

    call_id: str
    name: str
    input: Any = None

    def arguments_json(self) -> str:
        """Serialize ``input`` as a JSON object string.

        ``None`` serializes as ``"{}"``. A string input is assumed to be
        already-encoded arguments and passes through untouched.
        """
        if self.input is None:
            return "{}"
        if isinstance(self.input, str):
            return self.input
        return json.dumps(self.input)

    def input_object(self) -> Any:
        """Return ``input`` as a decoded value, ``{}`` when absent."""
        if self.input is None:
            return {}
        if isinstance(self.input, str):
            try:
                return json.loads(self.input)
            except json.JSONDecodeError:
                return {}
        return self.input


@dataclass(frozen=True)
class Usage:
    """Token accounting reported alongside a completion."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Rough token count for backends that report none (four chars per token)."""
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


@dataclass(frozen=True)
class CompletionResult:
    """The backend's answer: generated text and/or tool calls."""

    text: str = ""
    tool_calls: tuple[ToolCallResult, ...] = ()
    usage: Usage = field(default_factory=Usage)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.tool_calls


# ---------------------------------------------------------------------------
# Stream fragments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    """A chunk of generated text."""

    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """A chunk of a tool call's JSON arguments.

    The first delta for a ``call_id`` opens the call; later deltas with the
    same ``call_id`` append to its arguments.
    """

    call_id: str
    name: str
    arguments_delta: str = ""


@dataclass(frozen=True)
class End:
    """Successful end of the stream."""

    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class Failed:
    """The stream ended with an error."""

    message: str


StreamFragment = TextDelta | ToolCallDelta | End | Failed
