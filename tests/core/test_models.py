"""Tests for lmproxy.core.models: unified messages, tool calls and usage."""

from __future__ import annotations

from lmproxy.core.models import (
    CompletionResult,
    DataPart,
    PartKind,
    Role,
    TextPart,
    ToolCallPart,
    ToolCallResult,
    ToolResultPart,
    Usage,
    UnifiedMessage,
    estimate_tokens,
)


class TestParts:
    def test_kind_discriminators(self) -> None:
        assert TextPart("hi").kind == PartKind.TEXT
        assert DataPart("image/png", b"\x89").kind == PartKind.DATA
        assert ToolCallPart("c1", "f").kind == PartKind.TOOL_CALL
        assert ToolResultPart("c1", "ok").kind == PartKind.TOOL_RESULT

    def test_parsed_arguments_object(self) -> None:
        part = ToolCallPart("c1", "get_weather", '{"city": "Paris"}')
        assert part.parsed_arguments() == {"city": "Paris"}

    def test_parsed_arguments_keeps_malformed_string(self) -> None:
        part = ToolCallPart("c1", "f", "{not json")
        assert part.parsed_arguments() == "{not json"

    def test_parsed_arguments_empty(self) -> None:
        assert ToolCallPart("c1", "f", "").parsed_arguments() == {}


class TestUnifiedMessage:
    def test_user_coerces_strings(self) -> None:
        msg = UnifiedMessage.user("a", TextPart("b"))
        assert msg.role == Role.USER
        assert msg.parts == (TextPart("a"), TextPart("b"))
        assert msg.text == "ab"

    def test_assistant_accessors(self) -> None:
        call = ToolCallPart("c1", "f", "{}")
        msg = UnifiedMessage.assistant("thinking", call)
        assert msg.role == Role.ASSISTANT
        assert msg.tool_calls == [call]
        assert msg.tool_results == []

    def test_tool_results(self) -> None:
        result = ToolResultPart("c1", "42")
        msg = UnifiedMessage.user(result)
        assert msg.tool_results == [result]
        assert msg.text == ""


class TestToolCallResult:
    def test_none_input_serializes_empty_object(self) -> None:
        assert ToolCallResult("c1", "f").arguments_json() == "{}"
        assert ToolCallResult("c1", "f").input_object() == {}

    def test_string_input_passes_through(self) -> None:
        call = ToolCallResult("c1", "f", '{"a": 1}')
        assert call.arguments_json() == '{"a": 1}'
        assert call.input_object() == {"a": 1}

    def test_object_input(self) -> None:
        call = ToolCallResult("c1", "f", {"a": [1, 2]})
        assert call.arguments_json() == '{"a": [1, 2]}'
        assert call.input_object() == {"a": [1, 2]}

    def test_malformed_string_input_object(self) -> None:
        assert ToolCallResult("c1", "f", "oops").input_object() == {}


class TestUsageAndResult:
    def test_total_tokens(self) -> None:
        assert Usage(3, 4).total_tokens == 7

    def test_empty_completion(self) -> None:
        assert CompletionResult().is_empty
        assert not CompletionResult(text="x").is_empty
        assert not CompletionResult(tool_calls=(ToolCallResult("c", "f"),)).is_empty

    def test_estimate_tokens(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
