"""Tests for the OpenAI Responses adapter and stream encoder."""

from __future__ import annotations

import logging

import pytest

from conftest import has_namespace
from lmproxy.core.errors import StatefulContinuationError, ValidationError
from lmproxy.core.ids import IdNamespace
from lmproxy.core.models import (
    CompletionResult,
    End,
    Failed,
    Role,
    TextDelta,
    TextPart,
    ToolCallDelta,
    ToolCallPart,
    ToolCallResult,
    ToolChoicePolicy,
    ToolResultPart,
    Usage,
)
from lmproxy.protocols.base import ResponseContext
from lmproxy.protocols.openai_responses import OpenAIResponsesAdapter
from lmproxy.streaming import advance, begin

FUNCTION_TOOL = {
    "type": "function",
    "name": "get_weather",
    "description": "Look up weather",
    "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
}


@pytest.fixture()
def adapter() -> OpenAIResponsesAdapter:
    return OpenAIResponsesAdapter()


def _encode(adapter: OpenAIResponsesAdapter, fragments: list, **context) -> list:
    encoder = adapter.stream_encoder(ResponseContext(model="gpt-4o", **context))
    state, events = begin()
    for fragment in fragments:
        state, more = advance(state, fragment)
        events.extend(more)
    wire = []
    for event in events:
        wire.extend(encoder.encode(event))
    return wire


class TestToUnified:
    def test_string_instructions_and_input(self, adapter: OpenAIResponsesAdapter) -> None:
        messages = adapter.to_unified({"instructions": "be brief", "input": "hi"})
        assert [m.role for m in messages] == [Role.USER, Role.USER]
        assert [m.text for m in messages] == ["be brief", "hi"]

    def test_item_list(self, adapter: OpenAIResponsesAdapter) -> None:
        messages = adapter.to_unified(
            {
                "input": [
                    {"role": "user", "content": [{"type": "input_text", "text": "weather?"}]},
                    {
                        "type": "function_call",
                        "call_id": "call_1",
                        "name": "get_weather",
                        "arguments": '{"city":"Paris"}',
                    },
                    {"type": "function_call_output", "call_id": "call_1", "output": {"temp": 20}},
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": "It is 20C."}],
                    },
                ]
            }
        )
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        assert messages[1].parts == (ToolCallPart("call_1", "get_weather", '{"city":"Paris"}'),)
        assert messages[2].parts == (ToolResultPart("call_1", '{"temp":20}'),)
        assert messages[3].text == "It is 20C."

    def test_system_and_developer_become_user(self, adapter: OpenAIResponsesAdapter) -> None:
        messages = adapter.to_unified(
            {"input": [{"role": "system", "content": "s"}, {"role": "developer", "content": "d"}]}
        )
        assert [m.role for m in messages] == [Role.USER, Role.USER]

    def test_item_reference_dropped(
        self, adapter: OpenAIResponsesAdapter, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING):
            messages = adapter.to_unified(
                {"input": [{"type": "item_reference", "id": "msg_1"}, {"role": "user", "content": "x"}]}
            )
        assert len(messages) == 1
        assert "item_reference" in caplog.text

    def test_unsupported_content_degrades(self, adapter: OpenAIResponsesAdapter) -> None:
        [msg] = adapter.to_unified(
            {"input": [{"role": "user", "content": [{"type": "input_file", "file_id": "f1"}]}]}
        )
        assert msg.parts == (TextPart('{"type":"input_file","file_id":"f1"}'),)

    def test_message_item_without_role_is_user(self, adapter: OpenAIResponsesAdapter) -> None:
        [msg] = adapter.to_unified(
            {"input": [{"type": "message", "content": [{"type": "input_text", "text": "hi"}]}]}
        )
        assert msg.role == Role.USER
        assert msg.text == "hi"


class TestBuildRequest:
    @pytest.mark.parametrize("param", ["previous_response_id", "conversation"])
    def test_stateful_continuation_rejected(
        self, adapter: OpenAIResponsesAdapter, param: str
    ) -> None:
        with pytest.raises(StatefulContinuationError) as exc_info:
            adapter.build_request({"input": "hi", param: "resp_123"}, "m")
        body = adapter.error_body(exc_info.value)
        assert body == {
            "error": {
                "message": (
                    f"{param} is not supported. This server is stateless. "
                    "Please send full conversation history in the input array."
                ),
                "type": "invalid_request_error",
                "param": param,
                "code": "unsupported_parameter",
            }
        }

    def test_missing_input(self, adapter: OpenAIResponsesAdapter) -> None:
        with pytest.raises(ValidationError):
            adapter.build_request({"model": "m"}, "m")

    @pytest.mark.parametrize(
        ("body", "param"),
        [
            ({"input": ["hi"]}, "input.0"),
            ({"input": {"role": "user"}}, "input"),
            ({"input": [{"role": "user", "content": 3}]}, "input.0.content"),
            ({"input": "hi", "instructions": [None]}, "instructions.0"),
        ],
    )
    def test_malformed_input(self, adapter: OpenAIResponsesAdapter, body, param) -> None:
        with pytest.raises(ValidationError) as exc_info:
            adapter.build_request(body, "m")
        assert exc_info.value.param == param

    def test_tools_and_options(self, adapter: OpenAIResponsesAdapter) -> None:
        request = adapter.build_request(
            {
                "input": "hi",
                "tools": [FUNCTION_TOOL, {"type": "file_search"}, {"type": "web_search_preview"}],
                "tool_choice": "required",
                "max_output_tokens": 64,
            },
            "m",
        )
        assert [t.name for t in request.tools] == ["get_weather"]
        assert request.tool_choice == ToolChoicePolicy.REQUIRED
        assert request.options == {"max_tokens": 64}

    def test_absent_choice_is_no_forcing(self, adapter: OpenAIResponsesAdapter) -> None:
        request = adapter.build_request({"input": "hi", "tools": [FUNCTION_TOOL]}, "m")
        assert request.tool_choice == ToolChoicePolicy.NONE
        assert len(request.tools) == 1


class TestFromCompletion:
    def test_text_and_call(self, adapter: OpenAIResponsesAdapter) -> None:
        body = adapter.from_completion(
            CompletionResult(
                text="Checking.",
                tool_calls=(ToolCallResult("", "get_weather", {"city": "Paris"}),),
                usage=Usage(10, 4),
            ),
            ResponseContext(model="gpt-4o", body={"metadata": {"k": "v"}}),
        )
        assert has_namespace(body["id"], IdNamespace.RESPONSE)
        assert body["object"] == "response"
        assert body["status"] == "completed"
        assert body["metadata"] == {"k": "v"}
        message, call = body["output"]
        assert message["type"] == "message"
        assert has_namespace(message["id"], IdNamespace.MESSAGE)
        assert message["content"][0] == {"type": "output_text", "text": "Checking.", "annotations": []}
        assert call["type"] == "function_call"
        assert has_namespace(call["id"], IdNamespace.FUNCTION_CALL)
        assert has_namespace(call["call_id"], IdNamespace.CALL)
        assert call["arguments"] == '{"city": "Paris"}'
        assert body["usage"]["input_tokens"] == 10
        assert body["usage"]["output_tokens"] == 4
        assert body["usage"]["total_tokens"] == 14

    def test_empty_completion(self, adapter: OpenAIResponsesAdapter) -> None:
        body = adapter.from_completion(CompletionResult(), ResponseContext(model="m"))
        assert body["output"] == []
        assert body["status"] == "completed"

    def test_null_input_becomes_empty_object(self, adapter: OpenAIResponsesAdapter) -> None:
        body = adapter.from_completion(
            CompletionResult(tool_calls=(ToolCallResult("call_1", "f", None),)),
            ResponseContext(model="m"),
        )
        [call] = body["output"]
        assert call["type"] == "function_call"
        assert call["call_id"] == "call_1"
        assert call["arguments"] == "{}"


class TestStreamEncoder:
    def test_text_stream_event_order(self, adapter: OpenAIResponsesAdapter) -> None:
        wire = _encode(adapter, [TextDelta("Hi"), TextDelta("!"), End(Usage(3, 1))])
        assert [w.event for w in wire] == [
            "response.created",
            "response.in_progress",
            "response.output_item.added",
            "response.content_part.added",
            "response.output_text.delta",
            "response.output_text.delta",
            "response.output_text.done",
            "response.content_part.done",
            "response.output_item.done",
            "response.completed",
        ]
        assert [w.data["sequence_number"] for w in wire] == list(range(len(wire)))
        assert all(w.data["type"] == w.event for w in wire)
        assert wire[6].data["text"] == "Hi!"
        completed = wire[-1].data["response"]
        assert completed["status"] == "completed"
        assert completed["output"][0]["content"][0]["text"] == "Hi!"
        assert completed["usage"]["output_tokens"] == 1
        assert wire[0].data["response"]["id"] == completed["id"]

    def test_function_call_stream(self, adapter: OpenAIResponsesAdapter) -> None:
        wire = _encode(
            adapter,
            [ToolCallDelta("call_9", "get_weather", '{"city":'), ToolCallDelta("call_9", "get_weather", '"Oslo"}'), End()],
        )
        events = [w.event for w in wire]
        assert events.count("response.function_call_arguments.delta") == 2
        added = wire[events.index("response.output_item.added")].data["item"]
        assert added["type"] == "function_call"
        assert added["call_id"] == "call_9"
        assert added["status"] == "in_progress"
        done = wire[events.index("response.function_call_arguments.done")].data
        assert done["arguments"] == '{"city":"Oslo"}'
        item_done = wire[events.index("response.output_item.done")].data["item"]
        assert item_done["arguments"] == '{"city":"Oslo"}'
        assert item_done["status"] == "completed"

    def test_failure_only(self, adapter: OpenAIResponsesAdapter) -> None:
        wire = _encode(adapter, [Failed("backend down")])
        assert [w.event for w in wire] == [
            "response.created",
            "response.in_progress",
            "response.failed",
        ]
        response = wire[-1].data["response"]
        assert response["status"] == "failed"
        assert response["error"] == {"code": "server_error", "message": "backend down"}

    def test_sse_framing(self, adapter: OpenAIResponsesAdapter) -> None:
        wire = _encode(adapter, [End()])
        assert wire[0].to_sse().startswith("event: response.created\ndata: {")
        assert wire[0].to_sse().endswith("\n\n")
