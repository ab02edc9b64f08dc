"""Tests for the Anthropic Messages adapter and stream encoder."""

from __future__ import annotations

import base64
import logging

import pytest

from conftest import has_namespace
from lmproxy.core.errors import NotFoundError, ValidationError
from lmproxy.core.ids import IdNamespace
from lmproxy.core.models import (
    CompletionResult,
    DataPart,
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
from lmproxy.protocols.anthropic import AnthropicAdapter
from lmproxy.protocols.base import ResponseContext
from lmproxy.streaming import advance, begin

WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Look up weather",
    "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
}


@pytest.fixture()
def adapter() -> AnthropicAdapter:
    return AnthropicAdapter()


def _encode(adapter: AnthropicAdapter, fragments: list) -> list:
    encoder = adapter.stream_encoder(ResponseContext(model="claude-sonnet-4", input_tokens=7))
    state, events = begin()
    for fragment in fragments:
        state, more = advance(state, fragment)
        events.extend(more)
    wire = []
    for event in events:
        wire.extend(encoder.encode(event))
    return wire


class TestToUnified:
    def test_system_prompt_leads(self, adapter: AnthropicAdapter) -> None:
        messages = adapter.to_unified(
            {
                "system": [{"type": "text", "text": "be brief"}],
                "messages": [{"role": "user", "content": "hi"}],
            }
        )
        assert [m.text for m in messages] == ["be brief", "hi"]
        assert all(m.role == Role.USER for m in messages)

    def test_tool_round_trip_blocks(self, adapter: AnthropicAdapter) -> None:
        messages = adapter.to_unified(
            {
                "messages": [
                    {"role": "user", "content": "weather?"},
                    {
                        "role": "assistant",
                        "content": [
                            {"type": "text", "text": "Checking."},
                            {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
                        ],
                    },
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": "toolu_1",
                                "content": [{"type": "text", "text": "sunny"}],
                            }
                        ],
                    },
                ]
            }
        )
        assert messages[1].parts == (
            TextPart("Checking."),
            ToolCallPart("toolu_1", "get_weather", '{"city":"Paris"}'),
        )
        assert messages[2].parts == (ToolResultPart("toolu_1", "sunny"),)

    def test_base64_image(self, adapter: AnthropicAdapter) -> None:
        data = base64.b64encode(b"img").decode()
        [msg] = adapter.to_unified(
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [{"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": data}}],
                    }
                ]
            }
        )
        assert msg.parts == (DataPart("image/png", b"img"),)

    def test_url_image_and_document_degrade(
        self, adapter: AnthropicAdapter, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING):
            [msg] = adapter.to_unified(
                {
                    "messages": [
                        {
                            "role": "user",
                            "content": [
                                {"type": "image", "source": {"type": "url", "url": "https://x/y.png"}},
                                {"type": "document", "source": {"type": "text", "data": "doc"}},
                            ],
                        }
                    ]
                }
            )
        assert all(isinstance(p, TextPart) for p in msg.parts)
        assert msg.parts[1].text.startswith('{"type":"document"')

    def test_thinking_and_search_result(self, adapter: AnthropicAdapter) -> None:
        [msg] = adapter.to_unified(
            {
                "messages": [
                    {
                        "role": "assistant",
                        "content": [
                            {"type": "thinking", "thinking": "hmm", "signature": "sig"},
                            {
                                "type": "search_result",
                                "title": "Docs",
                                "source": "https://docs",
                                "content": [{"type": "text", "text": "body"}],
                            },
                        ],
                    }
                ]
            }
        )
        assert msg.parts[0] == TextPart("hmm")
        assert msg.parts[1] == TextPart("[Search Result: Docs]\nSource: https://docs\n\nbody")

    def test_empty_content_list(self, adapter: AnthropicAdapter) -> None:
        [msg] = adapter.to_unified({"messages": [{"role": "user", "content": []}]})
        assert msg.parts == (TextPart(""),)


class TestTools:
    def test_server_tools_skipped(
        self, adapter: AnthropicAdapter, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO):
            specs = adapter.tools_to_unified(
                [
                    WEATHER_TOOL,
                    {"type": "custom", **WEATHER_TOOL, "name": "other"},
                    {"type": "bash_20250124", "name": "bash"},
                    {"type": "web_search_20250305", "name": "web_search"},
                ]
            )
        assert [s.name for s in specs] == ["get_weather", "other"]
        assert "Skipping unsupported tool type: bash_20250124" in caplog.text

    @pytest.mark.parametrize(
        ("choice", "policy"),
        [
            (None, ToolChoicePolicy.NONE),
            ({"type": "auto"}, ToolChoicePolicy.AUTO),
            ({"type": "any"}, ToolChoicePolicy.REQUIRED),
            ({"type": "tool", "name": "get_weather"}, ToolChoicePolicy.REQUIRED),
            ({"type": "none"}, ToolChoicePolicy.NONE),
        ],
    )
    def test_choice_mapping(self, adapter: AnthropicAdapter, choice, policy) -> None:
        assert adapter.choice_to_unified(choice) == policy


class TestBuildRequest:
    def test_options(self, adapter: AnthropicAdapter) -> None:
        request = adapter.build_request(
            {
                "model": "claude-sonnet-4",
                "max_tokens": 256,
                "stop_sequences": ["END"],
                "messages": [{"role": "user", "content": "hi"}],
                "tools": [WEATHER_TOOL],
            },
            "backend-model",
        )
        assert request.model == "backend-model"
        assert request.options == {"max_tokens": 256, "stop": ["END"]}
        assert len(request.tools) == 1

    def test_explicit_none_strips_tools(self, adapter: AnthropicAdapter) -> None:
        request = adapter.build_request(
            {"messages": [{"role": "user", "content": "hi"}], "tools": [WEATHER_TOOL], "tool_choice": {"type": "none"}},
            "m",
        )
        assert request.tools == ()

    def test_missing_messages(self, adapter: AnthropicAdapter) -> None:
        with pytest.raises(ValidationError):
            adapter.build_request({"max_tokens": 10}, "m")

    @pytest.mark.parametrize(
        ("body", "param"),
        [
            ({"messages": [["x"]]}, "messages.0"),
            ({"messages": [{"role": "user"}]}, "messages.0.content"),
            ({"messages": [{"role": "user", "content": [1]}]}, "messages.0.content.0"),
            ({"messages": [], "system": 5}, "system"),
            ({"messages": [], "tools": {"name": "f"}}, "tools"),
        ],
    )
    def test_malformed_body(self, adapter: AnthropicAdapter, body, param) -> None:
        with pytest.raises(ValidationError) as exc_info:
            adapter.build_request(body, "m")
        assert exc_info.value.param == param


class TestFromCompletion:
    def test_text_and_tool_use(self, adapter: AnthropicAdapter) -> None:
        body = adapter.from_completion(
            CompletionResult(
                text="Checking.",
                tool_calls=(ToolCallResult("", "get_weather", '{"city":"Paris"}'),),
                usage=Usage(12, 5),
            ),
            ResponseContext(model="claude-sonnet-4"),
        )
        assert has_namespace(body["id"], IdNamespace.MESSAGE)
        assert body["type"] == "message"
        assert body["role"] == "assistant"
        assert body["model"] == "claude-sonnet-4"
        text, tool = body["content"]
        assert text == {"type": "text", "text": "Checking.", "citations": None}
        assert tool["type"] == "tool_use"
        assert has_namespace(tool["id"], IdNamespace.TOOL_USE)
        assert tool["input"] == {"city": "Paris"}
        assert body["stop_reason"] == "tool_use"
        assert body["usage"]["input_tokens"] == 12
        assert body["usage"]["output_tokens"] == 5

    def test_empty_completion(self, adapter: AnthropicAdapter) -> None:
        body = adapter.from_completion(CompletionResult(), ResponseContext(model="m"))
        assert body["content"] == []
        assert body["stop_reason"] == "end_turn"

    def test_error_body(self, adapter: AnthropicAdapter) -> None:
        assert adapter.error_body(NotFoundError("no such model")) == {
            "type": "error",
            "error": {"type": "not_found_error", "message": "no such model"},
        }


class TestStreamEncoder:
    def test_text_stream(self, adapter: AnthropicAdapter) -> None:
        wire = _encode(adapter, [TextDelta("Hel"), TextDelta("lo"), End(Usage(7, 2))])
        assert [w.event for w in wire] == [
            "message_start",
            "ping",
            "content_block_start",
            "content_block_delta",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        start = wire[0].data["message"]
        assert has_namespace(start["id"], IdNamespace.MESSAGE)
        assert start["usage"]["input_tokens"] == 7
        assert wire[3].data["delta"] == {"type": "text_delta", "text": "Hel"}
        delta = wire[6].data
        assert delta["delta"]["stop_reason"] == "end_turn"
        assert delta["usage"]["output_tokens"] == 2

    def test_text_then_tool_use_blocks_do_not_overlap(self, adapter: AnthropicAdapter) -> None:
        wire = _encode(
            adapter,
            [
                TextDelta("Checking."),
                ToolCallDelta("toolu_1", "get_weather", ""),
                ToolCallDelta("toolu_1", "get_weather", '{"city":"Paris"}'),
                End(),
            ],
        )
        open_blocks = 0
        for w in wire:
            if w.event == "content_block_start":
                open_blocks += 1
                assert open_blocks == 1
            elif w.event == "content_block_stop":
                open_blocks -= 1
        assert open_blocks == 0

        starts = [w.data for w in wire if w.event == "content_block_start"]
        assert [s["index"] for s in starts] == [0, 1]
        assert starts[1]["content_block"] == {
            "type": "tool_use",
            "id": "toolu_1",
            "name": "get_weather",
            "input": {},
        }
        json_deltas = [
            w.data["delta"]["partial_json"]
            for w in wire
            if w.event == "content_block_delta" and w.data["delta"]["type"] == "input_json_delta"
        ]
        assert json_deltas == ['{"city":"Paris"}']
        message_delta = next(w.data for w in wire if w.event == "message_delta")
        assert message_delta["delta"]["stop_reason"] == "tool_use"

    def test_interleaved_deltas_reopen_block(self, adapter: AnthropicAdapter) -> None:
        wire = _encode(
            adapter,
            [TextDelta("a"), ToolCallDelta("t1", "f", "{}"), TextDelta("b"), End()],
        )
        starts = [w.data["index"] for w in wire if w.event == "content_block_start"]
        stops = [w.data["index"] for w in wire if w.event == "content_block_stop"]
        assert starts == [0, 1, 2]
        assert stops == [0, 1, 2]

    def test_tool_use_block_is_not_split(self, adapter: AnthropicAdapter) -> None:
        wire = _encode(
            adapter,
            [
                ToolCallDelta("t1", "f", '{"a":'),
                ToolCallDelta("t2", "g", "{}"),
                ToolCallDelta("t1", "f", "1}"),
                End(),
            ],
        )
        open_blocks = 0
        for w in wire:
            if w.event == "content_block_start":
                open_blocks += 1
                assert open_blocks == 1
            elif w.event == "content_block_stop":
                open_blocks -= 1
        assert open_blocks == 0

        starts = [w.data for w in wire if w.event == "content_block_start"]
        assert [s["content_block"]["id"] for s in starts] == ["t1", "t2"]
        assert [s["index"] for s in starts] == [0, 1]
        partial: dict[int, str] = {}
        for w in wire:
            if w.event == "content_block_delta":
                index = w.data["index"]
                partial[index] = partial.get(index, "") + w.data["delta"]["partial_json"]
        assert partial == {0: '{"a":1}', 1: "{}"}

    def test_failure(self, adapter: AnthropicAdapter) -> None:
        wire = _encode(adapter, [Failed("overloaded")])
        assert [w.event for w in wire] == ["message_start", "ping", "error"]
        assert wire[-1].data == {
            "type": "error",
            "error": {"type": "api_error", "message": "overloaded"},
        }
