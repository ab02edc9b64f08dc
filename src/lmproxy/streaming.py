"""Streaming sequencer.

Turns the backend's flat stream of fragments (text deltas, tool-call
argument deltas, end, failure) into the item-structured event grammar
every wire protocol's streaming format is derived from:

    created, in_progress,
    (item_added, content_part_added?, text_delta* | arguments_delta*)*,
    text_done, content_part_done, arguments_done*, item_done*, completed
    | failed

The state machine is a pure function ``advance(state, fragment)`` over a
frozen ``StreamState`` so it can be tested without any network stream.
``run_sequence`` is the async driver that feeds it from the backend and
hands each grammar event to a protocol encoder.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from lmproxy.core.errors import GatewayError, UpstreamError
from lmproxy.core.ids import IdNamespace, generate_id
from lmproxy.core.models import (
    CompletionResult,
    End,
    Failed,
    StreamFragment,
    TextDelta,
    ToolCallDelta,
    ToolCallResult,
    Usage,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------


class SequenceEventKind(str, enum.Enum):
    """Protocol-neutral streaming events, in the order they can occur."""

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    ITEM_ADDED = "item_added"
    CONTENT_PART_ADDED = "content_part_added"
    TEXT_DELTA = "text_delta"
    ARGUMENTS_DELTA = "arguments_delta"
    TEXT_DONE = "text_done"
    CONTENT_PART_DONE = "content_part_done"
    ARGUMENTS_DONE = "arguments_done"
    ITEM_DONE = "item_done"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemKind(str, enum.Enum):
    MESSAGE = "message"
    FUNCTION_CALL = "function_call"


class StreamPhase(str, enum.Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamItem:
    """One output item opened during the stream.

    Attributes:
        kind: Message or function call.
        item_id: Minted ``msg_AM-`` or ``fc_AM-`` identifier.
        output_index: Position in the output, in opening order.
        call_id: Function calls only: the backend's call id, or a minted
            ``call_AM-`` id when the backend gave none.
        name: Function calls only: the tool name.
        content: Accumulated text or argument JSON.
    """

    kind: ItemKind
    item_id: str
    output_index: int
    call_id: str = ""
    name: str = ""
    content: str = ""


@dataclass(frozen=True)
class SequenceEvent:
    """A grammar event handed to a protocol encoder.

    ``item`` is a snapshot of the item the event refers to, with content
    accumulated up to and including ``delta``.
    """

    kind: SequenceEventKind
    item: StreamItem | None = None
    delta: str = ""
    items: tuple[StreamItem, ...] = ()
    result: CompletionResult | None = None
    usage: Usage = field(default_factory=Usage)
    message: str = ""


@dataclass(frozen=True)
class StreamState:
    """Everything the sequencer knows about one stream."""

    phase: StreamPhase = StreamPhase.CREATED
    items: tuple[StreamItem, ...] = ()
    text_index: int | None = None
    calls: dict[str, int] = field(default_factory=dict)
    last_call: str | None = None

    @property
    def finished(self) -> bool:
        return self.phase in (StreamPhase.COMPLETED, StreamPhase.FAILED)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def begin(state: StreamState | None = None) -> tuple[StreamState, list[SequenceEvent]]:
    """Enter the stream: emit the two lifecycle events."""
    state = state or StreamState()
    if state.phase != StreamPhase.CREATED:
        return state, []
    events = [
        SequenceEvent(SequenceEventKind.CREATED),
        SequenceEvent(SequenceEventKind.IN_PROGRESS),
    ]
    return replace(state, phase=StreamPhase.IN_PROGRESS), events


def advance(
    state: StreamState, fragment: StreamFragment
) -> tuple[StreamState, list[SequenceEvent]]:
    """Apply one fragment and return the new state and the events it caused.

    Fragments arriving after the stream finished are ignored. A stream
    that has not been entered yet is entered first.
    """
    if state.finished:
        return state, []

    events: list[SequenceEvent] = []
    if state.phase == StreamPhase.CREATED:
        state, events = begin(state)

    if isinstance(fragment, TextDelta):
        state, more = _on_text(state, fragment)
    elif isinstance(fragment, ToolCallDelta):
        state, more = _on_tool_call(state, fragment)
    elif isinstance(fragment, End):
        state, more = _on_end(state, fragment)
    elif isinstance(fragment, Failed):
        state = replace(state, phase=StreamPhase.FAILED)
        more = [SequenceEvent(SequenceEventKind.FAILED, message=fragment.message)]
    else:
        raise TypeError(f"Unknown stream fragment: {fragment!r}")

    events.extend(more)
    return state, events


def _replace_item(
    items: tuple[StreamItem, ...], index: int, item: StreamItem
) -> tuple[StreamItem, ...]:
    return items[:index] + (item,) + items[index + 1:]


def _on_text(
    state: StreamState, fragment: TextDelta
) -> tuple[StreamState, list[SequenceEvent]]:
    if not fragment.text:
        return state, []

    events: list[SequenceEvent] = []
    if state.text_index is None:
        item = StreamItem(
            kind=ItemKind.MESSAGE,
            item_id=generate_id(IdNamespace.MESSAGE),
            output_index=len(state.items),
        )
        state = replace(state, items=state.items + (item,), text_index=len(state.items))
        events.append(SequenceEvent(SequenceEventKind.ITEM_ADDED, item=item))
        events.append(SequenceEvent(SequenceEventKind.CONTENT_PART_ADDED, item=item))

    index = state.text_index
    assert index is not None
    current = state.items[index]
    updated = replace(current, content=current.content + fragment.text)
    state = replace(state, items=_replace_item(state.items, index, updated))
    events.append(
        SequenceEvent(SequenceEventKind.TEXT_DELTA, item=updated, delta=fragment.text)
    )
    return state, events


def _on_tool_call(
    state: StreamState, fragment: ToolCallDelta
) -> tuple[StreamState, list[SequenceEvent]]:
    events: list[SequenceEvent] = []

    key = fragment.call_id
    # Continuation chunks from some backends carry neither id nor name.
    if not key and not fragment.name and state.last_call is not None:
        key = state.last_call

    if not key or key not in state.calls:
        call_id = key or generate_id(IdNamespace.CALL)
        item = StreamItem(
            kind=ItemKind.FUNCTION_CALL,
            item_id=generate_id(IdNamespace.FUNCTION_CALL),
            output_index=len(state.items),
            call_id=call_id,
            name=fragment.name,
        )
        calls = dict(state.calls)
        calls[call_id] = len(state.items)
        state = replace(
            state, items=state.items + (item,), calls=calls, last_call=call_id
        )
        key = call_id
        events.append(SequenceEvent(SequenceEventKind.ITEM_ADDED, item=item))

    index = state.calls[key]
    current = state.items[index]
    updated = replace(current, content=current.content + fragment.arguments_delta)
    state = replace(state, items=_replace_item(state.items, index, updated), last_call=key)
    events.append(
        SequenceEvent(
            SequenceEventKind.ARGUMENTS_DELTA,
            item=updated,
            delta=fragment.arguments_delta,
        )
    )
    return state, events


def _on_end(state: StreamState, fragment: End) -> tuple[StreamState, list[SequenceEvent]]:
    events: list[SequenceEvent] = []

    # A call whose arguments never arrived completes with an empty object.
    state = replace(
        state,
        items=tuple(
            replace(item, content="{}")
            if item.kind == ItemKind.FUNCTION_CALL and not item.content
            else item
            for item in state.items
        ),
    )

    if state.text_index is not None:
        text_item = state.items[state.text_index]
        events.append(SequenceEvent(SequenceEventKind.TEXT_DONE, item=text_item))
        events.append(SequenceEvent(SequenceEventKind.CONTENT_PART_DONE, item=text_item))

    for item in state.items:
        if item.kind == ItemKind.FUNCTION_CALL:
            events.append(SequenceEvent(SequenceEventKind.ARGUMENTS_DONE, item=item))

    for item in state.items:
        events.append(SequenceEvent(SequenceEventKind.ITEM_DONE, item=item))

    result = result_from_items(state.items, fragment.usage)
    events.append(
        SequenceEvent(
            SequenceEventKind.COMPLETED,
            items=state.items,
            result=result,
            usage=fragment.usage,
        )
    )
    return replace(state, phase=StreamPhase.COMPLETED), events


def _decode_arguments(arguments: str) -> Any:
    if not arguments:
        return None
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON, passing through raw")
        return arguments


def result_from_items(
    items: Iterable[StreamItem], usage: Usage | None = None
) -> CompletionResult:
    """Assemble the aggregate completion from the items of a finished stream."""
    text = ""
    tool_calls: list[ToolCallResult] = []
    for item in items:
        if item.kind == ItemKind.MESSAGE:
            text += item.content
        else:
            tool_calls.append(
                ToolCallResult(
                    call_id=item.call_id,
                    name=item.name,
                    input=_decode_arguments(item.content),
                )
            )
    return CompletionResult(text=text, tool_calls=tuple(tool_calls), usage=usage or Usage())


# ---------------------------------------------------------------------------
# Wire framing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WireEvent:
    """One server-sent event.

    Attributes:
        data: JSON payload, or a literal string such as ``[DONE]``.
        event: Value of the ``event:`` line; omitted when ``None``.
    """

    data: dict[str, Any] | str
    event: str | None = None

    def to_sse(self) -> str:
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data)
        if self.event:
            return f"event: {self.event}\ndata: {payload}\n\n"
        return f"data: {payload}\n\n"


class StreamEncoder(Protocol):
    """Maps grammar events onto one protocol's wire events.

    Encoders are created per request and may keep per-stream counters.
    """

    def encode(self, event: SequenceEvent) -> list[WireEvent]:
        ...


# ---------------------------------------------------------------------------
# Async driver
# ---------------------------------------------------------------------------


async def run_sequence(
    fragments: AsyncIterable[StreamFragment],
    encoder: StreamEncoder,
) -> AsyncIterator[WireEvent]:
    """Drive backend fragments through the state machine and an encoder.

    Exceptions raised by the backend stream become a single failure
    event. The backend stream is closed when the sequence finishes, fails,
    or the consumer stops iterating (client disconnect).

    Args:
        fragments: The backend's fragment stream.
        encoder: Protocol encoder for this request.

    Yields:
        Wire events in emission order.
    """
    upstream = aiter(fragments)
    state, events = begin()
    try:
        for event in events:
            for wire in encoder.encode(event):
                yield wire

        while not state.finished:
            try:
                fragment = await anext(upstream)
            except StopAsyncIteration:
                logger.debug("Backend stream ended without a terminal fragment")
                fragment = End()
            except GatewayError as exc:
                logger.error("Backend stream failed: %s", exc)
                fragment = Failed(str(exc))
            except Exception as exc:
                logger.error("Backend stream failed: %s", exc, exc_info=True)
                fragment = Failed(str(exc))

            state, events = advance(state, fragment)
            for event in events:
                for wire in encoder.encode(event):
                    yield wire
    finally:
        aclose = getattr(upstream, "aclose", None)
        if aclose is not None:
            await aclose()


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


@dataclass
class FragmentCollector:
    """Accumulates a fragment stream into a CompletionResult.

    Feed fragments via ``process()`` or consume a whole stream with
    ``collect()``.
    """

    state: StreamState = field(default_factory=StreamState)
    result: CompletionResult | None = None
    error: str | None = None

    def process(self, fragment: StreamFragment) -> None:
        self.state, events = advance(self.state, fragment)
        for event in events:
            if event.kind == SequenceEventKind.COMPLETED:
                self.result = event.result
            elif event.kind == SequenceEventKind.FAILED:
                self.error = event.message

    def to_result(self) -> CompletionResult:
        """Return the assembled completion.

        Raises:
            UpstreamError: If the stream failed.
        """
        if self.error is not None:
            raise UpstreamError(self.error)
        if self.result is None:
            return result_from_items(self.state.items)
        return self.result

    async def collect(self, stream: AsyncIterable[StreamFragment]) -> CompletionResult:
        """Consume an entire fragment stream and return the completion."""
        try:
            async for fragment in stream:
                self.process(fragment)
                if self.state.finished:
                    break
            else:
                self.process(End())
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return self.to_result()
