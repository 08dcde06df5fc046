"""Decoder for streamed chat-completion responses.

A :class:`StreamDecoder` consumes the raw bytes of one server-sent-event
response and turns them into typed events as they arrive:

* :class:`ContentToken` for answer text,
* :class:`ReasoningToken` for thinking text, whether it came on the
  dedicated ``reasoning`` field or inline between ``<think>`` tags,
* :class:`ToolCallFragment` for each piece of a requested tool call.

When the channel closes, :meth:`StreamDecoder.finish` assembles the final
:class:`AssistantTurn`.  The decoder is scoped to a single model call and
never retries anything; tool-argument strings are passed through unparsed.
"""

from __future__ import annotations

import codecs
import enum
import json
import logging
import uuid
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass, field

from nexusagent.models import FunctionCall, ToolCall

log = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class Mode(enum.Enum):
    CONTENT = "content"
    REASONING = "reasoning"


@dataclass(frozen=True)
class TagState:
    """Inline-tag state carried from one content fragment to the next.

    ``pending`` holds trailing text that could be the start of the tag the
    current mode is waiting for (``"<thi"`` while in content mode, say).  It
    is classified once the next fragment shows whether the tag completes.
    """

    mode: Mode = Mode.CONTENT
    pending: str = ""


def _partial_tag_length(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


def split_fragment(
    fragment: str, state: TagState
) -> tuple[TagState, list[tuple[Mode, str]]]:
    """Route one content fragment to content or reasoning.

    Returns the new state and the ``(mode, text)`` segments to emit, in
    order.  Pure: the caller owns the state.
    """
    text = state.pending + fragment
    mode = state.mode
    segments: list[tuple[Mode, str]] = []

    while text:
        tag = THINK_OPEN if mode is Mode.CONTENT else THINK_CLOSE
        pos = text.find(tag)
        if pos >= 0:
            if pos:
                segments.append((mode, text[:pos]))
            text = text[pos + len(tag) :]
            mode = Mode.REASONING if mode is Mode.CONTENT else Mode.CONTENT
            continue

        held = _partial_tag_length(text, tag)
        emit = text[: len(text) - held]
        if emit:
            segments.append((mode, emit))
        return TagState(mode, text[len(text) - held :]), segments

    return TagState(mode, ""), segments


def flush_pending(state: TagState) -> tuple[TagState, list[tuple[Mode, str]]]:
    """Release held-back text at end of stream; it was never a tag."""
    if not state.pending:
        return state, []
    return TagState(state.mode, ""), [(state.mode, state.pending)]


@dataclass(frozen=True)
class ContentToken:
    text: str


@dataclass(frozen=True)
class ReasoningToken:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


DecodedEvent = ContentToken | ReasoningToken | ToolCallFragment


@dataclass
class AssistantTurn:
    """The assembled result of one model call."""

    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    reasoning: str | None = None


@dataclass
class _PartialCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class StreamDecoder:
    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._tags = TagState()
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._calls: dict[int, _PartialCall] = {}

    @property
    def mode(self) -> Mode:
        return self._tags.mode

    def feed(self, data: bytes | str) -> list[DecodedEvent]:
        """Consume one transport chunk and return the events it completes."""
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        events: list[DecodedEvent] = []
        for line in lines:
            events.extend(self._handle_line(line))
        return events

    def finish(self) -> tuple[list[DecodedEvent], AssistantTurn]:
        """Close the channel.

        Returns any events still buffered (an unterminated last line, or
        text held back as a possible partial tag) and the assembled turn.
        """
        self._buffer += self._utf8.decode(b"", final=True)
        events: list[DecodedEvent] = []
        if self._buffer:
            events.extend(self._handle_line(self._buffer))
            self._buffer = ""

        self._tags, segments = flush_pending(self._tags)
        events.extend(self._emit_segments(segments))

        tool_calls = [
            ToolCall(
                id=call.id or f"call_{uuid.uuid4().hex[:12]}",
                function=FunctionCall(name=call.name, arguments="".join(call.arguments)),
            )
            for _, call in sorted(self._calls.items())
        ]
        turn = AssistantTurn(
            content="".join(self._content) or None,
            tool_calls=tool_calls or None,
            reasoning="".join(self._reasoning) or None,
        )
        return events, turn

    def _handle_line(self, line: str) -> list[DecodedEvent]:
        stripped = line.strip()
        if not stripped.startswith("data:"):
            return []
        data = stripped[len("data:") :].strip()
        if not data or data == "[DONE]":
            return []

        try:
            payload = json.loads(data)
        except ValueError:
            log.debug("Skipping undecodable stream line: %r", data[:200])
            return []

        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not choices:
            return []
        delta = choices[0].get("delta") or {}

        events: list[DecodedEvent] = []

        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if reasoning:
            self._reasoning.append(reasoning)
            events.append(ReasoningToken(reasoning))

        content = delta.get("content")
        if content:
            self._tags, segments = split_fragment(content, self._tags)
            events.extend(self._emit_segments(segments))

        for fragment in delta.get("tool_calls") or []:
            events.append(self._accumulate_tool_call(fragment))

        return events

    def _emit_segments(self, segments: list[tuple[Mode, str]]) -> list[DecodedEvent]:
        events: list[DecodedEvent] = []
        for mode, text in segments:
            if mode is Mode.REASONING:
                self._reasoning.append(text)
                events.append(ReasoningToken(text))
            else:
                self._content.append(text)
                events.append(ContentToken(text))
        return events

    def _accumulate_tool_call(self, fragment: dict) -> ToolCallFragment:
        index = int(fragment.get("index") or 0)
        call = self._calls.setdefault(index, _PartialCall())
        function = fragment.get("function") or {}

        call_id = fragment.get("id") or None
        name = function.get("name") or None
        arguments = function.get("arguments") or ""

        # First non-empty id/name wins; some providers repeat them per chunk.
        if call_id and not call.id:
            call.id = call_id
        if name and not call.name:
            call.name = name
        if arguments:
            call.arguments.append(arguments)

        return ToolCallFragment(index=index, id=call_id, name=name, arguments=arguments)


async def decode_stream(
    chunks: AsyncIterable[bytes],
    on_event: Callable[[DecodedEvent], Awaitable[None]] | None = None,
) -> AssistantTurn:
    """Drive a fresh :class:`StreamDecoder` over *chunks*.

    Every decoded event is forwarded to *on_event* as soon as it is
    complete; the assembled turn is returned when the channel closes.
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            if on_event is not None:
                await on_event(event)
    tail, turn = decoder.finish()
    if on_event is not None:
        for event in tail:
            await on_event(event)
    return turn
