"""Tests for SSE frame reading and incremental chunk parsing.

Covers:
- Exactly-once extraction regardless of how the buffer grows
- Partial frames are left unconsumed until complete
- The [DONE] sentinel ends extraction early
- Upstream error objects and malformed payloads raise ProviderProtocolError
- Delimiter variants and non-data events
- ChunkParser emitting streamChunk events as it parses
"""

from __future__ import annotations

import json

import pytest

from derpai_aggregator.core.config import WireProtocol
from derpai_aggregator.core.errors import ProviderProtocolError
from derpai_aggregator.streaming.event_emitter import EventEmitterHandler, StreamTags
from derpai_aggregator.streaming.sse_parser import (
    ChunkParser,
    ParserCursor,
    read_data_frame,
    read_event,
    scan_increment,
)

GEMINI = WireProtocol.GEMINI_SSE
CHAT = WireProtocol.CHAT_COMPLETIONS_SSE


def _feed_incrementally(protocol: WireProtocol, stream: str, step: int) -> tuple[ChunkParser, list[str]]:
    parser = ChunkParser(protocol)
    outputs: list[str] = []
    for end in range(step, len(stream) + step, step):
        text = parser.parse_increment(stream[: min(end, len(stream))])
        if text:
            outputs.append(text)
    return parser, outputs


# -----------------------------------------------------------------------------
# Frame readers
# -----------------------------------------------------------------------------

def test_read_data_frame_returns_none_for_partial_frame():
    assert read_data_frame('data: {"a": 1}\n', 0) is None
    frame = read_data_frame('data: {"a": 1}\n\nrest', 0)
    assert frame is not None
    assert frame.data == '{"a": 1}'
    assert frame.end == len('data: {"a": 1}\n\n')


def test_read_event_marks_non_data_events():
    frame = read_event(": keep-alive\n\ndata: x\n\n", 0)
    assert frame is not None
    assert frame.data is None
    second = read_event(": keep-alive\n\ndata: x\n\n", frame.end)
    assert second is not None
    assert second.data == "x"


# -----------------------------------------------------------------------------
# Exactly-once extraction
# -----------------------------------------------------------------------------

@pytest.mark.parametrize("step", [1, 3, 17, 10_000])
def test_gemini_chunks_are_emitted_exactly_once(frames, step):
    stream = frames.gemini("Hello") + frames.gemini(", ") + frames.gemini("world")

    parser, outputs = _feed_incrementally(GEMINI, stream, step)

    assert "".join(outputs) == "Hello, world"
    assert parser.received == "Hello, world"
    assert parser.cursor.offset == len(stream)


@pytest.mark.parametrize("step", [1, 5, 64])
def test_chat_completions_chunks_are_emitted_exactly_once(frames, step):
    stream = frames.chat("foo") + frames.chat("bar") + frames.done

    parser, outputs = _feed_incrementally(CHAT, stream, step)

    assert "".join(outputs) == "foobar"
    assert parser.finished is True


def test_repeated_call_with_same_buffer_returns_nothing(frames):
    parser = ChunkParser(GEMINI)
    buffer = frames.gemini("once")

    assert parser.parse_increment(buffer) == "once"
    assert parser.parse_increment(buffer) == ""
    assert parser.received == "once"


def test_scan_increment_is_pure(frames):
    buffer = frames.chat("a") + frames.chat("b")
    start = ParserCursor()

    cursor, chunks = scan_increment(CHAT, start, buffer)

    assert chunks == ["a", "b"]
    assert cursor.offset == len(buffer)
    assert cursor.received == "ab"
    assert start == ParserCursor()


def test_cursor_beyond_buffer_is_rejected():
    with pytest.raises(ValueError):
        scan_increment(GEMINI, ParserCursor(offset=10), "short")


# -----------------------------------------------------------------------------
# Partial frames
# -----------------------------------------------------------------------------

def test_partial_gemini_frame_is_left_for_the_next_call():
    parser = ChunkParser(GEMINI)
    head = 'data: {"candidates":[{"content":{"parts":[{"te'

    assert parser.parse_increment(head) == ""
    assert parser.cursor.offset == 0

    assert parser.parse_increment(head + 'xt":"hi"}]}}]}\n\n') == "hi"


def test_partial_frame_after_complete_one_keeps_offset_at_its_start(frames):
    parser = ChunkParser(CHAT)
    first = frames.chat("one")
    buffer = first + 'data: {"choices":[{"delta":{"content":"tw'

    assert parser.parse_increment(buffer) == "one"
    assert parser.cursor.offset == len(first)


def test_multibyte_text_split_across_increments():
    parser = ChunkParser(CHAT)
    frame = "data: " + json.dumps({"choices": [{"delta": {"content": "héllo 👋"}}]}, ensure_ascii=False) + "\n\n"
    midpoint = frame.index("👋")

    assert parser.parse_increment(frame[:midpoint]) == ""
    assert parser.parse_increment(frame) == "héllo 👋"


# -----------------------------------------------------------------------------
# Sentinel termination
# -----------------------------------------------------------------------------

def test_done_sentinel_stops_extraction_even_with_trailing_frames(frames):
    parser = ChunkParser(CHAT)
    buffer = frames.chat("kept") + frames.done + frames.chat("ignored")

    assert parser.parse_increment(buffer) == "kept"
    assert parser.finished is True
    assert parser.parse_increment(buffer + frames.chat("still ignored")) == ""
    assert parser.received == "kept"


def test_gemini_has_no_sentinel(frames):
    parser = ChunkParser(GEMINI)

    with pytest.raises(ProviderProtocolError):
        parser.parse_increment("data: [DONE]\n\n")
    assert parser.finished is False


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

def test_gemini_error_object_raises_with_upstream_message(frames):
    parser = ChunkParser(GEMINI, tags=StreamTags("gemini-2.0-flash", "google", "DerpAI", "q1"))
    error_frame = 'data: {"error": {"code": 429, "message": "Resource has been exhausted"}}\n\n'

    with pytest.raises(ProviderProtocolError) as excinfo:
        parser.parse_increment(frames.gemini("partial ") + error_frame)

    assert "Resource has been exhausted" in str(excinfo.value)
    assert excinfo.value.provider == "google"
    # The chunk before the error stays consumed.
    assert parser.received == "partial "
    assert parser.cursor.offset == len(frames.gemini("partial "))


def test_error_object_without_message_uses_generic_text():
    with pytest.raises(ProviderProtocolError, match="Unknown provider error"):
        ChunkParser(CHAT).parse_increment('data: {"error": {"code": 500}}\n\n')


def test_malformed_json_raises_protocol_error():
    with pytest.raises(ProviderProtocolError, match="Malformed frame payload"):
        ChunkParser(CHAT).parse_increment("data: {not json}\n\n")


# -----------------------------------------------------------------------------
# Delimiters and non-data events
# -----------------------------------------------------------------------------

@pytest.mark.parametrize("delimiter", ["\n\n", "\r\n\r\n", "\r\r"])
def test_gemini_accepts_blank_line_variants(frames, delimiter):
    stream = frames.gemini("a", delimiter=delimiter) + frames.gemini("b", delimiter=delimiter)

    assert ChunkParser(GEMINI).parse_increment(stream) == "ab"


def test_gemini_stops_on_non_matching_remainder(frames):
    parser = ChunkParser(GEMINI)
    stream = frames.gemini("a") + ": comment\n\n" + frames.gemini("b")

    assert parser.parse_increment(stream) == "a"
    assert parser.cursor.offset == len(frames.gemini("a"))


def test_chat_skips_comments_and_frames_without_content(frames):
    parser = ChunkParser(CHAT)
    role_only = 'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    stream = ": ping\n\n" + role_only + "data: \n\n" + frames.chat("text") + frames.done

    assert parser.parse_increment(stream) == "text"
    assert parser.finished is True


# -----------------------------------------------------------------------------
# Emission
# -----------------------------------------------------------------------------

def test_chunk_parser_emits_each_chunk_with_tags(frames, sink):
    tags = StreamTags(model="gpt-4o-mini", provider="openai", nickname="DerpAI", query_id="q-42")
    handler = EventEmitterHandler(sink)
    parser = ChunkParser(CHAT, tags=tags, emitter=handler)

    # No running loop here, so delivery is synchronous.
    parser.parse_increment(frames.chat("x") + frames.chat("y"))

    assert sink.events == [
        ("streamChunk", {"model": "gpt-4o-mini", "provider": "openai", "nickname": "DerpAI", "queryId": "q-42", "text": "x"}),
        ("streamChunk", {"model": "gpt-4o-mini", "provider": "openai", "nickname": "DerpAI", "queryId": "q-42", "text": "y"}),
    ]
