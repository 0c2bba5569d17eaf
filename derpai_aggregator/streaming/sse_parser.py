"""Server-Sent Events (SSE) chunk parsing.

Upstream providers stream their answers as SSE frames. The stream reader
keeps one growing text buffer per connection and repeatedly hands the
*whole* buffer to a ``ChunkParser``, which only scans forward from the
offset it reached last time. This module is split into three layers:

- Frame readers: ``read_data_frame`` / ``read_event`` try to read exactly one
  complete frame starting at a position and return ``None`` for a partial one
- Scanning: ``iter_increment`` / ``scan_increment`` thread an immutable
  ``ParserCursor`` through the buffer and extract chunk text per frame
- ``ChunkParser``: owns a cursor for one stream and forwards every extracted
  chunk to the client as a ``streamChunk`` event the moment it is parsed

Wire formats are a closed set (``WireProtocol``) described by the
``WIRE_PROTOCOLS`` table rather than by parser subclasses.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator, Optional, Union

from ..core.config import WireProtocol
from ..core.errors import ProviderProtocolError
from ..core.utils import _dig
from .event_emitter import EventEmitterHandler, StreamTags

_DATA_FRAME_RE = re.compile(r"data: ([^\r\n]*)(?:\r\n\r\n|\n\n|\r\r)")
_EVENT_DELIMITER = "\n\n"
_DATA_PREFIX = "data: "


@dataclass(frozen=True, slots=True)
class SSEFrame:
    """One complete frame read from the buffer.

    ``data`` is the payload after ``data: `` or ``None`` for events that do
    not carry data (comments, ``event:`` lines, ...). ``end`` is the offset
    just past the frame delimiter.
    """

    start: int
    end: int
    data: Optional[str]


@dataclass(frozen=True, slots=True)
class ParserCursor:
    """Scan state of one stream.

    ``offset`` never decreases and never exceeds the length of the buffer it
    was produced from; everything before it has been consumed exactly once.
    """

    offset: int = 0
    received: str = ""
    finished: bool = False


def read_data_frame(buffer: str, pos: int) -> Optional[SSEFrame]:
    """Read one ``data: <payload>`` frame terminated by a blank line.

    Anything else at ``pos`` (a partial frame, or text that is not a data
    frame) returns ``None`` and the scan stops there.
    """
    match = _DATA_FRAME_RE.match(buffer, pos)
    if match is None:
        return None
    return SSEFrame(start=pos, end=match.end(), data=match.group(1))


def read_event(buffer: str, pos: int) -> Optional[SSEFrame]:
    """Read one ``\\n\\n``-delimited event; non-data events have ``data=None``."""
    end = buffer.find(_EVENT_DELIMITER, pos)
    if end == -1:
        return None
    event = buffer[pos:end]
    data = event[len(_DATA_PREFIX):] if event.startswith(_DATA_PREFIX) else None
    return SSEFrame(start=pos, end=end + len(_EVENT_DELIMITER), data=data)


@dataclass(frozen=True, slots=True)
class WireProtocolSpec:
    """How to frame and interpret one upstream streaming format."""

    read_frame: Callable[[str, int], Optional[SSEFrame]]
    text_path: tuple[Union[str, int], ...]
    done_sentinel: Optional[str] = None


WIRE_PROTOCOLS: dict[WireProtocol, WireProtocolSpec] = {
    WireProtocol.GEMINI_SSE: WireProtocolSpec(
        read_frame=read_data_frame,
        text_path=("candidates", 0, "content", "parts", 0, "text"),
    ),
    WireProtocol.CHAT_COMPLETIONS_SSE: WireProtocolSpec(
        read_frame=read_event,
        text_path=("choices", 0, "delta", "content"),
        done_sentinel="[DONE]",
    ),
}


def extract_chunk(
    spec: WireProtocolSpec,
    data: str,
    *,
    provider: Optional[str] = None,
) -> Optional[str]:
    """Return the chunk text carried by one frame payload, or ``None``.

    Raises:
        ProviderProtocolError: the payload is not JSON, or it carries an
            explicit ``error`` object.
    """
    try:
        payload: Any = json.loads(data)
    except ValueError as exc:
        raise ProviderProtocolError(
            f"Malformed frame payload: {exc}", provider=provider, payload=data
        ) from exc

    if isinstance(payload, dict) and payload.get("error") is not None:
        raise ProviderProtocolError.from_error_object(payload["error"], provider=provider)

    text = _dig(payload, spec.text_path)
    if isinstance(text, str) and text:
        return text
    return None


def iter_increment(
    protocol: WireProtocol,
    cursor: ParserCursor,
    buffer: str,
    *,
    provider: Optional[str] = None,
) -> Iterator[tuple[ParserCursor, Optional[str]]]:
    """Yield ``(cursor, chunk_text)`` for each complete frame after ``cursor``.

    The cursor yielded with a frame already points past it, so a consumer
    that keeps the last cursor it saw resumes correctly even when a later
    frame raises ``ProviderProtocolError``.
    """
    if cursor.offset > len(buffer):
        raise ValueError(
            f"Buffer shorter than cursor offset ({len(buffer)} < {cursor.offset}); "
            "pass the whole buffer accumulated so far"
        )

    spec = WIRE_PROTOCOLS[protocol]
    pos = cursor.offset
    while not cursor.finished and pos < len(buffer):
        frame = spec.read_frame(buffer, pos)
        if frame is None:
            break
        pos = frame.end

        data = frame.data.strip() if frame.data is not None else None
        if not data:
            # Comments, event:/id: lines and keep-alives are consumed silently.
            cursor = replace(cursor, offset=pos)
            yield cursor, None
            continue

        if spec.done_sentinel is not None and data == spec.done_sentinel:
            cursor = replace(cursor, offset=pos, finished=True)
            yield cursor, None
            return

        text = extract_chunk(spec, data, provider=provider)
        cursor = replace(cursor, offset=pos, received=cursor.received + (text or ""))
        yield cursor, text


def scan_increment(
    protocol: WireProtocol,
    cursor: ParserCursor,
    buffer: str,
    *,
    provider: Optional[str] = None,
) -> tuple[ParserCursor, list[str]]:
    """Pure form of one parser step: ``(cursor, buffer) -> (new_cursor, chunks)``."""
    chunks: list[str] = []
    for cursor, text in iter_increment(protocol, cursor, buffer, provider=provider):
        if text:
            chunks.append(text)
    return cursor, chunks


class ChunkParser:
    """Stateful parser for one upstream stream.

    ``parse_increment`` receives the entire buffer accumulated so far,
    emits a ``streamChunk`` event per newly completed chunk (before
    returning) and returns the concatenation of those chunks.
    """

    def __init__(
        self,
        protocol: WireProtocol,
        *,
        tags: Optional[StreamTags] = None,
        emitter: Optional[EventEmitterHandler] = None,
    ) -> None:
        self.protocol = WireProtocol(protocol)
        self.tags = tags
        self._emitter = emitter
        self._cursor = ParserCursor()

    @property
    def cursor(self) -> ParserCursor:
        return self._cursor

    @property
    def finished(self) -> bool:
        """True once a terminal sentinel frame has been consumed."""
        return self._cursor.finished

    @property
    def received(self) -> str:
        return self._cursor.received

    def parse_increment(self, buffer: str) -> str:
        """Consume complete frames after the cursor and return their text.

        Raises:
            ProviderProtocolError: a frame is malformed or reports an
                upstream error. Chunks from earlier frames in the same call
                have already been emitted and stay consumed.
        """
        provider = self.tags.provider if self.tags else None
        newly_processed: list[str] = []
        for cursor, text in iter_increment(self.protocol, self._cursor, buffer, provider=provider):
            self._cursor = cursor
            if not text:
                continue
            newly_processed.append(text)
            if self._emitter is not None and self.tags is not None:
                self._emitter.chunk(self.tags, text)
        return "".join(newly_processed)


__all__ = [
    "SSEFrame",
    "ParserCursor",
    "WireProtocolSpec",
    "WIRE_PROTOCOLS",
    "read_data_frame",
    "read_event",
    "extract_chunk",
    "iter_increment",
    "scan_increment",
    "ChunkParser",
]
