"""Streaming response processing subsystem.

This package contains streaming-related functionality:
- event_emitter: ordered, best-effort delivery of events to the client
- sse_parser: SSE frame reading and per-protocol chunk extraction
- streaming_core: the single-provider streaming query life cycle
"""

from .event_emitter import EmitSink, EventEmitterHandler, StreamTags
from .sse_parser import ChunkParser, ParserCursor, scan_increment
from .streaming_core import StreamingQuery

__all__ = [
    "EmitSink",
    "EventEmitterHandler",
    "StreamTags",
    "ChunkParser",
    "ParserCursor",
    "scan_increment",
    "StreamingQuery",
]
