"""DerpAI multi-provider streaming aggregation engine.

A prompt is sent to every configured AI provider at once; partial output is
streamed to the client as it arrives, and the successful answers are merged
into a single reply by a master provider.
"""

from .core.config import ProviderConfig, Valves, WireProtocol
from .core.errors import ConfigurationError, ProviderProtocolError
from .core.types import FinalAnswer, ProviderOutcome, StreamingSession
from .pipe import ChatHistoryItem, ChatMessage, ChatMessageReply, ChatPipe
from .requests.orchestrator import MultiProviderOrchestrator
from .requests.synthesis import SynthesisStep
from .streaming.event_emitter import EmitSink, EventEmitterHandler
from .streaming.sse_parser import ChunkParser
from .streaming.streaming_core import StreamingQuery

__version__ = "0.1.0"

__all__ = [
    "ChatPipe",
    "ChatMessage",
    "ChatMessageReply",
    "ChatHistoryItem",
    "MultiProviderOrchestrator",
    "SynthesisStep",
    "StreamingQuery",
    "ChunkParser",
    "EmitSink",
    "EventEmitterHandler",
    "ProviderConfig",
    "Valves",
    "WireProtocol",
    "ConfigurationError",
    "ProviderProtocolError",
    "FinalAnswer",
    "ProviderOutcome",
    "StreamingSession",
]
