"""ProviderAdapter: one provider's request builder plus its chunk parser.

Provider families are a closed set keyed by ``WireProtocol``; the request
builder and the stream format for each are looked up in tables instead of
being spread over subclasses.
"""

from __future__ import annotations

from typing import Callable, Optional

from ...core.config import ProviderConfig, WireProtocol
from ...streaming.event_emitter import EventEmitterHandler, StreamTags
from ...streaming.sse_parser import ChunkParser
from .chat_completions_adapter import build_chat_completions_request
from .gemini_adapter import build_gemini_request
from .request import ProviderRequest

RequestBuilder = Callable[[ProviderConfig, str, str], ProviderRequest]

REQUEST_BUILDERS: dict[WireProtocol, RequestBuilder] = {
    WireProtocol.GEMINI_SSE: build_gemini_request,
    WireProtocol.CHAT_COMPLETIONS_SSE: build_chat_completions_request,
}


class ProviderAdapter:
    """Builds requests for one provider and owns the parser for its stream.

    An adapter lives for exactly one streaming query: the parser's cursor
    is per-stream state and must not be shared.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        context: str = "",
        tags: Optional[StreamTags] = None,
        emitter: Optional[EventEmitterHandler] = None,
    ) -> None:
        self.config = config
        self.context = context
        self.tags = tags or StreamTags(
            model=config.display_name,
            provider=config.provider_id,
            nickname="",
            query_id="",
        )
        self.parser = ChunkParser(config.wire_protocol, tags=self.tags, emitter=emitter)

    @classmethod
    def for_query(
        cls,
        config: ProviderConfig,
        *,
        query_id: str,
        nickname: str,
        context: str = "",
        emitter: Optional[EventEmitterHandler] = None,
        stage: Optional[str] = None,
    ) -> "ProviderAdapter":
        tags = StreamTags(
            model=config.display_name,
            provider=config.provider_id,
            nickname=nickname,
            query_id=query_id,
            stage=stage,
        )
        return cls(config, context=context, tags=tags, emitter=emitter)

    @property
    def provider_id(self) -> str:
        return self.config.provider_id

    def build_request(self, prompt: str) -> ProviderRequest:
        """Return the outbound request for ``prompt``. Pure; no I/O."""
        builder = REQUEST_BUILDERS[self.config.wire_protocol]
        return builder(self.config, prompt, self.context)

    def parse_increment(self, buffer: str) -> str:
        return self.parser.parse_increment(buffer)

    def __repr__(self) -> str:
        return f"ProviderAdapter(provider={self.provider_id!r}, protocol={self.config.wire_protocol.value!r})"


__all__ = ["ProviderAdapter", "ProviderRequest", "REQUEST_BUILDERS"]
