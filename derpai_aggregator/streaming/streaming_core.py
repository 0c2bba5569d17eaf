"""Streaming query execution for one provider.

``StreamingQuery`` runs the full life cycle of a single (provider, prompt)
pair:

1. Build the request through the provider adapter
2. POST it and check the response status
3. Decode the body incrementally and feed the whole buffer to the parser
   after every read (the parser emits ``streamChunk`` events as it goes)
4. Emit ``streamEnd`` or ``streamError`` and return a ``ProviderOutcome``

Every failure below this boundary (HTTP status, protocol/parse errors,
timeouts, anything unexpected) is logged and turned into an error outcome.
Only task cancellation from the caller propagates.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import time
from typing import TYPE_CHECKING, Optional

import aiohttp

from ..core.config import DEFAULT_QUERY_TIMEOUT_MS
from ..core.errors import ProviderProtocolError, StreamErrorMessages
from ..core.timing_logger import timed
from ..core.types import ProviderOutcome
from ..core.utils import _preview
from .event_emitter import EventEmitterHandler

if TYPE_CHECKING:
    from ..api.gateway import ProviderAdapter

LOGGER = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_ERROR_BODY_PREVIEW_CHARS = 500


class StreamingQuery:
    """Drive one provider adapter through request, stream, parse and emit.

    A query instance is single-use: its adapter owns the parser cursor for
    exactly one response stream.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        session: aiohttp.ClientSession,
        *,
        emitter: Optional[EventEmitterHandler] = None,
        logger: Optional[logging.Logger] = None,
        read_chunk_bytes: int = _READ_CHUNK_BYTES,
    ) -> None:
        self.adapter = adapter
        self._session = session
        self._emitter = emitter
        self.logger = logger or LOGGER
        self._read_chunk_bytes = max(1, read_chunk_bytes)

    @property
    def provider_id(self) -> str:
        return self.adapter.provider_id

    @timed
    async def run(
        self,
        prompt: str,
        timeout_ms: Optional[int] = DEFAULT_QUERY_TIMEOUT_MS,
    ) -> ProviderOutcome:
        """Stream ``prompt`` through this provider and return its outcome.

        ``timeout_ms`` bounds the whole exchange (connect, headers and body);
        ``None`` or a non-positive value disables it. Expiry cancels the
        network operation of this query only.
        """
        timeout = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
        started = time.perf_counter()
        self.logger.info(
            "Querying %s (%s) with prompt: %s",
            self.provider_id,
            self.adapter.config.model,
            _preview(prompt),
        )
        try:
            outcome = await asyncio.wait_for(self._stream(prompt), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.error(
                "%s did not finish within %sms (query=%s).",
                self.provider_id,
                timeout_ms,
                self.adapter.tags.query_id,
            )
            return self._fail(StreamErrorMessages.TIMEOUT)
        except Exception:
            self.logger.error(
                "Unexpected failure streaming from %s (query=%s).",
                self.provider_id,
                self.adapter.tags.query_id,
                exc_info=True,
            )
            return self._fail(StreamErrorMessages.UNEXPECTED)

        self.logger.debug(
            "%s finished in %.0fms (ok=%s, chars=%d).",
            self.provider_id,
            (time.perf_counter() - started) * 1000,
            outcome.ok,
            len(outcome.text),
        )
        return outcome

    async def _stream(self, prompt: str) -> ProviderOutcome:
        request = self.adapter.build_request(prompt)
        received: list[str] = []

        async with self._session.post(
            request.url,
            data=request.body.encode("utf-8"),
            headers=request.headers,
        ) as resp:
            if not 200 <= resp.status < 300 or resp.status == 204:
                error_body = await self._read_error_body(resp)
                self.logger.error(
                    "Error response from %s (%s): %s",
                    self.provider_id,
                    resp.status,
                    error_body,
                )
                return self._fail(StreamErrorMessages.BAD_RESPONSE)

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            buffer = ""
            try:
                async for raw in resp.content.iter_chunked(self._read_chunk_bytes):
                    buffer += decoder.decode(raw)
                    text = self.adapter.parse_increment(buffer)
                    if text:
                        received.append(text)
                    if self.adapter.parser.finished:
                        break
                else:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        buffer += tail
                        text = self.adapter.parse_increment(buffer)
                        if text:
                            received.append(text)
            except ProviderProtocolError as exc:
                self.logger.error(
                    "Parse error from %s (query=%s): %s",
                    self.provider_id,
                    self.adapter.tags.query_id,
                    exc,
                )
                return self._fail(StreamErrorMessages.PARSE_ERROR)

        if self._emitter is not None:
            self._emitter.end(self.adapter.tags)
        return ProviderOutcome.success(self.provider_id, "".join(received))

    async def _read_error_body(self, resp: aiohttp.ClientResponse) -> str:
        with contextlib.suppress(aiohttp.ClientError, UnicodeDecodeError, asyncio.TimeoutError):
            text = await resp.text()
            return _preview(text, _ERROR_BODY_PREVIEW_CHARS)
        return ""

    def _fail(self, message: str) -> ProviderOutcome:
        if self._emitter is not None:
            self._emitter.error(self.adapter.tags, message)
        return ProviderOutcome.failure(self.provider_id, message)


__all__ = ["StreamingQuery"]
