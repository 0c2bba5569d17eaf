"""Event emission to the connected client.

The transport layer hands the engine an ``EmitSink``: a callable taking an
event kind and a payload dict (socket.io style ``emit(event, data)``). It
may be sync or async. ``EventEmitterHandler`` wraps it so that:

- emitting never blocks the caller and never raises (best-effort delivery)
- events are delivered strictly in the order they were emitted, through a
  single FIFO queue drained by one task per handler
- transport failures are logged and dropped

Every provider branch of one query shares one handler; each event carries
its own provider/query tags, so per-provider order is preserved while the
interleaving across providers is whatever the event loop produced.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from ..core.timing_logger import timed

EmitSink = Callable[[str, dict[str, Any]], Union[Awaitable[None], None]]

STREAM_CHUNK = "streamChunk"
STREAM_END = "streamEnd"
STREAM_ERROR = "streamError"
CHAT = "chat"
DEFAULT_FLUSH_TIMEOUT_SECONDS = 10.0

LOGGER = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class StreamTags:
    """Identifying tags carried by every stream event of one provider branch."""

    model: str
    provider: str
    nickname: str
    query_id: str
    stage: Optional[str] = None

    def payload(self, **extra: Any) -> dict[str, Any]:
        data: dict[str, Any] = {
            "model": self.model,
            "provider": self.provider,
            "nickname": self.nickname,
            "queryId": self.query_id,
        }
        if self.stage:
            data["stage"] = self.stage
        data.update(extra)
        return data


class EventEmitterHandler:
    """Ordered, best-effort delivery of events to an ``EmitSink``.

    ``emit_nowait`` is safe to call from synchronous code running on the
    event loop (the chunk parsers do exactly that). Call ``flush`` to wait
    until everything queued so far has been handed to the sink, and
    ``aclose`` when the query is finished.
    """

    def __init__(
        self,
        sink: Optional[EmitSink],
        *,
        logger: Optional[logging.Logger] = None,
        queue_maxsize: int = 0,
        flush_timeout: Optional[float] = DEFAULT_FLUSH_TIMEOUT_SECONDS,
    ) -> None:
        self._sink = sink
        self.flush_timeout = flush_timeout
        self.logger = logger or LOGGER
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=max(0, queue_maxsize))
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self._sink is not None and not self._closed

    def emit_nowait(self, kind: str, payload: dict[str, Any]) -> None:
        """Queue an event for delivery. Never blocks, never raises."""
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (plain synchronous use): deliver inline.
            self._deliver_sync(kind, payload)
            return

        try:
            self._queue.put_nowait((kind, payload))
        except asyncio.QueueFull:
            self.logger.warning("Emit queue full (maxsize=%s); dropping %s event.", self._queue.maxsize, kind)
            return

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain(), name="emit-drain")

    def chunk(self, tags: StreamTags, text: str) -> None:
        self.emit_nowait(STREAM_CHUNK, tags.payload(text=text))

    def end(self, tags: StreamTags) -> None:
        self.emit_nowait(STREAM_END, tags.payload(time=_now_ms()))

    def error(self, tags: StreamTags, message: str) -> None:
        self.emit_nowait(STREAM_ERROR, tags.payload(error=message, time=_now_ms()))

    @timed
    async def flush(self) -> None:
        """Wait until every queued event has been handed to the sink.

        A sink that does not keep up within ``flush_timeout`` loses the events
        still pending; the caller is never held past that deadline.
        """
        if self._drain_task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self.flush_timeout)
        except asyncio.TimeoutError:
            dropped = await self._drop_pending()
            self.logger.warning(
                "Event sink did not drain within %ss; dropped %d pending event(s).",
                self.flush_timeout,
                dropped,
            )

    @timed
    async def aclose(self) -> None:
        """Flush outstanding events and stop the drain task."""
        await self.flush()
        self._closed = True
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _drop_pending(self) -> int:
        task, self._drain_task = self._drain_task, None
        dropped = 0
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            dropped += 1
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1
        return dropped

    async def _drain(self) -> None:
        while True:
            kind, payload = await self._queue.get()
            try:
                result = self._sink(kind, payload) if self._sink else None
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self.logger.warning("Event emitter failure (%s): %s", kind, exc)
            finally:
                self._queue.task_done()

    def _deliver_sync(self, kind: str, payload: dict[str, Any]) -> None:
        try:
            result = self._sink(kind, payload) if self._sink else None
        except Exception as exc:
            self.logger.warning("Event emitter failure (%s): %s", kind, exc)
            return
        if inspect.isawaitable(result):
            if inspect.iscoroutine(result):
                result.close()
            self.logger.warning("Async emit sink used without a running event loop; %s event dropped.", kind)


__all__ = [
    "EmitSink",
    "EventEmitterHandler",
    "StreamTags",
    "STREAM_CHUNK",
    "STREAM_END",
    "STREAM_ERROR",
    "CHAT",
]
