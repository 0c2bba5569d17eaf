"""Function timing instrumentation with direct file output.

Provides:
- @timed decorator for automatic function entrance/exit logging
- timing_scope() context manager for code block timing
- timing_mark() for point-in-time events
- Direct JSONL file output (configured via TIMING_LOG_FILE valve)

Usage:
    from .core.timing_logger import timed, timing_scope

    @timed
    async def run_query():
        with timing_scope("synthesis"):
            await master.run(prompt)

Timing is recorded only while a query has called ``enable_timing`` with a
query id; everywhere else the decorator costs one ContextVar lookup.
"""

from __future__ import annotations

import datetime
import functools
import inspect
import json
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

_timing_file_lock = threading.Lock()
_timing_file_path: Optional[Path] = None
_timing_file_handle: Optional[Any] = None

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_query_id: ContextVar[Optional[str]] = ContextVar("timing_query_id", default=None)

_F = TypeVar("_F", bound=Callable[..., Any])


def _format_iso_utc(wall_ts: float) -> str:
    dt = datetime.datetime.fromtimestamp(wall_ts, tz=datetime.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _record_event(event: str, label: str, elapsed_ms: Optional[float] = None) -> None:
    """Write a timing event as one JSONL line when timing is active."""
    if not _timing_enabled.get():
        return
    query_id = _timing_query_id.get()
    if not query_id:
        return

    record: dict[str, Any] = {
        "ts": _format_iso_utc(time.time()),
        "perf_ts": round(time.perf_counter(), 6),
        "event": event,
        "label": label,
        "query_id": query_id,
    }
    if elapsed_ms is not None:
        record["elapsed_ms"] = round(elapsed_ms, 3)

    with _timing_file_lock:
        if _timing_file_handle is None:
            return
        try:
            _timing_file_handle.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")
            _timing_file_handle.flush()
        except OSError:
            # Instrumentation must never break a request.
            return


def configure_timing_file(file_path: str) -> bool:
    """Open ``file_path`` for appending timing events.

    Returns:
        bool: True when the file is ready, False when it could not be opened.
    """
    global _timing_file_path, _timing_file_handle

    path = Path(file_path).expanduser()
    with _timing_file_lock:
        if _timing_file_handle is not None and _timing_file_path == path:
            return True
        if _timing_file_handle is not None:
            _timing_file_handle.close()
            _timing_file_handle = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _timing_file_handle = open(path, "a", encoding="utf-8")
        except OSError:
            _timing_file_path = None
            return False
        _timing_file_path = path
    return True


def close_timing_file() -> None:
    global _timing_file_path, _timing_file_handle
    with _timing_file_lock:
        if _timing_file_handle is not None:
            _timing_file_handle.close()
        _timing_file_handle = None
        _timing_file_path = None


def enable_timing(query_id: str, enabled: bool = True) -> None:
    """Turn timing on or off for the current context (one query)."""
    _timing_enabled.set(bool(enabled))
    _timing_query_id.set(query_id if enabled else None)


def timing_mark(label: str) -> None:
    _record_event("mark", label)


@contextmanager
def timing_scope(label: str) -> Iterator[None]:
    """Record enter/exit events around a block of code."""
    if not _timing_enabled.get():
        yield
        return
    start = time.perf_counter()
    _record_event("enter", label)
    try:
        yield
    finally:
        _record_event("exit", label, (time.perf_counter() - start) * 1000)


def timed(func: _F) -> _F:
    """Record enter/exit events for ``func`` (sync or async)."""
    label = f"{func.__module__}.{func.__qualname__}"

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def _async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _timing_enabled.get():
                return await func(*args, **kwargs)
            with timing_scope(label):
                return await func(*args, **kwargs)

        return _async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def _sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        if not _timing_enabled.get():
            return func(*args, **kwargs)
        with timing_scope(label):
            return func(*args, **kwargs)

    return _sync_wrapper  # type: ignore[return-value]


__all__ = [
    "timed",
    "timing_scope",
    "timing_mark",
    "enable_timing",
    "configure_timing_file",
    "close_timing_file",
]
