"""Logging with per-query context and in-memory capture.

QueryLogger uses contextvars to track the current ``query_id`` and
``user_id`` so that every log line emitted while a query is in flight
(including those from concurrent provider branches, which inherit the
context) is tagged with it and captured into a bounded per-query buffer.

Buffers are released explicitly with ``discard`` once the query has
produced its final answer; ``cleanup`` prunes anything left behind.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

LOGGER = logging.getLogger(__name__)


class QueryLogger:
    """Per-query logger that writes to stdout and an in-memory log buffer.

    Attributes:
        query_id:  ContextVar storing the in-flight query id (buffer key).
        user_id:   ContextVar storing the authenticated user id, if any.
        log_level: ContextVar storing the minimum console level for this query.
        logs:      Map of query_id -> fixed-size deque of structured log events.
    """

    query_id: ContextVar[Optional[str]] = ContextVar("query_id", default=None)
    user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d"
        " [query=%(query_id)s user=%(user_id)s] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @classmethod
    def get_logger(cls, name: str = __name__) -> logging.Logger:
        """Return a logger wired to the current query context.

        The logger writes to stdout (respecting the per-query level) and to
        ``QueryLogger.logs[query_id]`` while a query id is bound. Child
        loggers (``logging.getLogger(__name__)`` in submodules) propagate
        into the same handler.
        """
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.setLevel(logging.DEBUG)
        logger.propagate = True

        def _filter(record: logging.LogRecord) -> bool:
            record.query_id = cls.query_id.get() or "-"
            record.user_id = cls.user_id.get() or "-"
            record.query_log_level = cls.log_level.get()
            return True

        # Filter on the handler so records propagated from child loggers are tagged too.
        handler = logging.Handler()
        handler.addFilter(_filter)
        handler.emit = cls.process_record  # type: ignore[method-assign]
        logger.addHandler(handler)
        return logger

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        cls.max_lines = max(100, min(200000, int(value)))

    @classmethod
    @contextmanager
    def bind(
        cls,
        query_id: str,
        *,
        user_id: Optional[str] = None,
        level: int | str = logging.INFO,
    ) -> Iterator[None]:
        """Bind query/user ids (and console level) for the enclosed block."""
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO
        tokens = (
            cls.query_id.set(query_id),
            cls.user_id.set(user_id),
            cls.log_level.set(level),
        )
        try:
            yield
        finally:
            cls.log_level.reset(tokens[2])
            cls.user_id.reset(tokens[1])
            cls.query_id.reset(tokens[0])

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured log event extracted from a LogRecord."""
        event: dict[str, Any] = {
            "created": float(record.created),
            "level": record.levelname,
            "logger": record.name,
            "query_id": getattr(record, "query_id", None),
            "user_id": getattr(record, "user_id", None),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        return event

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        try:
            if record.levelno >= int(getattr(record, "query_log_level", logging.INFO)):
                sys.stdout.write(cls._console_formatter.format(record) + "\n")
                sys.stdout.flush()
            query_id = getattr(record, "query_id", None)
            if not query_id or query_id == "-":
                return
            event = cls._build_event(record)
            with cls._state_lock:
                buffer = cls.logs.get(query_id)
                if buffer is None or buffer.maxlen != cls.max_lines:
                    buffer = deque(buffer or (), maxlen=cls.max_lines)
                    cls.logs[query_id] = buffer
                buffer.append(event)
                cls._last_seen[query_id] = time.time()
        except Exception:
            # Never raise from logging hooks.
            return

    @classmethod
    def snapshot(cls, query_id: str) -> list[dict[str, Any]]:
        """Return a copy of the events captured for ``query_id``."""
        with cls._state_lock:
            return list(cls.logs.get(query_id, ()))

    @classmethod
    def discard(cls, query_id: str) -> None:
        with cls._state_lock:
            cls.logs.pop(query_id, None)
            cls._last_seen.pop(query_id, None)

    @classmethod
    def cleanup(cls, max_age_seconds: float = 3600) -> None:
        """Remove stale query logs to avoid unbounded growth."""
        cutoff = time.time() - max_age_seconds
        with cls._state_lock:
            stale = [qid for qid, ts in cls._last_seen.items() if ts < cutoff]
            for qid in stale:
                cls.logs.pop(qid, None)
                cls._last_seen.pop(qid, None)


__all__ = ["QueryLogger"]
