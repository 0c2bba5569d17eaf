"""Tests for QueryLogger context binding and per-query capture."""

from __future__ import annotations

import asyncio
import logging
import time

import pytest

from derpai_aggregator.core.logging_system import QueryLogger


@pytest.fixture
def query_logger():
    return QueryLogger.get_logger("tests.logging")


def test_records_are_captured_only_while_bound(query_logger, capsys):
    query_logger.info("outside")
    with QueryLogger.bind("q-1", user_id="alice"):
        query_logger.info("inside %s", "query")

    events = QueryLogger.snapshot("q-1")
    assert [event["message"] for event in events] == ["inside query"]
    assert events[0]["user_id"] == "alice"
    assert events[0]["level"] == "INFO"
    out = capsys.readouterr().out
    assert "[query=q-1 user=alice]" in out
    assert "[query=- user=-]" in out


def test_child_logger_records_are_tagged(query_logger):
    child = logging.getLogger("tests.logging.child")

    with QueryLogger.bind("q-child"):
        child.warning("from child")

    assert [event["message"] for event in QueryLogger.snapshot("q-child")] == ["from child"]


def test_console_respects_bound_level_but_buffer_keeps_everything(query_logger, capsys):
    with QueryLogger.bind("q-quiet", level="ERROR"):
        query_logger.info("hidden on console")
        query_logger.error("shown")

    out = capsys.readouterr().out
    assert "hidden on console" not in out
    assert "shown" in out
    assert len(QueryLogger.snapshot("q-quiet")) == 2


def test_exceptions_are_recorded(query_logger):
    with QueryLogger.bind("q-exc"):
        try:
            raise ValueError("boom")
        except ValueError:
            query_logger.error("failed", exc_info=True)

    event = QueryLogger.snapshot("q-exc")[0]
    assert "ValueError: boom" in event["exception"]["text"]


@pytest.mark.asyncio
async def test_concurrent_queries_keep_separate_buffers(query_logger):
    async def run(query_id: str) -> None:
        with QueryLogger.bind(query_id):
            for idx in range(3):
                query_logger.info("%s-%d", query_id, idx)
                await asyncio.sleep(0)

    await asyncio.gather(run("qa"), run("qb"))

    assert [e["message"] for e in QueryLogger.snapshot("qa")] == ["qa-0", "qa-1", "qa-2"]
    assert [e["message"] for e in QueryLogger.snapshot("qb")] == ["qb-0", "qb-1", "qb-2"]


def test_buffer_is_bounded(query_logger, monkeypatch):
    monkeypatch.setattr(QueryLogger, "max_lines", 100)
    with QueryLogger.bind("q-bounded"):
        for idx in range(150):
            query_logger.debug("line %d", idx)

    events = QueryLogger.snapshot("q-bounded")
    assert len(events) == 100
    assert events[0]["message"] == "line 50"


def test_set_max_lines_is_clamped(monkeypatch):
    monkeypatch.setattr(QueryLogger, "max_lines", 2000)
    QueryLogger.set_max_lines(5)
    assert QueryLogger.max_lines == 100


def test_discard_and_cleanup(query_logger):
    with QueryLogger.bind("q-old"):
        query_logger.info("old")
    with QueryLogger.bind("q-new"):
        query_logger.info("new")

    QueryLogger._last_seen["q-old"] = time.time() - 7200
    QueryLogger.cleanup(max_age_seconds=3600)
    assert QueryLogger.snapshot("q-old") == []
    assert QueryLogger.snapshot("q-new")

    QueryLogger.discard("q-new")
    assert QueryLogger.snapshot("q-new") == []
