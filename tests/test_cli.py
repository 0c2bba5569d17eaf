"""Tests for the command line smoke-test entry point."""

from __future__ import annotations

from derpai_aggregator.__main__ import _parse_args, _print_event


def test_parse_args_collects_repeated_providers():
    args = _parse_args(["Why?", "--provider", "google", "--provider", "openai", "--quiet"])

    assert args.question == "Why?"
    assert args.providers == ["google", "openai"]
    assert args.quiet is True
    assert args.nickname == "cli"


def test_print_event_routes_stream_to_stderr_and_reply_to_stdout(capsys):
    _print_event("streamChunk", {"provider": "google", "stage": "synthesis", "text": "hi"})
    _print_event("streamError", {"provider": "openai", "error": "Request timed out"})
    _print_event("chat", {"nickname": "DerpAI", "message": "Hello!"})

    captured = capsys.readouterr()
    assert "[google/synthesis] hi" in captured.err
    assert "[openai] <error: Request timed out>" in captured.err
    assert captured.out == "DerpAI: Hello!\n"
