"""Tests for provider request builders and ProviderAdapter."""

from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

from derpai_aggregator.api.gateway import (
    REQUEST_BUILDERS,
    ProviderAdapter,
    build_chat_completions_request,
    build_gemini_request,
)
from derpai_aggregator.core.config import WireProtocol


def test_gemini_request_carries_key_and_sse_flag_in_query(google_config):
    request = build_gemini_request(google_config, "Why is the sky blue?")

    parsed = urlparse(request.url)
    assert parsed.path.endswith("/gemini-2.0-flash:streamGenerateContent")
    assert parse_qs(parsed.query) == {"key": ["g-key"], "alt": ["sse"]}
    assert "Authorization" not in request.headers

    body = json.loads(request.body)
    assert body == {"contents": [{"role": "user", "parts": [{"text": "Why is the sky blue?"}]}]}


def test_gemini_request_adds_system_instruction_when_context_given(google_config):
    body = json.loads(build_gemini_request(google_config, "hi", "Be brief.").body)

    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["contents"][0]["parts"][0]["text"] == "hi"


def test_chat_completions_request_uses_bearer_auth_and_stream(openai_config):
    request = build_chat_completions_request(openai_config, "hello", "You are DerpAI.")

    assert request.url == openai_config.url
    assert request.headers["Authorization"] == "Bearer o-key"
    body = json.loads(request.body)
    assert body == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "You are DerpAI."},
            {"role": "user", "content": "hello"},
        ],
        "stream": True,
    }


def test_chat_completions_request_omits_empty_system_message(openai_config):
    body = json.loads(build_chat_completions_request(openai_config, "hello").body)

    assert body["messages"] == [{"role": "user", "content": "hello"}]


def test_every_wire_protocol_has_a_request_builder():
    assert set(REQUEST_BUILDERS) == set(WireProtocol)


def test_adapter_for_query_tags_events_and_owns_fresh_parser(google_config):
    first = ProviderAdapter.for_query(google_config, query_id="q1", nickname="DerpAI", stage="synthesis")
    second = ProviderAdapter.for_query(google_config, query_id="q1", nickname="DerpAI")

    assert first.tags.payload() == {
        "model": "gemini-2.0-flash",
        "provider": "google",
        "nickname": "DerpAI",
        "queryId": "q1",
        "stage": "synthesis",
    }
    assert "stage" not in second.tags.payload()
    assert first.parser is not second.parser
    assert first.parser.protocol is WireProtocol.GEMINI_SSE


def test_adapter_tags_use_display_label_but_request_uses_model(google_config):
    labelled = google_config.model_copy(update={"display_model_name": "Gemini Flash"})

    adapter = ProviderAdapter.for_query(labelled, query_id="q2", nickname="DerpAI")

    assert adapter.tags.payload()["model"] == "Gemini Flash"
    assert "/gemini-2.0-flash:streamGenerateContent" in adapter.build_request("hi").url


def test_adapter_builds_request_with_its_context(openai_config):
    adapter = ProviderAdapter(openai_config, context="ctx")

    body = json.loads(adapter.build_request("q").body)

    assert body["messages"][0] == {"role": "system", "content": "ctx"}
    assert repr(adapter) == "ProviderAdapter(provider='openai', protocol='chat_completions_sse')"
