"""Test configuration helpers for unit tests."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import pytest

from derpai_aggregator.core.config import EncryptedStr, ProviderConfig, WireProtocol
from derpai_aggregator.core.logging_system import QueryLogger

_ENV_KEYS = (
    "GOOGLE_GEMINI_API_KEY",
    "GEMINI_MODEL",
    "GEMINI_BASE_URL",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_URL",
    "MASTER_PROVIDER",
    "AI_REQ_TIMEOUT_MS",
    "BOT_NAME",
    "SYSTEM_CONTEXT",
    "REDIS_URL",
    "MAX_CHAT_MESSAGE_HISTORY",
    "LOG_LEVEL",
    "DERPAI_SECRET_KEY",
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep host environment variables out of Valves defaults."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield
    QueryLogger.logs.clear()
    QueryLogger._last_seen.clear()
    logging.getLogger("derpai_aggregator").handlers.clear()


# -----------------------------------------------------------------------------
# Fake aiohttp session
# -----------------------------------------------------------------------------

class _FakeContent:
    """Fake aiohttp response content with configurable chunk iteration."""

    def __init__(
        self,
        chunks: list[bytes],
        *,
        delays: list[float] | None = None,
        raise_after: int | None = None,
        exception: Exception | None = None,
    ) -> None:
        self._chunks = chunks
        self._delays = delays or []
        self._raise_after = raise_after
        self._exception = exception or RuntimeError("Simulated stream error")
        self.chunks_served = 0

    async def iter_chunked(self, _size: int):
        for idx, chunk in enumerate(self._chunks):
            if self._raise_after is not None and idx >= self._raise_after:
                raise self._exception
            if idx < len(self._delays):
                await asyncio.sleep(self._delays[idx])
            else:
                await asyncio.sleep(0)
            self.chunks_served += 1
            yield chunk


class _FakeResponse:
    """Fake aiohttp response for testing."""

    def __init__(
        self,
        chunks: list[bytes],
        *,
        status: int = 200,
        body: str = "",
        delays: list[float] | None = None,
        raise_after: int | None = None,
        exception: Exception | None = None,
    ) -> None:
        self.status = status
        self._body = body
        self.content = _FakeContent(chunks, delays=delays, raise_after=raise_after, exception=exception)
        self.released = False

    async def text(self) -> str:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.released = True
        return False


class FakeSession:
    """Fake aiohttp ClientSession returning one canned streamed response per POST."""

    def __init__(self, chunks: list[bytes] | None = None, **response_kwargs: Any) -> None:
        self._chunks = chunks or []
        self._response_kwargs = response_kwargs
        self.post_calls: list[dict[str, Any]] = []
        self.responses: list[_FakeResponse] = []
        self.closed = False

    def post(self, url: str, data=None, json=None, headers=None):
        self.post_calls.append({"url": url, "data": data, "json": json, "headers": headers})
        response = _FakeResponse(list(self._chunks), **self._response_kwargs)
        self.responses.append(response)
        return response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_session_cls():
    return FakeSession


# -----------------------------------------------------------------------------
# Stream frames
# -----------------------------------------------------------------------------

def gemini_frame(text: str, *, delimiter: str = "\n\n") -> str:
    payload = {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}{delimiter}"


def chat_frame(text: str) -> str:
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


CHAT_DONE = "data: [DONE]\n\n"


@pytest.fixture
def frames():
    """Builders for provider stream frames."""

    class _Frames:
        gemini = staticmethod(gemini_frame)
        chat = staticmethod(chat_frame)
        done = CHAT_DONE

    return _Frames


# -----------------------------------------------------------------------------
# Event sink
# -----------------------------------------------------------------------------

class RecordingSink:
    """EmitSink that records every delivered event in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, kind: str, payload: dict[str, Any]) -> None:
        self.events.append((kind, payload))

    def kinds(self, provider: str | None = None) -> list[str]:
        return [kind for kind, payload in self.events if provider is None or payload.get("provider") == provider]

    def texts(self, provider: str) -> list[str]:
        return [
            payload["text"]
            for kind, payload in self.events
            if kind == "streamChunk" and payload.get("provider") == provider
        ]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# -----------------------------------------------------------------------------
# Provider configuration
# -----------------------------------------------------------------------------

GEMINI_BASE = "https://gemini.test/v1beta/models"
OPENAI_URL = "https://openai.test/v1/chat/completions"


@pytest.fixture
def google_config() -> ProviderConfig:
    return ProviderConfig(
        provider_id="google",
        model="gemini-2.0-flash",
        url=GEMINI_BASE,
        api_key=EncryptedStr("g-key"),
        wire_protocol=WireProtocol.GEMINI_SSE,
    )


@pytest.fixture
def openai_config() -> ProviderConfig:
    return ProviderConfig(
        provider_id="openai",
        model="gpt-4o-mini",
        url=OPENAI_URL,
        api_key=EncryptedStr("o-key"),
        wire_protocol=WireProtocol.CHAT_COMPLETIONS_SSE,
    )


@pytest.fixture
def provider_configs(google_config, openai_config) -> dict[str, ProviderConfig]:
    return {"google": google_config, "openai": openai_config}
