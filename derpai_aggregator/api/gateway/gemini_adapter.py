"""Gemini streamGenerateContent adapter.

Gemini authenticates with an API key in the query string and streams
``data: <json>`` frames when called with ``alt=sse``. The stream ends when
the connection closes.
"""

from __future__ import annotations

import json
from urllib.parse import urlencode

from ...core.config import ProviderConfig
from .request import ProviderRequest


def build_gemini_request(config: ProviderConfig, prompt: str, context: str = "") -> ProviderRequest:
    """Build a streaming request for a single-shot ``contents`` prompt."""
    query = urlencode({"key": config.api_key_value, "alt": "sse"})
    body: dict = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
    if context:
        body = {"systemInstruction": {"parts": [{"text": context}]}, **body}
    return ProviderRequest(
        url=f"{config.url.rstrip('/')}/{config.model}:streamGenerateContent?{query}",
        headers={"Content-Type": "application/json"},
        body=json.dumps(body, ensure_ascii=False),
    )
