"""Chat Completions adapter for OpenAI-compatible endpoints.

Bearer-token authentication, role/content messages and ``stream: true``.
The response is a ``\\n\\n``-delimited event stream closed by
``data: [DONE]``.
"""

from __future__ import annotations

import json
from typing import Any

from ...core.config import ProviderConfig
from .request import ProviderRequest


def build_chat_completions_request(config: ProviderConfig, prompt: str, context: str = "") -> ProviderRequest:
    """Build a streaming ``/chat/completions`` request."""
    messages: list[dict[str, Any]] = []
    if context:
        messages.append({"role": "system", "content": context})
    messages.append({"role": "user", "content": prompt})
    return ProviderRequest(
        url=config.url,
        headers={
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {config.api_key_value}",
        },
        body=json.dumps(
            {"model": config.model, "messages": messages, "stream": True},
            ensure_ascii=False,
        ),
    )
