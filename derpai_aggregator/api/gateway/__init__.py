"""Provider gateway adapters.

This module provides request builders for each supported provider family:
- build_gemini_request: Gemini streamGenerateContent (alt=sse)
- build_chat_completions_request: OpenAI-compatible /chat/completions

``ProviderAdapter`` pairs the matching builder with a chunk parser for one
query.
"""

from __future__ import annotations

from .base import REQUEST_BUILDERS, ProviderAdapter, ProviderRequest
from .chat_completions_adapter import build_chat_completions_request
from .gemini_adapter import build_gemini_request

__all__ = [
    "REQUEST_BUILDERS",
    "ProviderAdapter",
    "ProviderRequest",
    "build_chat_completions_request",
    "build_gemini_request",
]
