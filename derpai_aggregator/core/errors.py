"""Error classes and message constants.

Provider-level failures never escape a streaming query: they are logged and
turned into ``ProviderOutcome`` values. The classes here are what the engine
raises internally (protocol errors inside a parser) or at construction time
(configuration errors), plus the fixed strings sent to clients.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .utils import _pretty_json

LOGGER = logging.getLogger(__name__)


class StreamErrorMessages:
    """Centralized ``streamError`` messages sent to the client."""

    BAD_RESPONSE = "Bad response from provider"
    PARSE_ERROR = "Parse error"
    TIMEOUT = "Request timed out"
    UNEXPECTED = "Unexpected failure"


class ChatReplyMessages:
    """User-facing chat replies produced by the chat pipe."""

    EMPTY_QUESTION = "Please ask a question!"
    NO_ANSWER = "Oops, I am having trouble answering that right now."
    INTERNAL_ERROR = "Oops, I encountered an error while thinking about that."


class DerpAIError(RuntimeError):
    """Base class for errors raised by the aggregation engine."""


class ConfigurationError(DerpAIError):
    """Raised when the engine cannot start with the supplied configuration."""


class ProviderProtocolError(DerpAIError):
    """Raised by a chunk parser when a frame cannot be interpreted.

    Covers both malformed frames and explicit upstream error objects
    (``{"error": {...}}``) delivered inside the stream.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        payload: Any = None,
    ) -> None:
        self.provider = provider
        self.payload = payload
        super().__init__(message)

    @property
    def payload_json(self) -> str:
        return _pretty_json(self.payload)

    @classmethod
    def from_error_object(cls, error: Any, *, provider: Optional[str] = None) -> "ProviderProtocolError":
        """Build an error from the ``error`` member of a streamed frame."""
        message = None
        if isinstance(error, dict):
            message = error.get("message")
        elif isinstance(error, str):
            message = error
        if not message:
            LOGGER.error("Unknown provider error from %s: %s", provider or "provider", _pretty_json(error))
            message = "Unknown provider error"
        return cls(str(message), provider=provider, payload=error)


__all__ = [
    "StreamErrorMessages",
    "ChatReplyMessages",
    "DerpAIError",
    "ConfigurationError",
    "ProviderProtocolError",
]
