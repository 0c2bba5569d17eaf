"""Configuration management for the aggregation engine.

This module contains all configuration schemas and constants:
- Valves: Global configuration (API keys, timeouts, history limits, etc.)
- ProviderConfig: Immutable description of one upstream provider
- WireProtocol: Closed set of supported streaming wire formats
- EncryptedStr: Secret value encryption wrapper
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from enum import Enum
from typing import Any, Literal, Mapping, Optional, cast

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler, field_validator
from pydantic_core import core_schema

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_BOT_NAME = "DerpAI"
DEFAULT_QUERY_TIMEOUT_MS = 60_000
DEFAULT_MASTER_PROVIDER = "google"

_SECRET_ENV_VAR = "DERPAI_SECRET_KEY"
_ALLOWED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class WireProtocol(str, Enum):
    """Streaming wire formats understood by the chunk parsers."""

    # data: <json>\n\n frames, stream ends when upstream closes (Gemini alt=sse)
    GEMINI_SSE = "gemini_sse"

    # \n\n delimited events terminated by data: [DONE] (OpenAI-compatible)
    CHAT_COMPLETIONS_SSE = "chat_completions_sse"


# -----------------------------------------------------------------------------
# EncryptedStr
# -----------------------------------------------------------------------------

class EncryptedStr(str):
    """String wrapper that automatically encrypts/decrypts secret settings."""

    _ENCRYPTION_PREFIX = "encrypted:"

    @classmethod
    def _get_encryption_key(cls) -> Optional[bytes]:
        """Return the Fernet key derived from ``DERPAI_SECRET_KEY`` or ``None`` when unset."""
        secret = os.getenv(_SECRET_ENV_VAR)
        if not secret:
            return None
        hashed_key = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(hashed_key)

    @classmethod
    def encrypt(cls, value: str) -> str:
        """Encrypt ``value`` when an application secret is configured."""
        if not value or value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value
        encrypted = Fernet(key).encrypt(value.encode())
        return f"{cls._ENCRYPTION_PREFIX}{encrypted.decode()}"

    @classmethod
    def decrypt(cls, value: str) -> str:
        """Decrypt values produced by :meth:`encrypt`.

        Plain values pass through untouched. When the secret is missing the
        prefix is stripped; a key mismatch leaves the value as-is.
        """
        if not value or not value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        encrypted_part = value[len(cls._ENCRYPTION_PREFIX) :]
        if not key:
            return encrypted_part
        try:
            return Fernet(key).decrypt(encrypted_part.encode()).decode()
        except InvalidToken:
            LOGGER.warning("Failed to decrypt value: invalid token or key mismatch")
            return value
        except (ValueError, UnicodeDecodeError) as e:
            LOGGER.warning("Failed to decrypt value: %s: %s", type(e).__name__, e)
            return value

    def reveal(self) -> str:
        return self.decrypt(str(self))

    @classmethod
    def __get_pydantic_core_schema__(
        cls, _source_type: Any, _handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Expose a union schema so plain strings auto-wrap as EncryptedStr."""
        return core_schema.union_schema(
            [
                core_schema.is_instance_schema(cls),
                core_schema.chain_schema(
                    [
                        core_schema.str_schema(),
                        core_schema.no_info_plain_validator_function(
                            lambda value: cls(cls.encrypt(value) if value else value)
                        ),
                    ]
                ),
            ],
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda instance: str(instance)
            ),
        )


# -----------------------------------------------------------------------------
# ProviderConfig
# -----------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """Identifies one upstream provider. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    provider_id: str = Field(min_length=1)
    model: str = Field(min_length=1)
    url: str = Field(min_length=1)
    api_key: EncryptedStr
    wire_protocol: WireProtocol
    display_model_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.display_model_name or self.model

    @property
    def api_key_value(self) -> str:
        return self.api_key.reveal()


def _infer_wire_protocol(provider_id: str, url: str) -> WireProtocol:
    if provider_id == "google" or "generativelanguage.googleapis.com" in url:
        return WireProtocol.GEMINI_SSE
    return WireProtocol.CHAT_COMPLETIONS_SSE


def load_provider_configs(raw: Mapping[str, Mapping[str, Any]]) -> dict[str, ProviderConfig]:
    """Build the provider mapping from ``{id: {url, apiKey, model, protocol}}``.

    Providers without an API key are disabled (logged, skipped) rather than
    failing startup. Insertion order of ``raw`` is the provider iteration order.
    """
    configs: dict[str, ProviderConfig] = {}
    for provider_id, entry in raw.items():
        api_key = (entry.get("apiKey") or entry.get("api_key") or "").strip()
        if not api_key:
            LOGGER.info("Provider %s has no API key configured; disabled.", provider_id)
            continue
        url = str(entry.get("url") or "").strip()
        protocol = entry.get("protocol") or entry.get("wire_protocol")
        configs[provider_id] = ProviderConfig(
            provider_id=provider_id,
            model=str(entry.get("model") or "").strip(),
            url=url,
            api_key=EncryptedStr(EncryptedStr.encrypt(api_key)),
            wire_protocol=WireProtocol(protocol) if protocol else _infer_wire_protocol(provider_id, url),
            display_model_name=entry.get("displayModelName") or entry.get("display_model_name"),
        )
    return configs


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------

def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _resolve_log_level_default() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    """Normalize env-provided log level to the allowed literal set."""
    value = _env("LOG_LEVEL", "INFO").upper()
    if value not in _ALLOWED_LOG_LEVELS:
        value = "INFO"
    return cast(Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], value)


class Valves(BaseModel):
    """Global configuration, read from the environment once at startup."""

    # Providers
    GOOGLE_GEMINI_API_KEY: EncryptedStr = Field(
        default_factory=lambda: EncryptedStr(_env("GOOGLE_GEMINI_API_KEY")),
        description="Gemini API key. Leave empty to disable the google provider.",
    )
    GEMINI_MODEL: str = Field(
        default_factory=lambda: _env("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
        description="Gemini model used for streamGenerateContent.",
    )
    GEMINI_BASE_URL: str = Field(
        default_factory=lambda: _env("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL),
        description="Base URL for Gemini models; the model name and method are appended.",
    )
    OPENAI_API_KEY: EncryptedStr = Field(
        default_factory=lambda: EncryptedStr(_env("OPENAI_API_KEY")),
        description="OpenAI-compatible API key. Leave empty to disable the openai provider.",
    )
    OPENAI_MODEL: str = Field(
        default_factory=lambda: _env("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
        description="Model id sent in chat completion requests.",
    )
    OPENAI_URL: str = Field(
        default_factory=lambda: _env("OPENAI_URL", DEFAULT_OPENAI_URL),
        description="Full chat completions endpoint URL (OpenAI or a compatible gateway).",
    )
    MASTER_PROVIDER: str = Field(
        default_factory=lambda: _env("MASTER_PROVIDER", DEFAULT_MASTER_PROVIDER),
        description="Preferred provider id for synthesizing several answers into one.",
    )

    # Timeouts
    AI_REQ_TIMEOUT_MS: int = Field(
        default_factory=lambda: _env("AI_REQ_TIMEOUT_MS", str(DEFAULT_QUERY_TIMEOUT_MS)),
        validate_default=True,
        ge=1,
        description="Per-provider query timeout in milliseconds. Expiry aborts that provider only.",
    )
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection to a provider before failing.",
    )

    # Chat
    BOT_NAME: str = Field(
        default_factory=lambda: _env("BOT_NAME", DEFAULT_BOT_NAME),
        description="Nickname attached to replies and stream events.",
    )
    SYSTEM_CONTEXT: str = Field(
        default_factory=lambda: _env("SYSTEM_CONTEXT"),
        description="System instruction sent to every provider alongside the prompt.",
    )

    # History
    REDIS_URL: str = Field(
        default_factory=lambda: _env("REDIS_URL", "redis://localhost:6379/0"),
        description="Redis connection URL for chat history.",
    )
    MAX_CHAT_MESSAGE_HISTORY: int = Field(
        default_factory=lambda: _env("MAX_CHAT_MESSAGE_HISTORY", "50"),
        validate_default=True,
        ge=1,
        description="Number of question/answer pairs kept per user.",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Minimum level for engine logs.",
    )
    QUERY_LOG_MAX_LINES: int = Field(
        default=2000,
        ge=100,
        description="Maximum in-memory log lines kept per in-flight query.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=False,
        description="Write function timing events to TIMING_LOG_FILE.",
    )
    TIMING_LOG_FILE: str = Field(
        default="logs/timing.jsonl",
        description="JSONL file receiving timing events when ENABLE_TIMING_LOG is on.",
    )

    @field_validator("MASTER_PROVIDER")
    @classmethod
    def _strip_master(cls, value: str) -> str:
        return value.strip()

    def provider_configs(self) -> dict[str, ProviderConfig]:
        """Return the configured providers in iteration order (google first)."""
        return load_provider_configs(
            {
                "google": {
                    "url": self.GEMINI_BASE_URL,
                    "model": self.GEMINI_MODEL,
                    "apiKey": self.GOOGLE_GEMINI_API_KEY.reveal(),
                    "protocol": WireProtocol.GEMINI_SSE.value,
                },
                "openai": {
                    "url": self.OPENAI_URL,
                    "model": self.OPENAI_MODEL,
                    "apiKey": self.OPENAI_API_KEY.reveal(),
                    "protocol": WireProtocol.CHAT_COMPLETIONS_SSE.value,
                },
            }
        )


__all__ = [
    "Valves",
    "ProviderConfig",
    "WireProtocol",
    "EncryptedStr",
    "load_provider_configs",
    "DEFAULT_QUERY_TIMEOUT_MS",
]
