"""Value types passed between the streaming layer and the orchestrator."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from .utils import generate_query_id

SYNTHESIS_PRODUCER = "synthesis"


@dataclass(frozen=True, slots=True)
class ProviderOutcome:
    """Terminal result of one provider branch: success text or an error message."""

    provider_id: str
    kind: Literal["success", "error"]
    text: str = ""
    error: Optional[str] = None

    @classmethod
    def success(cls, provider_id: str, text: str) -> "ProviderOutcome":
        return cls(provider_id=provider_id, kind="success", text=text)

    @classmethod
    def failure(cls, provider_id: str, message: str) -> "ProviderOutcome":
        return cls(provider_id=provider_id, kind="error", error=message)

    @property
    def ok(self) -> bool:
        return self.kind == "success"

    @property
    def usable(self) -> bool:
        """A success that actually carries text; blank answers do not count."""
        return self.ok and bool(self.text.strip())


@dataclass(frozen=True, slots=True)
class StreamingSession:
    """One in-flight query. Never shared between queries and never persisted."""

    prompt: str
    nickname: str
    system_context: str = ""
    query_id: str = field(default_factory=generate_query_id)
    user_id: Optional[str] = None
    providers: Optional[Sequence[str]] = None
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class FinalAnswer:
    """The single answer produced for a query."""

    text: str
    produced_by: str
    query_id: str

    @property
    def synthesized(self) -> bool:
        return self.produced_by == SYNTHESIS_PRODUCER


__all__ = ["ProviderOutcome", "StreamingSession", "FinalAnswer", "SYNTHESIS_PRODUCER"]
