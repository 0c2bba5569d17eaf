"""Outbound request description shared by the gateway adapters."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class ProviderRequest:
    """The ``(url, headers, body)`` triple for one streaming POST."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
