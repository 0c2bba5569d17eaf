"""API subsystem.

This module provides the upstream provider integrations:
- Gateway adapters that build streaming requests per provider family

Gateway adapters are accessed via the api.gateway subpackage.
"""

from __future__ import annotations

from .gateway import ProviderAdapter, ProviderRequest

__all__ = [
    "ProviderAdapter",
    "ProviderRequest",
]
