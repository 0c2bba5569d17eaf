"""Core infrastructure module.

Foundation services required by all domains:
- Configuration schemas (Valves, ProviderConfig, EncryptedStr)
- Error classes and message constants
- Query-scoped logging
- Timing instrumentation
- Pure utility functions
"""

from .config import (
    EncryptedStr,
    ProviderConfig,
    Valves,
    WireProtocol,
    load_provider_configs,
)
from .errors import (
    ChatReplyMessages,
    ConfigurationError,
    DerpAIError,
    ProviderProtocolError,
    StreamErrorMessages,
)
from .logging_system import QueryLogger
from .utils import generate_query_id

__all__ = [
    "EncryptedStr",
    "ProviderConfig",
    "Valves",
    "WireProtocol",
    "load_provider_configs",
    "ChatReplyMessages",
    "ConfigurationError",
    "DerpAIError",
    "ProviderProtocolError",
    "StreamErrorMessages",
    "QueryLogger",
    "generate_query_id",
]
