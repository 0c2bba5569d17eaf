"""Storage module.

- persistence: per-user chat history in Redis
"""

from .persistence import HISTORY_KEY_PREFIX, ChatHistoryStore, history_key

__all__ = ["ChatHistoryStore", "history_key", "HISTORY_KEY_PREFIX"]
