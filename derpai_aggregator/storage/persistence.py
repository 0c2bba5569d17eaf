"""Per-user chat history stored in Redis.

History is a best-effort side channel: the answer to a query never waits on
it and Redis trouble never reaches the user. Every failure is logged and the
operation degrades to a no-op (or an empty result).

Layout: one Redis list per user under ``chat-history:<user_id>``, one JSON
item per question/answer pair, trimmed to the newest
``MAX_CHAT_MESSAGE_HISTORY`` entries on every append.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_exponential

from ..core.timing_logger import timed

LOGGER = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "chat-history"
_READY_MAX_BACKOFF_SECONDS = 5.0


def history_key(user_id: str) -> str:
    return f"{HISTORY_KEY_PREFIX}:{user_id}"


class ChatHistoryStore:
    """Append, read and delete per-user chat history."""

    def __init__(
        self,
        redis_url: str = "",
        *,
        max_items: int = 50,
        client: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or LOGGER
        self.max_items = max(1, int(max_items))
        self._redis_url = (redis_url or "").strip()
        self._client = client
        if self._client is None and self._redis_url:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        if self._client is None:
            self.logger.warning("REDIS_URL is not set; chat history is disabled.")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @timed
    async def wait_until_ready(self, *, max_wait_seconds: float = 30.0) -> bool:
        """Ping Redis with exponential backoff (capped at 5s) until it answers.

        Returns False (and logs) if Redis is still unreachable after
        ``max_wait_seconds``; history stays usable and will simply keep
        failing softly until Redis comes back.
        """
        if self._client is None:
            return False
        retryer = AsyncRetrying(
            stop=stop_after_delay(max_wait_seconds),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=_READY_MAX_BACKOFF_SECONDS),
            retry=retry_if_exception_type((RedisError, OSError)),
            reraise=False,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    await self._client.ping()
        except RetryError as exc:
            self.logger.error("Redis is not reachable after %.0fs: %s", max_wait_seconds, exc.last_attempt.exception())
            return False
        self.logger.info("Connected to Redis for chat history.")
        return True

    @timed
    async def add_message_to_history(self, user_id: str, item: dict[str, Any]) -> bool:
        """Append ``item`` to the user's history and trim to ``max_items``."""
        if self._client is None or not user_id:
            return False
        key = history_key(user_id)
        try:
            await self._client.rpush(key, json.dumps(item, ensure_ascii=False))
            await self._client.ltrim(key, -self.max_items, -1)
        except (RedisError, OSError, TypeError, ValueError) as exc:
            self.logger.error("Error adding message to history for user %s: %s", user_id, exc)
            return False
        return True

    @timed
    async def get_user_chat_history(self, user_id: str) -> list[dict[str, Any]]:
        """Return the user's history, oldest first, skipping corrupt entries."""
        if self._client is None or not user_id:
            return []
        try:
            raw_items = await self._client.lrange(history_key(user_id), 0, -1)
        except (RedisError, OSError) as exc:
            self.logger.error("Error fetching chat history for user %s: %s", user_id, exc)
            return []
        history: list[dict[str, Any]] = []
        for raw in raw_items:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            try:
                parsed = json.loads(raw)
            except (TypeError, ValueError):
                self.logger.warning("Skipping corrupt chat history entry for user %s.", user_id)
                continue
            if isinstance(parsed, dict):
                history.append(parsed)
        return history

    async def delete_user_chat_history(self, user_id: str) -> bool:
        if self._client is None or not user_id:
            return False
        try:
            await self._client.delete(history_key(user_id))
        except (RedisError, OSError) as exc:
            self.logger.error("Error deleting chat history for user %s: %s", user_id, exc)
            return False
        self.logger.info("Deleted chat history for user %s.", user_id)
        return True

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        closer = getattr(client, "aclose", None) or getattr(client, "close", None)
        if closer is None:
            return
        try:
            await closer()
        except (RedisError, OSError) as exc:
            self.logger.debug("Error closing Redis client: %s", exc)


__all__ = ["ChatHistoryStore", "history_key", "HISTORY_KEY_PREFIX"]
