"""Chat entry point for the DerpAI aggregation engine.

``ChatPipe`` is what a transport (socket.io gateway, CLI, tests) talks to:

- ``init_message`` builds the greeting sent when a client connects
- ``handle_message`` turns one chat message into exactly one ``chat`` reply,
  streaming provider output to the client while the answer is produced

A reply is always produced: blank questions, empty results and unexpected
failures are answered with fixed, friendly messages. Chat history is written
in the background after the reply has been emitted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator

from .core.config import Valves
from .core.errors import ChatReplyMessages
from .core.logging_system import QueryLogger
from .core.timing_logger import close_timing_file, configure_timing_file, enable_timing, timed, timing_mark
from .core.types import StreamingSession
from .core.utils import _preview
from .requests.orchestrator import MultiProviderOrchestrator
from .storage.persistence import ChatHistoryStore
from .streaming.event_emitter import CHAT, EmitSink, EventEmitterHandler

INIT = "init"

_PERSONA_PROMPT = """
**Persona:** You are DerpAI. Act as a helpful chat assistant, but with a distinctly silly and cheerful personality.
**Silly Style:** Inject silliness through:
* Occasional lighthearted puns (don't overdo it).
* Slightly goofy or unexpected (but still relevant) analogies or comparisons.
* A generally upbeat and perhaps slightly ditzy tone.
**Core Task:** Answer the user's question accurately.
**Constraint:** Be concise. Aim for 1-3 sentences unless the question genuinely requires more detail for a helpful answer. Prioritize helpfulness and clarity over silliness if there's a conflict.
**Refusal:** If you cannot answer or the question is inappropriate, politely decline with a touch of your silly personality (e.g., "Whoops! My circuits went a bit fizzy trying to answer that!" or "My programming manual seems to have misplaced that page!").
**User Question:** {question}
"""


def build_persona_prompt(question: str) -> str:
    return _PERSONA_PROMPT.format(question=question)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatMessage(BaseModel):
    """Incoming chat message. Both fields must be non-empty strings."""

    nickname: str = Field(min_length=1)
    message: str = Field(min_length=1)

    @field_validator("nickname")
    @classmethod
    def _nickname_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("nickname must not be blank")
        return value


class ChatMessageReply(BaseModel):
    nickname: str
    message: str
    time: int = Field(default_factory=_now_ms)


class ChatHistoryItem(BaseModel):
    question: ChatMessage
    answer: ChatMessageReply


class ChatPipe:
    """Answer chat messages by aggregating every configured AI provider."""

    @timed
    def __init__(
        self,
        valves: Optional[Valves] = None,
        *,
        orchestrator: Optional[MultiProviderOrchestrator] = None,
        history: Optional[ChatHistoryStore] = None,
    ) -> None:
        self.valves = valves or Valves()
        self.logger = QueryLogger.get_logger("derpai_aggregator")
        QueryLogger.set_max_lines(self.valves.QUERY_LOG_MAX_LINES)
        self._orchestrator = orchestrator
        self._history = history
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._redis_ready_task: Optional[asyncio.Task[bool]] = None
        self._closed = False

        if self.valves.ENABLE_TIMING_LOG:
            file_path = self.valves.TIMING_LOG_FILE
            if configure_timing_file(file_path):
                self.logger.info("Timing log enabled: %s", file_path)
            else:
                self.logger.warning("Failed to open timing log file: %s", file_path)

        self.logger.debug("ChatPipe initialized (bot=%s)", self.valves.BOT_NAME)

    @property
    def bot_name(self) -> str:
        return self.valves.BOT_NAME

    def _ensure_orchestrator(self) -> MultiProviderOrchestrator:
        """Build the orchestrator on first use so a bad config only fails queries."""
        if self._orchestrator is None:
            self._orchestrator = MultiProviderOrchestrator.from_valves(self.valves, logger=self.logger)
        return self._orchestrator

    def _ensure_history(self) -> ChatHistoryStore:
        if self._history is None:
            self._history = ChatHistoryStore(
                self.valves.REDIS_URL,
                max_items=self.valves.MAX_CHAT_MESSAGE_HISTORY,
                logger=self.logger,
            )
        return self._history

    def _maybe_start_redis(self) -> None:
        """Start the Redis readiness check once, in the background."""
        if self._redis_ready_task is not None or self._closed:
            return
        history = self._ensure_history()
        if not history.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._redis_ready_task = loop.create_task(history.wait_until_ready(), name="chat-history-ready")

    def init_message(self, display_name: str) -> dict[str, Any]:
        """Greeting payload for a freshly connected client."""
        reply = ChatMessageReply(
            nickname=self.bot_name,
            message=f"Hello {display_name}! How may I help you?",
        )
        return reply.model_dump()

    @timed
    async def handle_message(
        self,
        user_id: Optional[str],
        message: Union[ChatMessage, dict[str, Any]],
        emitter: Optional[EmitSink] = None,
        *,
        providers: Optional[Sequence[str]] = None,
    ) -> ChatMessageReply:
        """Answer one chat message.

        Emits the provider stream events for the query followed by exactly
        one ``chat`` event carrying the reply, which is also returned.
        """
        if not isinstance(message, ChatMessage):
            message = ChatMessage.model_validate(message)
        if user_id:
            self._maybe_start_redis()

        session = StreamingSession(
            prompt=build_persona_prompt(message.message),
            nickname=self.bot_name,
            system_context=self.valves.SYSTEM_CONTEXT,
            user_id=user_id,
            providers=providers,
        )
        handler = EventEmitterHandler(emitter, logger=self.logger)
        QueryLogger.cleanup()

        with QueryLogger.bind(session.query_id, user_id=user_id, level=self.valves.LOG_LEVEL):
            enable_timing(session.query_id, self.valves.ENABLE_TIMING_LOG)
            self.logger.info("Received message from %s: %s", user_id or message.nickname, _preview(message.message))
            try:
                answer = await self._get_answer(message.message, session, handler)
                reply = ChatMessageReply(nickname=self.bot_name, message=answer)
                self.logger.info("Sending answer (%d chars) for query %s", len(reply.message), session.query_id)
                payload = reply.model_dump()
                payload["queryId"] = session.query_id
                handler.emit_nowait(CHAT, payload)
            finally:
                await handler.aclose()
                enable_timing(session.query_id, False)
                QueryLogger.discard(session.query_id)

        if message.message.strip():
            self._schedule_history(user_id, message, reply)
        return reply

    async def _get_answer(
        self,
        question: str,
        session: StreamingSession,
        handler: EventEmitterHandler,
    ) -> str:
        if not question.strip():
            return ChatReplyMessages.EMPTY_QUESTION
        try:
            answer = await self._ensure_orchestrator().generate_final_answer(session, handler)
        except Exception:
            self.logger.error("Error getting answer for %r", _preview(question), exc_info=True)
            return ChatReplyMessages.INTERNAL_ERROR
        if answer is None or not answer.text:
            self.logger.warning("No answer was generated for the question: %s", _preview(question))
            return ChatReplyMessages.NO_ANSWER
        timing_mark(f"answer:{answer.produced_by}")
        return answer.text

    def _schedule_history(
        self,
        user_id: Optional[str],
        question: ChatMessage,
        answer: ChatMessageReply,
    ) -> None:
        if not user_id or self._closed:
            return
        history = self._ensure_history()
        if not history.enabled:
            return
        item = ChatHistoryItem(question=question, answer=answer).model_dump()
        task = asyncio.create_task(history.add_message_to_history(user_id, item), name="chat-history-append")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def get_history(self, user_id: str) -> list[dict[str, Any]]:
        return await self._ensure_history().get_user_chat_history(user_id)

    async def delete_history(self, user_id: str) -> bool:
        return await self._ensure_history().delete_user_chat_history(user_id)

    def query_logs(self, query_id: str) -> list[dict[str, Any]]:
        """Captured log events for a query that is still in flight."""
        return QueryLogger.snapshot(query_id)

    @timed
    async def close(self) -> None:
        """Wait for pending history writes, then release HTTP and Redis clients."""
        if self._closed:
            return
        self._closed = True
        if self._redis_ready_task is not None and not self._redis_ready_task.done():
            self._redis_ready_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._redis_ready_task
        self._redis_ready_task = None
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        if self._orchestrator is not None:
            await self._orchestrator.close()
        if self._history is not None:
            await self._history.close()
        if self.valves.ENABLE_TIMING_LOG:
            close_timing_file()


__all__ = [
    "ChatPipe",
    "ChatMessage",
    "ChatMessageReply",
    "ChatHistoryItem",
    "build_persona_prompt",
    "INIT",
]
