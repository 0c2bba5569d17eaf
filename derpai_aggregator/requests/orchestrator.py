"""Multi-provider fan-out and final answer selection.

``MultiProviderOrchestrator`` owns one query end to end:

- starts one ``StreamingQuery`` per selected provider, concurrently, all
  sharing the query's emitter so chunks reach the client as they arrive
- waits for every branch to settle (timeouts are per branch; one slow or
  failing provider never cancels the others)
- returns nothing when no branch succeeded, the single answer when exactly
  one did, and a synthesized answer when several did
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import AsyncIterator, Callable, Mapping, Optional, Sequence, Union

import aiohttp

from ..api.gateway import ProviderAdapter
from ..core.config import DEFAULT_BOT_NAME, DEFAULT_QUERY_TIMEOUT_MS, ProviderConfig, Valves
from ..core.errors import ConfigurationError, StreamErrorMessages
from ..core.logging_system import QueryLogger
from ..core.timing_logger import timed
from ..core.types import FinalAnswer, ProviderOutcome, StreamingSession
from ..core.utils import _preview
from ..streaming.event_emitter import EmitSink, EventEmitterHandler
from ..streaming.streaming_core import StreamingQuery
from .synthesis import SYNTHESIS_STAGE, SynthesisStep

LOGGER = logging.getLogger(__name__)

QueryFactory = Callable[
    [ProviderAdapter, aiohttp.ClientSession, Optional[EventEmitterHandler]],
    StreamingQuery,
]


class MultiProviderOrchestrator:
    """Fan a prompt out to every configured provider and settle on one answer."""

    def __init__(
        self,
        providers: Mapping[str, ProviderConfig],
        *,
        master_provider: Optional[str] = None,
        timeout_ms: Optional[int] = DEFAULT_QUERY_TIMEOUT_MS,
        nickname: str = DEFAULT_BOT_NAME,
        system_context: str = "",
        http_session: Optional[aiohttp.ClientSession] = None,
        connect_timeout_seconds: float = 10.0,
        query_factory: Optional[QueryFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not providers:
            raise ConfigurationError("No AI providers are configured; set at least one provider API key.")
        self._providers: dict[str, ProviderConfig] = dict(providers)
        self.timeout_ms = timeout_ms
        self.nickname = nickname
        self.system_context = system_context
        self.connect_timeout_seconds = connect_timeout_seconds
        self._http_session = http_session
        self._query_factory = query_factory or self._default_query_factory
        self.logger = logger or LOGGER
        self.synthesis = SynthesisStep(preferred_provider=master_provider, logger=self.logger)

    @classmethod
    def from_valves(cls, valves: Valves, **kwargs) -> "MultiProviderOrchestrator":
        """Build an orchestrator from global configuration."""
        kwargs.setdefault("master_provider", valves.MASTER_PROVIDER)
        kwargs.setdefault("timeout_ms", valves.AI_REQ_TIMEOUT_MS)
        kwargs.setdefault("nickname", valves.BOT_NAME)
        kwargs.setdefault("system_context", valves.SYSTEM_CONTEXT)
        kwargs.setdefault("connect_timeout_seconds", float(valves.HTTP_CONNECT_TIMEOUT_SECONDS))
        return cls(valves.provider_configs(), **kwargs)

    @property
    def provider_ids(self) -> list[str]:
        """Configured provider ids in iteration order."""
        return list(self._providers)

    def select_providers(self, requested: Optional[Sequence[str]] = None) -> list[ProviderConfig]:
        """Return the providers to query, honouring an optional requested subset.

        Unknown ids are logged and ignored. A subset that names no configured
        provider falls back to every configured provider.
        """
        if not requested:
            return list(self._providers.values())
        wanted: list[ProviderConfig] = []
        for provider_id in requested:
            config = self._providers.get(provider_id)
            if config is None:
                self.logger.warning("Ignoring unknown provider %r in request.", provider_id)
                continue
            if config not in wanted:
                wanted.append(config)
        if not wanted:
            self.logger.warning("None of the requested providers are configured; querying all providers.")
            return list(self._providers.values())
        return wanted

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    @timed
    async def generate_final_answer(
        self,
        session: StreamingSession,
        emitter: Union[EventEmitterHandler, EmitSink, None] = None,
    ) -> Optional[FinalAnswer]:
        """Run one query to completion and return its final answer, or None.

        All stream events for the query have been handed to the sink by the
        time this returns.
        """
        handler, owned = self._coerce_emitter(emitter)
        with QueryLogger.bind(
            session.query_id,
            user_id=session.user_id or QueryLogger.user_id.get(),
            level=QueryLogger.log_level.get(),
        ):
            try:
                async with self._http_scope() as http:
                    return await self._answer(session, handler, http)
            finally:
                if handler is not None:
                    if owned:
                        await handler.aclose()
                    else:
                        await handler.flush()

    async def generate_multi_provider_response(
        self,
        prompt: str,
        *,
        emitter: Union[EventEmitterHandler, EmitSink, None] = None,
        nickname: Optional[str] = None,
        providers: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        """Convenience wrapper returning only the final text (None when nothing succeeded)."""
        session = StreamingSession(
            prompt=prompt,
            nickname=nickname or self.nickname,
            system_context=self.system_context,
            user_id=user_id,
            providers=providers,
        )
        answer = await self.generate_final_answer(session, emitter)
        return answer.text if answer is not None else None

    async def close(self) -> None:
        """Close an injected HTTP session. Per-query sessions close themselves."""
        if self._http_session is not None and not self._http_session.closed:
            await self._http_session.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _answer(
        self,
        session: StreamingSession,
        emitter: Optional[EventEmitterHandler],
        http: aiohttp.ClientSession,
    ) -> Optional[FinalAnswer]:
        selected = self.select_providers(session.providers)
        self.logger.info(
            "Query %s: fanning out to %s with prompt: %s",
            session.query_id,
            ", ".join(config.provider_id for config in selected),
            _preview(session.prompt),
        )
        outcomes = await self._fan_out(selected, session, emitter, http)

        successes = [outcome for outcome in outcomes if outcome.usable]
        for outcome in outcomes:
            if not outcome.usable:
                self.logger.warning(
                    "Provider %s did not produce an answer: %s",
                    outcome.provider_id,
                    outcome.error or "empty answer",
                )

        if not successes:
            self.logger.error("No successful responses received from any provider.")
            return None

        self.logger.info("Received %d successful responses.", len(successes))
        if len(successes) == 1:
            only = successes[0]
            self.logger.info("Only one successful response from %s. Returning it directly.", only.provider_id)
            return FinalAnswer(text=only.text, produced_by=only.provider_id, query_id=session.query_id)

        async def run_master(provider_id: str, prompt: str) -> ProviderOutcome:
            config = self._providers[provider_id]
            try:
                return await self._run_provider(config, prompt, session, emitter, http, stage=SYNTHESIS_STAGE)
            except Exception:
                self.logger.error("Synthesis via %s failed outside its stream.", provider_id, exc_info=True)
                return ProviderOutcome.failure(provider_id, StreamErrorMessages.UNEXPECTED)

        return await self.synthesis.synthesize(
            session.prompt,
            successes,
            configured=self.provider_ids,
            run_master=run_master,
            query_id=session.query_id,
        )

    async def _fan_out(
        self,
        selected: Sequence[ProviderConfig],
        session: StreamingSession,
        emitter: Optional[EventEmitterHandler],
        http: aiohttp.ClientSession,
    ) -> list[ProviderOutcome]:
        results = await asyncio.gather(
            *(self._run_provider(config, session.prompt, session, emitter, http) for config in selected),
            return_exceptions=True,
        )
        outcomes: list[ProviderOutcome] = []
        for config, result in zip(selected, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self.logger.error(
                    "Provider %s failed outside its stream: %s",
                    config.provider_id,
                    result,
                    exc_info=(type(result), result, result.__traceback__),
                )
                outcomes.append(ProviderOutcome.failure(config.provider_id, StreamErrorMessages.UNEXPECTED))
                continue
            outcomes.append(result)
        return outcomes

    async def _run_provider(
        self,
        config: ProviderConfig,
        prompt: str,
        session: StreamingSession,
        emitter: Optional[EventEmitterHandler],
        http: aiohttp.ClientSession,
        *,
        stage: Optional[str] = None,
    ) -> ProviderOutcome:
        adapter = ProviderAdapter.for_query(
            config,
            query_id=session.query_id,
            nickname=session.nickname,
            context=session.system_context,
            emitter=emitter,
            stage=stage,
        )
        query = self._query_factory(adapter, http, emitter)
        return await query.run(prompt, self.timeout_ms)

    def _default_query_factory(
        self,
        adapter: ProviderAdapter,
        http: aiohttp.ClientSession,
        emitter: Optional[EventEmitterHandler],
    ) -> StreamingQuery:
        return StreamingQuery(adapter, http, emitter=emitter, logger=self.logger)

    def _coerce_emitter(
        self,
        emitter: Union[EventEmitterHandler, EmitSink, None],
    ) -> tuple[Optional[EventEmitterHandler], bool]:
        if emitter is None:
            return None, False
        if isinstance(emitter, EventEmitterHandler):
            return emitter, False
        return EventEmitterHandler(emitter, logger=self.logger), True

    @contextlib.asynccontextmanager
    async def _http_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._http_session is not None:
            yield self._http_session
            return
        http = self._create_http_session()
        try:
            yield http
        finally:
            await http.close()

    def _create_http_session(self) -> aiohttp.ClientSession:
        """Return a fresh ClientSession for one query.

        The total deadline is enforced per provider by ``StreamingQuery``, so
        only the connect phase is bounded here.
        """
        connector = aiohttp.TCPConnector(
            limit=50,
            limit_per_host=10,
            keepalive_timeout=75,
            ttl_dns_cache=300,
        )
        timeout = aiohttp.ClientTimeout(total=None, connect=float(self.connect_timeout_seconds))
        self.logger.debug("HTTP timeouts: connect=%ss total=per-provider", self.connect_timeout_seconds)
        return aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            json_serialize=json.dumps,
        )


__all__ = ["MultiProviderOrchestrator", "QueryFactory"]
