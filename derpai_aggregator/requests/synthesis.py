"""Synthesis of several provider answers into one.

When more than one provider answered, a "master" provider is asked to merge
the answers. Synthesis can never make a query fail: if no master can be
chosen or the master returns nothing usable, the first successful raw answer
(in provider iteration order) is the result.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Sequence

from ..core.timing_logger import timed
from ..core.types import SYNTHESIS_PRODUCER, FinalAnswer, ProviderOutcome

LOGGER = logging.getLogger(__name__)

SYNTHESIS_STAGE = "synthesis"

# (master_provider_id, synthesis_prompt) -> outcome of the master's stream
MasterRunner = Callable[[str, str], Awaitable[ProviderOutcome]]


def build_synthesis_prompt(original_prompt: str, responses: Sequence[str]) -> str:
    """Embed the original prompt and every answer, labelled by position."""
    labelled = "\n\n".join(
        f"--- Response {idx} ---\n{response}" for idx, response in enumerate(responses, start=1)
    )
    return (
        f'\nOriginal User Prompt: "{original_prompt}"\n\n'
        "Multiple AI models provided the following responses:\n"
        f"{labelled}\n\n"
        "Synthesize these responses into a single, coherent, accurate, and helpful final answer "
        "that directly addresses the original user prompt. Do not simply list the responses. "
        "Combine the best elements and information into one unified response. "
        "Return ONLY the final synthesized answer.\n"
        "Final Answer:\n"
    )


class SynthesisStep:
    """Pick a master provider and merge successful answers through it."""

    def __init__(
        self,
        *,
        preferred_provider: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.preferred_provider = (preferred_provider or "").strip() or None
        self.logger = logger or LOGGER

    def choose_master(
        self,
        configured: Sequence[str],
        successes: Sequence[ProviderOutcome],
    ) -> Optional[str]:
        """Return the provider that should synthesize, or None.

        Order: the preferred provider when it is configured and there is
        something to synthesize; then the first configured provider (in
        configuration order) that succeeded in this query; then the first
        configured provider at all.
        """
        if not configured:
            return None
        if self.preferred_provider in configured and successes:
            return self.preferred_provider
        succeeded = {outcome.provider_id for outcome in successes}
        for provider_id in configured:
            if provider_id in succeeded:
                return provider_id
        return configured[0]

    @timed
    async def synthesize(
        self,
        original_prompt: str,
        successes: Sequence[ProviderOutcome],
        *,
        configured: Sequence[str],
        run_master: MasterRunner,
        query_id: str,
    ) -> FinalAnswer:
        """Merge ``successes`` (at least one) into a single final answer."""
        if not successes:
            raise ValueError("synthesize() needs at least one successful outcome")
        first = successes[0]
        fallback = FinalAnswer(text=first.text, produced_by=first.provider_id, query_id=query_id)

        master = self.choose_master(configured, successes)
        if master is None:
            self.logger.error("Could not determine a master provider for synthesis.")
            return fallback

        self.logger.info("Using master provider %r for synthesis of %d answers.", master, len(successes))
        prompt = build_synthesis_prompt(original_prompt, [outcome.text for outcome in successes])
        outcome = await run_master(master, prompt)

        if not outcome.usable:
            self.logger.warning(
                "Master provider %r failed to synthesize (%s). Falling back to the first successful response.",
                master,
                outcome.error or "empty answer",
            )
            return fallback

        self.logger.info("Synthesized response generated by %s.", master)
        return FinalAnswer(text=outcome.text, produced_by=SYNTHESIS_PRODUCER, query_id=query_id)


__all__ = ["SynthesisStep", "build_synthesis_prompt", "SYNTHESIS_STAGE"]
