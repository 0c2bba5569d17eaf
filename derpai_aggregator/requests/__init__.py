"""Query orchestration: provider fan-out and answer synthesis."""

from .orchestrator import MultiProviderOrchestrator, QueryFactory
from .synthesis import SYNTHESIS_STAGE, SynthesisStep, build_synthesis_prompt

__all__ = [
    "MultiProviderOrchestrator",
    "QueryFactory",
    "SynthesisStep",
    "SYNTHESIS_STAGE",
    "build_synthesis_prompt",
]
