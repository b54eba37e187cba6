"""Deterministic in-process provider for offline runs and demos.

Answers are derived from the expert role and a hash of the prompt, so the
same request always produces the same text, confidence and latency.
"""

import asyncio
import hashlib
import logging

from config.config_loader import ModelConfig, PromptsConfig
from expert_panel.context import RequestContext
from expert_panel.models import ExpertDescriptor
from expert_panel.providers.base import ProviderReply, ReasoningProvider

logger = logging.getLogger(__name__)

_SHARED_TESTS = "Write tests alongside the change"

# role -> (lead-in, recommendations, confidence floor, confidence spread)
_ROLES: dict[str, tuple[str, tuple[str, ...], float, float]] = {
    "researcher": (
        "Research analysis",
        ("Document current best practices before changing code", "Identify prior art and relevant sources",
         "Run a short feasibility analysis"),
        0.85, 0.10,
    ),
    "coder": (
        "Implementation approach",
        ("Use a modular architecture with clear interfaces", "Keep the implementation type-safe", _SHARED_TESTS),
        0.88, 0.10,
    ),
    "analyst": (
        "Analysis insights",
        ("Identify risk factors before rollout", "Measure performance implications before and after the change",
         "Look for repeated patterns in the affected code"),
        0.82, 0.15,
    ),
    "optimizer": (
        "Optimization recommendations",
        ("Profile to find performance bottlenecks", "Reduce resource usage in hot paths",
         "Automate repetitive workflow steps"),
        0.80, 0.15,
    ),
    "coordinator": (
        "Coordination strategy",
        ("Break the task into small reviewable steps", "Plan the workflow and name an owner per step", _SHARED_TESTS),
        0.90, 0.05,
    ),
    "validator": (
        "Validation assessment",
        ("Define acceptance criteria and quality metrics", _SHARED_TESTS, "Review compliance requirements"),
        0.87, 0.10,
    ),
}


def _fraction(*parts: str) -> float:
    """Stable value in [0, 1) derived from the given strings."""
    digest = hashlib.sha256("\0".join(parts).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / 2**64


class SimulatedProvider(ReasoningProvider):
    """Key-free provider producing role-specific canned analysis."""

    def __init__(self, config: ModelConfig, prompts: PromptsConfig) -> None:
        super().__init__(config, prompts)
        self._min_latency = float(config.options.get("min_latency_ms", 50)) / 1000.0
        self._max_latency = float(config.options.get("max_latency_ms", 150)) / 1000.0

    async def complete(self, prompt: str, timeout_sec: float) -> str:
        return "OK"

    def compose(self, expert: ExpertDescriptor, prompt: str) -> ProviderReply:
        lead, recommendations, floor, spread = _ROLES.get(
            expert.id,
            (
                expert.display_name,
                tuple(f"Apply {cap.replace('_', ' ')} to this request" for cap in sorted(expert.capabilities)[:3]),
                0.75, 0.10,
            ),
        )
        excerpt = prompt if len(prompt) <= 80 else prompt[:77] + "..."
        lines = [f'{lead} for "{excerpt}":']
        lines += [f"- {rec}." for rec in recommendations]
        confidence = round(floor + spread * _fraction(expert.id, prompt, "confidence"), 3)
        return ProviderReply(text="\n".join(lines), confidence=min(confidence, 1.0))

    async def invoke(
        self,
        expert: ExpertDescriptor,
        context: RequestContext,
        deadline: float,
    ) -> ProviderReply:
        span = max(0.0, self._max_latency - self._min_latency)
        latency = self._min_latency + span * _fraction(expert.id, context.prompt, "latency")
        await asyncio.sleep(latency)
        logger.debug("Simulated %s answered in %.0fms", expert.id, latency * 1000)
        return self.compose(expert, context.prompt)
