"""Abstract base for all reasoning providers."""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from config.config_loader import ModelConfig, PromptsConfig
from expert_panel.context import RequestContext, render_expert_prompt
from expert_panel.errors import ExpertInvocationError, ExpertTimeout
from expert_panel.models import ExpertDescriptor

_CONFIDENCE_RE = re.compile(
    r"^[ \t*_]*confidence[ \t*_]*[:=][ \t*_]*([0-9]*\.?[0-9]+)[ \t]*(%?)[ \t*_.]*$",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass(frozen=True)
class ProviderReply:
    text: str
    confidence: float


def parse_reply(source: str, raw: str) -> ProviderReply:
    """Split raw model output into answer text and its trailing CONFIDENCE line.

    Raises:
        ExpertInvocationError: If the confidence line is missing or out of
            range, or no answer text remains.
    """
    matches = list(_CONFIDENCE_RE.finditer(raw or ""))
    if not matches:
        raise ExpertInvocationError(source, "Malformed output: no CONFIDENCE line")

    last = matches[-1]
    value = float(last.group(1))
    if last.group(2) == "%":
        value /= 100.0
    if not 0.0 <= value <= 1.0:
        raise ExpertInvocationError(source, f"Malformed output: confidence {value} outside [0, 1]")

    text = (raw[: last.start()] + raw[last.end():]).strip()
    if not text:
        raise ExpertInvocationError(source, "Malformed output: empty answer")

    return ProviderReply(text=text, confidence=value)


class ReasoningProvider(ABC):
    """Executes one expert's analysis against a model backend."""

    def __init__(self, config: ModelConfig, prompts: PromptsConfig) -> None:
        self._config = config
        self._prompts = prompts

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def ping_prompt(self) -> str:
        return self._prompts.ping

    @abstractmethod
    async def complete(self, prompt: str, timeout_sec: float) -> str:
        """Send one prompt and return the raw text.

        Raises:
            ExpertTimeout: If the call exceeds timeout_sec.
            ExpertInvocationError: On API failure or empty output.
        """
        ...

    async def invoke(
        self,
        expert: ExpertDescriptor,
        context: RequestContext,
        deadline: float,
    ) -> ProviderReply:
        """Run one expert against the shared context.

        Args:
            expert: The expert whose persona frames the prompt.
            context: Read-only request context shared by the panel.
            deadline: Absolute event-loop time by which the reply is due.

        Returns:
            ProviderReply with answer text and self-reported confidence.

        Raises:
            ExpertTimeout: If the deadline has passed or is exceeded.
            ExpertInvocationError: On API failure or malformed output.
        """
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ExpertTimeout(expert.id, 0.0)

        prompt = render_expert_prompt(self._prompts.expert, expert, context)
        raw = await self.complete(prompt, min(remaining, float(self._config.timeout_sec)))
        return parse_reply(expert.id, raw)
