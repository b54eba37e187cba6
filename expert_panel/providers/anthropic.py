"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig, PromptsConfig
from expert_panel.errors import ExpertInvocationError, ExpertTimeout
from expert_panel.providers.base import ReasoningProvider

logger = logging.getLogger(__name__)


class AnthropicProvider(ReasoningProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig, prompts: PromptsConfig) -> None:
        super().__init__(config, prompts)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ExpertInvocationError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    async def complete(self, prompt: str, timeout_sec: float) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self._config.model,
                    max_tokens=self._config.max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=timeout_sec,
            )
        except TimeoutError as exc:
            raise ExpertTimeout(self._config.name, timeout_sec) from exc
        except Exception as exc:
            raise ExpertInvocationError(self._config.name, f"API call failed: {exc}") from exc

        text_blocks = [b.text for b in (response.content or []) if b.type == "text"]
        if not text_blocks:
            raise ExpertInvocationError(self._config.name, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info("Anthropic call: %.2fs, %s tokens", time.monotonic() - start, token_count)
        return "\n".join(text_blocks)
