"""OpenAI provider using openai SDK with native async.

Also serves OpenAI-compatible APIs (xAI Grok, DeepSeek) through base_url.
"""

import asyncio
import logging
import os
import time

from openai import AsyncOpenAI

from config.config_loader import ModelConfig, PromptsConfig
from expert_panel.errors import ExpertInvocationError, ExpertTimeout
from expert_panel.providers.base import ReasoningProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(ReasoningProvider):
    """OpenAI (or OpenAI-compatible) chat completions provider."""

    def __init__(self, config: ModelConfig, prompts: PromptsConfig) -> None:
        super().__init__(config, prompts)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ExpertInvocationError(config.name, f"Missing API key: {config.api_key_env}")
        if config.base_url:
            self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        else:
            self._client = AsyncOpenAI(api_key=api_key)

    async def complete(self, prompt: str, timeout_sec: float) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._config.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=self._config.max_tokens,
                ),
                timeout=timeout_sec,
            )
        except TimeoutError as exc:
            raise ExpertTimeout(self._config.name, timeout_sec) from exc
        except Exception as exc:
            raise ExpertInvocationError(self._config.name, f"API call failed: {exc}") from exc

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ExpertInvocationError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info(
            "%s call: %.2fs, %s tokens",
            self._config.name,
            time.monotonic() - start,
            token_count,
        )
        return choice.message.content
