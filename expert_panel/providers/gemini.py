"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig, PromptsConfig
from expert_panel.errors import ExpertInvocationError, ExpertTimeout
from expert_panel.providers.base import ReasoningProvider

logger = logging.getLogger(__name__)


class GeminiProvider(ReasoningProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig, prompts: PromptsConfig) -> None:
        super().__init__(config, prompts)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ExpertInvocationError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    async def complete(self, prompt: str, timeout_sec: float) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=prompt,
                    config=genai_types.GenerateContentConfig(
                        max_output_tokens=self._config.max_tokens,
                    ),
                ),
                timeout=timeout_sec,
            )
        except TimeoutError as exc:
            raise ExpertTimeout(self._config.name, timeout_sec) from exc
        except Exception as exc:
            raise ExpertInvocationError(self._config.name, f"API call failed: {exc}") from exc

        if not response.text:
            raise ExpertInvocationError(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("Gemini call: %.2fs, %s tokens", time.monotonic() - start, token_count)
        return response.text
