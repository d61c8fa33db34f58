"""Gemini provider using google-genai SDK with native async streaming."""

import logging
import os
from collections.abc import AsyncIterator

from google import genai
from google.genai import types as genai_types

from config.config_loader import ProviderConfig
from boardroom.providers.base import AIProvider, ProviderError, TokenUsage

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    async def _stream_fragments(
        self, model: str, system_prompt: str, user_text: str
    ) -> AsyncIterator[str | TokenUsage]:
        usage = None
        async for chunk in await self._client.aio.models.generate_content_stream(
            model=model,
            contents=user_text,
            config=genai_types.GenerateContentConfig(
                system_instruction=system_prompt,
                max_output_tokens=self._config.max_tokens,
            ),
        ):
            if chunk.text:
                yield chunk.text
            if chunk.usage_metadata:
                usage = chunk.usage_metadata

        # Usage metadata is cumulative; only the last report counts.
        if usage and usage.prompt_token_count is not None:
            output_tokens = usage.candidates_token_count or 0
            logger.info("Gemini %s: %d in / %d out tokens", model, usage.prompt_token_count, output_tokens)
            yield TokenUsage(usage.prompt_token_count, output_tokens)
