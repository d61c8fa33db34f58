"""OpenAI provider using openai SDK with native async streaming."""

import logging
import os
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from boardroom.providers.base import AIProvider, ProviderError, TokenUsage

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = self._make_client(api_key)

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key)

    async def _stream_fragments(
        self, model: str, system_prompt: str, user_text: str
    ) -> AsyncIterator[str | TokenUsage]:
        stream = await self._client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_text},
            ],
            max_tokens=self._config.max_tokens,
            temperature=0.7,
            stream=True,
            stream_options={"include_usage": True},
        )
        async for chunk in stream:
            if chunk.choices:
                content = chunk.choices[0].delta.content
                if content:
                    yield content
            if chunk.usage:
                logger.info(
                    "%s %s: %d in / %d out tokens",
                    self.name(), model, chunk.usage.prompt_tokens, chunk.usage.completion_tokens,
                )
                yield TokenUsage(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)
