"""Anthropic Claude provider using anthropic SDK with native async streaming."""

import logging
import os
from collections.abc import AsyncIterator

import anthropic as anthropic_sdk

from config.config_loader import ProviderConfig
from boardroom.providers.base import AIProvider, ProviderError, TokenUsage

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    async def _stream_fragments(
        self, model: str, system_prompt: str, user_text: str
    ) -> AsyncIterator[str | TokenUsage]:
        async with self._client.messages.stream(
            model=model,
            max_tokens=self._config.max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_text}],
        ) as stream:
            async for text in stream.text_stream:
                yield text
            final = await stream.get_final_message()

        if final.usage:
            logger.info(
                "Anthropic %s: %d in / %d out tokens",
                model, final.usage.input_tokens, final.usage.output_tokens,
            )
            yield TokenUsage(final.usage.input_tokens, final.usage.output_tokens)
