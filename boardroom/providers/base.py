"""Abstract base for all AI model providers, plus the streaming reply wrapper."""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from config.config_loader import ProviderConfig
from boardroom.errors import BoardroomError
from boardroom.models import Message, Participant, ProviderReply

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


class ProviderError(BoardroomError):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        self.reason = message
        super().__init__(f"[{provider_name}] {message}")


@dataclass(frozen=True)
class TokenUsage:
    """Usage report yielded by an adapter once the SDK provides one."""

    input_tokens: int
    output_tokens: int


def render_context(context: Sequence[Message], prompt: str) -> str:
    """Flatten the transcript window and the turn instruction into one user turn."""
    if not context:
        return prompt
    transcript = "\n\n".join(f"{m.author}: {m.text}" for m in context)
    return f"Discussion so far:\n\n{transcript}\n\n---\n\n{prompt}"


class ResponseStream:
    """Async iterator over text fragments of one model reply.

    Fragments arrive in order. Once the iterator is exhausted, ``reply()``
    returns the assembled text and token usage; ``collect()`` drains any
    remaining fragments first. Any failure while reading surfaces as
    ``ProviderError``; a gap longer than ``idle_timeout`` between fragments
    counts as a failure.
    """

    def __init__(
        self,
        provider_name: str,
        fragments: AsyncIterator[str | TokenUsage],
        prompt_text: str,
        idle_timeout: float,
    ) -> None:
        self._provider_name = provider_name
        self._fragments = fragments
        self._prompt_text = prompt_text
        self._idle_timeout = idle_timeout
        self._parts: list[str] = []
        self._usage: TokenUsage | None = None
        self._done = False

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> str:
        while True:
            if self._done:
                raise StopAsyncIteration
            try:
                async with asyncio.timeout(self._idle_timeout):
                    item = await anext(self._fragments)
            except StopAsyncIteration:
                self._done = True
                raise
            except TimeoutError as exc:
                self._done = True
                raise ProviderError(
                    self._provider_name, f"Stream idle for more than {self._idle_timeout}s"
                ) from exc
            except ProviderError:
                self._done = True
                raise
            except Exception as exc:
                self._done = True
                raise ProviderError(self._provider_name, f"Stream failed: {exc}") from exc

            if isinstance(item, TokenUsage):
                self._usage = item
                continue
            if not item:
                continue
            self._parts.append(item)
            return item

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def reply(self) -> ProviderReply:
        text = self.text
        if self._usage is not None:
            return ProviderReply(text, self._usage.input_tokens, self._usage.output_tokens)
        return ProviderReply(text, estimate_tokens(self._prompt_text), estimate_tokens(text))

    async def collect(self) -> ProviderReply:
        async for _ in self:
            pass
        return self.reply()

    async def aclose(self) -> None:
        self._done = True
        closer = getattr(self._fragments, "aclose", None)
        if closer is not None:
            await closer()


class AIProvider(ABC):
    """Abstract base for all AI model providers.

    One instance serves every participant bound to the same provider
    config; the model comes from the participant.
    """

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    def name(self) -> str:
        """Return the short provider name (e.g. 'anthropic', 'gemini')."""
        return self._config.name

    @property
    def timeout_sec(self) -> float:
        return float(self._config.timeout_sec)

    @property
    def max_tokens(self) -> int:
        return self._config.max_tokens

    def stream(
        self,
        participant: Participant,
        system_prompt: str,
        context: Sequence[Message],
        prompt: str,
    ) -> ResponseStream:
        """Start a streamed reply for ``participant``.

        No network traffic happens until the returned stream is iterated.
        """
        user_text = render_context(context, prompt)
        logger.debug(
            "%s -> %s (%s): %d context messages, %d chars",
            self.name(), participant.id, participant.model, len(context), len(user_text),
        )
        fragments = self._stream_fragments(participant.model, system_prompt, user_text)
        return ResponseStream(
            self.name(),
            fragments,
            prompt_text=system_prompt + user_text,
            idle_timeout=self.timeout_sec,
        )

    @abstractmethod
    def _stream_fragments(
        self, model: str, system_prompt: str, user_text: str
    ) -> AsyncIterator[str | TokenUsage]:
        """Yield text fragments, and optionally one TokenUsage, for a single request.

        Implementations are async generators. They may raise any exception;
        ResponseStream converts it into ProviderError.
        """
        ...
