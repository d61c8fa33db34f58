"""Closing summary: hand the whole transcript to one participant and append its summary."""

import logging
from collections.abc import Sequence

from boardroom.models import Message, Participant
from boardroom.orchestrator import DiscussionOrchestrator

logger = logging.getLogger(__name__)


def format_transcript(messages: Sequence[Message]) -> str:
    """Format every message as ``**Author**: text`` blocks for summarization."""
    parts = []
    for message in messages:
        label = message.author if message.model is None else f"{message.author} ({message.model})"
        parts.append(f"**{label}**\n{message.text}")
    return "\n\n".join(parts)


def pick_summarizer(
    participants: Sequence[Participant],
    preferred: str | None = None,
) -> Participant | None:
    """The configured summarizer if it is registered, else the first participant."""
    if not participants:
        return None
    if preferred:
        for participant in participants:
            if participant.id == preferred:
                return participant
        logger.info("Summarizer %s not available, using %s", preferred, participants[0].id)
    return participants[0]


async def summarize(
    orchestrator: DiscussionOrchestrator,
    summarizer: Participant,
    summary_prompt: str | None = None,
) -> Message | None:
    """Ask ``summarizer`` to summarize the full transcript.

    ``summary_prompt`` defaults to the configured summary prompt.

    The transcript goes in the prompt rather than the context window, so
    the summary covers the whole discussion and not only its recent tail.
    Returns the appended summary message, or None when the budget refused
    the call, the provider failed, or the reply was empty.
    """
    messages = orchestrator.workspace.messages
    if not messages:
        logger.info("Nothing to summarize")
        return None

    summary_prompt = summary_prompt or orchestrator.config.prompts.summary
    prompt = f"{summary_prompt}\n\n---\n\n{format_transcript(messages)}"
    logger.info("Summarizing %d messages via %s", len(messages), summarizer.id)
    message = await orchestrator.consult(summarizer, prompt, context=())
    if message is not None:
        orchestrator.workspace.pin(message.id)
    return message
