"""Prompt assembly for discussion turns."""

from collections.abc import Sequence

from config.config_loader import PromptsConfig
from boardroom.models import Message, Role

_EXCERPT_CHARS = 100


def system_prompt(prompts: PromptsConfig, role: Role, recent_speakers: Sequence[str], focus: str) -> str:
    return prompts.system.format(
        persona=role.persona,
        recent_speakers=", ".join(recent_speakers) or "none yet",
        focus=focus,
    )


def follow_up_prompt(
    prompts: PromptsConfig,
    last_message: Message | None,
    round_index: int,
    natural: bool,
    topic: str,
) -> str:
    """Prompt for the round after ``round_index`` (0-based) when nobody interjected."""
    if natural and prompts.reaction_phrases:
        return prompts.reaction_phrases[round_index % len(prompts.reaction_phrases)]
    if last_message is None:
        return topic
    return prompts.follow_up.format(excerpt=last_message.text[:_EXCERPT_CHARS])


def interjection_prompt(prompts: PromptsConfig, interjection: Message, topic: str) -> str:
    return prompts.interjection.format(text=interjection.text, topic=topic)
