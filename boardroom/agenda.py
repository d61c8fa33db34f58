"""Agenda files (markdown with optional YAML frontmatter) and template lookup."""

import logging
from pathlib import Path

import frontmatter

from config.config_loader import AppConfig
from boardroom.models import DiscussionRequest, DiscussionTemplate, ModerationOverrides, TemplateRound

logger = logging.getLogger(__name__)

_KNOWN_KEYS = {"rounds", "seek_consensus", "natural", "template", "max_speakers", "cooldown"}


def build_template(template_id: str, config: AppConfig) -> DiscussionTemplate:
    """Turn a configured template into a DiscussionTemplate.

    Raises:
        ValueError: If ``template_id`` is not configured.
    """
    try:
        template_cfg = config.templates[template_id]
    except KeyError:
        known = ", ".join(sorted(config.templates)) or "none"
        raise ValueError(f"Unknown template '{template_id}'. Available: {known}") from None
    rounds = tuple(
        TemplateRound(r.prompt, tuple(r.focus) if r.focus is not None else None)
        for r in template_cfg.rounds
    )
    return DiscussionTemplate(template_id, template_cfg.name, template_cfg.description, rounds)


def parse_agenda(file_path: Path) -> tuple[str, dict]:
    """Parse an agenda file.

    Returns:
        (topic, metadata): the body text and the frontmatter dict
        ({} when there is no frontmatter).
    """
    post = frontmatter.load(str(file_path))
    return post.content.strip(), dict(post.metadata)


def load_agenda(file_path: Path, config: AppConfig) -> DiscussionRequest:
    """Build a DiscussionRequest from an agenda file.

    Raises:
        ValueError: If the body is empty, a value has the wrong type or
            the named template does not exist.
    """
    topic, meta = parse_agenda(file_path)
    if not topic:
        raise ValueError(f"Agenda {file_path} has no topic text")
    unknown = set(meta) - _KNOWN_KEYS
    if unknown:
        logger.warning("Ignoring unknown agenda keys in %s: %s", file_path.name, ", ".join(sorted(unknown)))

    try:
        rounds = int(meta.get("rounds", config.defaults.rounds))
        max_speakers = meta.get("max_speakers")
        cooldown = meta.get("cooldown")
        overrides = ModerationOverrides(
            max_speakers_per_round=int(max_speakers) if max_speakers is not None else None,
            cooldown_sec=float(cooldown) if cooldown is not None else None,
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Agenda {file_path}: {exc}") from exc

    if not 1 <= rounds <= config.defaults.max_rounds:
        raise ValueError(f"Agenda {file_path}: rounds must be 1-{config.defaults.max_rounds}, got {rounds}")

    template_id = meta.get("template")
    template = build_template(str(template_id), config) if template_id else None
    return DiscussionRequest(
        topic=topic,
        rounds=rounds,
        seek_consensus=bool(meta.get("seek_consensus", False)),
        natural_conversation=bool(meta.get("natural", False)),
        template=template,
        moderation=overrides,
    )
