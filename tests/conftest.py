"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from config.config_loader import (
    AppConfig,
    BudgetConfig,
    DefaultsConfig,
    DiscussionConfig,
    ModelRate,
    ModerationConfig,
    ParticipantConfig,
    PromptsConfig,
    ProviderConfig,
    RoleConfig,
    TemplateConfig,
    TemplateRoundConfig,
)
from boardroom.models import Message, Participant
from boardroom.orchestrator import DiscussionOrchestrator
from boardroom.providers.base import AIProvider, TokenUsage


@dataclass
class Reply:
    """One scripted model reply."""

    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    delay: float = 0.0
    gate: asyncio.Event | None = None      # held before the first fragment
    started: asyncio.Event | None = None   # set as soon as the call begins


class ScriptedProvider(AIProvider):
    """Test double AIProvider.

    Replies are queued per model string. A queued str becomes a Reply, a
    queued exception is raised from the stream. An empty queue answers
    with a bland default line.
    """

    def __init__(self, name: str = "scripted", timeout_sec: int = 5) -> None:
        super().__init__(
            ProviderConfig(
                name=name,
                sdk="test",
                api_key_env="TEST_API_KEY",
                timeout_sec=timeout_sec,
                max_tokens=256,
            )
        )
        self.replies: dict[str, list] = {}
        self.calls: list[dict] = []

    def script(self, model: str, *replies) -> None:
        self.replies.setdefault(model, []).extend(replies)

    def models_called(self) -> list[str]:
        return [c["model"] for c in self.calls]

    async def _stream_fragments(
        self, model: str, system_prompt: str, user_text: str
    ) -> AsyncIterator[str | TokenUsage]:
        self.calls.append({"model": model, "system": system_prompt, "user": user_text})
        queue = self.replies.get(model)
        reply = queue.pop(0) if queue else Reply(f"{model} makes a fair point.")
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            reply = Reply(reply)
        if reply.started is not None:
            reply.started.set()
        if reply.gate is not None:
            await reply.gate.wait()
        if reply.delay:
            await asyncio.sleep(reply.delay)
        for index, word in enumerate(reply.text.split(" ")):
            yield word if index == 0 else " " + word
        if reply.input_tokens is not None:
            yield TokenUsage(reply.input_tokens, reply.output_tokens or 0)


async def wait_for(event: asyncio.Event, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        await event.wait()


def make_message(
    text: str,
    author: str = "Virtual CFO",
    role: str = "cfo",
    offset_sec: int = 0,
    message_id: str | None = None,
    responds_to: str | None = None,
) -> Message:
    return Message(
        id=message_id or f"m{offset_sec}",
        author=author,
        text=text,
        role=role,
        timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=offset_sec),
        responds_to=responds_to,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        system="{persona}\nRecent: {recent_speakers}\nFocus: {focus}",
        follow_up='Follow up on "{excerpt}..."',
        interjection='The user just interjected: "{text}". Continue on: {topic}',
        acknowledgment="Acknowledge {speaker}. ",
        summary="Summarize the discussion.",
        reaction_phrases=["Exactly, and... What's next?", "I disagree because... What's next?"],
    )


@pytest.fixture
def sample_budget_config() -> BudgetConfig:
    return BudgetConfig(
        session_cap_usd=100.0,
        default_rate=ModelRate(0.001, 0.002),
        pricing={"scripted": {}},
    )


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    sample_prompts_config: PromptsConfig,
    sample_budget_config: BudgetConfig,
) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(
            rounds=2,
            max_rounds=10,
            output_dir=tmp_path / "output",
            summarizer="p-cfo",
        ),
        providers={
            "scripted": ProviderConfig("scripted", "test", "TEST_API_KEY", 5, 256),
        },
        roles={
            "cfo": RoleConfig("Virtual CFO", "You are a CFO."),
            "vc": RoleConfig("VC Partner", "You are a skeptical VC."),
            "cto": RoleConfig("Technical Advisor", "You are a CTO."),
        },
        participants=[
            ParticipantConfig("p-cfo", "scripted", "model-a", "cfo"),
            ParticipantConfig("p-vc", "scripted", "model-b", "vc"),
            ParticipantConfig("p-cto", "scripted", "model-c", "cto"),
        ],
        moderation=ModerationConfig(max_speakers_per_round=3, cooldown_sec=0, require_acknowledgment=True),
        discussion=DiscussionConfig(consensus_threshold=7, silence_threshold=2, consensus_window=10),
        budget=sample_budget_config,
        prompts=sample_prompts_config,
        templates={
            "two-step": TemplateConfig(
                name="Two Step",
                description="CFO first, then everyone",
                rounds=[
                    TemplateRoundConfig("Check the numbers.", ["cfo"]),
                    TemplateRoundConfig("Agree on a plan.", None),
                ],
            )
        },
        available_providers={"scripted"},
    )


@pytest.fixture
def scripted_provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def participants() -> list[Participant]:
    return [
        Participant("p-cfo", "scripted", "model-a", "cfo"),
        Participant("p-vc", "scripted", "model-b", "vc"),
        Participant("p-cto", "scripted", "model-c", "cto"),
    ]


@pytest.fixture
def make_orchestrator(sample_app_config, scripted_provider, participants):
    """Factory so tests can tweak sample_app_config before construction."""

    def factory(**kwargs) -> DiscussionOrchestrator:
        return DiscussionOrchestrator(
            sample_app_config, {"scripted": scripted_provider}, participants, **kwargs
        )

    return factory
