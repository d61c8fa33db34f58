"""Tests for boardroom/synthesis.py."""

import asyncio
import dataclasses

import pytest

from boardroom.errors import RunAlreadyActive
from boardroom.models import DiscussionRequest, Participant
from boardroom.synthesis import format_transcript, pick_summarizer, summarize
from tests.conftest import Reply, make_message, wait_for


def test_format_transcript_labels_models():
    user = make_message("What about pricing?", author="User", role="user", offset_sec=0)
    cfo = make_message("Charge more.", offset_sec=1)
    cfo = dataclasses.replace(cfo, model="claude-3-haiku")

    transcript = format_transcript([user, cfo])

    assert "**User**\nWhat about pricing?" in transcript
    assert "**Virtual CFO (claude-3-haiku)**\nCharge more." in transcript


def test_pick_summarizer_prefers_configured(participants):
    assert pick_summarizer(participants, "p-vc").id == "p-vc"


def test_pick_summarizer_falls_back_to_first(participants):
    assert pick_summarizer(participants, "gone").id == "p-cfo"
    assert pick_summarizer([], "p-vc") is None


async def test_summarize_covers_whole_transcript(make_orchestrator, scripted_provider, participants):
    orchestrator = make_orchestrator()
    await orchestrator.run(DiscussionRequest(topic="Runway", rounds=1))
    scripted_provider.script("model-a", "1) Cut burn 2) Hire later")

    summary = await summarize(orchestrator, participants[0])

    assert summary is not None
    assert summary.text == "1) Cut burn 2) Hire later"
    assert orchestrator.workspace.is_pinned(summary.id)
    prompt = scripted_provider.calls[-1]["user"]
    assert prompt.startswith("Summarize the discussion.")
    assert "model-c makes a fair point." in prompt
    assert "Discussion so far" not in prompt


async def test_summarize_empty_transcript_is_noop(make_orchestrator, scripted_provider, participants):
    orchestrator = make_orchestrator()

    assert await summarize(orchestrator, participants[0]) is None
    assert scripted_provider.calls == []


async def test_summarize_respects_budget(make_orchestrator, scripted_provider, participants):
    orchestrator = make_orchestrator()
    orchestrator.workspace.post("User", "Anything?", "user")
    orchestrator.budget.kill_switch("done for today")

    assert await summarize(orchestrator, participants[0]) is None
    assert scripted_provider.calls == []


async def test_consult_rejects_unknown_participant(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(ValueError):
        await orchestrator.consult(Participant("x", "nowhere", "m", "cfo"), "hi")


async def test_consult_refused_during_run(make_orchestrator, scripted_provider, participants):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Busy.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Runway", rounds=1)))
    await wait_for(started)
    with pytest.raises(RunAlreadyActive):
        await orchestrator.consult(participants[1], "Summarize.")
    gate.set()
    await task
