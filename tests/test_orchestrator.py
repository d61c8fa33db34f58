"""Tests for boardroom/orchestrator.py: rounds, early termination, run control, fan-out."""

import asyncio

import pytest

from config.config_loader import ModelRate
from boardroom.agenda import build_template
from boardroom.errors import RunAlreadyActive
from boardroom.models import (
    CitationCheck,
    DiscussionRequest,
    EventKind,
    ModerationOverrides,
    Participant,
    RoundEnd,
    RunState,
    StopReason,
)
from tests.conftest import Reply, wait_for


class RisingScorer:
    """Agreement climbs to 7 once the transcript has ``at`` messages."""

    def __init__(self, at: int) -> None:
        self.at = at

    def score(self, messages) -> float:
        return 7.0 if len(messages) >= self.at else 5.0


class FakeCitations:
    async def check(self, text: str) -> list[CitationCheck]:
        return [CitationCheck(claim=text[:20], has_citation=False)]


def _participant_messages(orchestrator):
    return [m for m in orchestrator.workspace.messages if m.role != "user"]


async def test_runs_every_round_when_nothing_stops_it(make_orchestrator, scripted_provider):
    orchestrator = make_orchestrator()
    request = DiscussionRequest(topic="Should we raise now?", rounds=3, moderation=ModerationOverrides(max_speakers_per_round=2))

    outcome = await orchestrator.run(request)

    assert outcome.reason is StopReason.ROUNDS_EXHAUSTED
    assert outcome.rounds_completed == 3
    assert orchestrator.state is RunState.COMPLETED
    assert scripted_provider.models_called() == ["model-a", "model-b"] * 3
    messages = _participant_messages(orchestrator)
    assert len(messages) == 6
    assert messages[0].responds_to is None
    for previous, current in zip(messages, messages[1:]):
        assert current.responds_to == previous.id


async def test_budget_cap_blocks_remaining_speakers(make_orchestrator, sample_app_config, scripted_provider):
    sample_app_config.budget.session_cap_usd = 1.0
    sample_app_config.budget.pricing["scripted"] = {
        model: ModelRate(0.5, 0.0) for model in ("model-a", "model-b", "model-c")
    }
    scripted_provider.script("model-a", Reply("CFO view.", input_tokens=1000, output_tokens=0))
    scripted_provider.script("model-b", Reply("VC view.", input_tokens=1000, output_tokens=0))
    orchestrator = make_orchestrator()

    outcome = await orchestrator.run(DiscussionRequest(topic="Burn rate", rounds=3))

    assert outcome.reason is StopReason.BUDGET_EXCEEDED
    assert outcome.rounds_completed == 1
    assert outcome.rounds[0].ended_early is RoundEnd.BUDGET_BLOCKED
    assert [m.author for m in outcome.rounds[0].messages] == ["Virtual CFO", "VC Partner"]
    assert "model-c" not in scripted_provider.models_called()
    assert orchestrator.budget.spent_usd == pytest.approx(1.0)
    assert orchestrator.state is RunState.STOPPED


async def test_silent_rounds_stall_the_discussion(make_orchestrator, scripted_provider):
    for model in ("model-a", "model-b", "model-c"):
        scripted_provider.script(model, *[""] * 5)
    orchestrator = make_orchestrator()

    outcome = await orchestrator.run(DiscussionRequest(topic="Anything new?", rounds=5))

    assert outcome.reason is StopReason.STALLED
    assert outcome.rounds_completed == 2
    assert len(orchestrator.workspace) == 0


async def test_consensus_ends_the_run_early(make_orchestrator):
    orchestrator = make_orchestrator(scorer=RisingScorer(at=4))
    request = DiscussionRequest(
        topic="Pricing",
        rounds=5,
        seek_consensus=True,
        moderation=ModerationOverrides(max_speakers_per_round=2),
    )

    outcome = await orchestrator.run(request)

    assert outcome.reason is StopReason.CONSENSUS_REACHED
    assert outcome.rounds_completed == 2
    assert "7.0/10" in outcome.detail


async def test_consensus_ignored_unless_requested(make_orchestrator):
    orchestrator = make_orchestrator(scorer=RisingScorer(at=1))

    outcome = await orchestrator.run(DiscussionRequest(topic="Pricing", rounds=2))

    assert outcome.reason is StopReason.ROUNDS_EXHAUSTED


async def test_interjection_ends_round_and_steers_next(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Margins look thin.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Go to market", rounds=2)))
    await wait_for(started)
    result = orchestrator.interject("What about pricing?")
    gate.set()
    outcome = await task

    assert result.accepted
    first = outcome.rounds[0]
    assert first.ended_early is RoundEnd.INTERJECTED
    assert first.attempted == 1
    assert [m.author for m in orchestrator.workspace.messages[:2]] == ["User", "Virtual CFO"]
    second_round_prompt = scripted_provider.calls[1]["user"]
    assert "What about pricing?" in second_round_prompt
    assert outcome.reason is StopReason.ROUNDS_EXHAUSTED


async def test_pause_holds_next_speaker_until_resume(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("First thought.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Hiring", rounds=1)))
    await wait_for(started)
    assert orchestrator.pause().accepted
    assert orchestrator.pause().accepted
    assert orchestrator.state is RunState.PAUSED
    gate.set()
    for _ in range(20):
        await asyncio.sleep(0)
    assert scripted_provider.models_called() == ["model-a"]

    assert orchestrator.resume().accepted
    assert orchestrator.resume().message == "Discussion is not paused."
    outcome = await task

    assert scripted_provider.models_called() == ["model-a", "model-b", "model-c"]
    assert outcome.reason is StopReason.ROUNDS_EXHAUSTED


async def test_max_speakers_limits_each_round(make_orchestrator):
    orchestrator = make_orchestrator()
    request = DiscussionRequest(topic="Runway", rounds=3, moderation=ModerationOverrides(max_speakers_per_round=1))

    outcome = await orchestrator.run(request)

    assert all(len(r.messages) <= 1 for r in outcome.rounds)
    assert all(r.attempted == 1 for r in outcome.rounds)


async def test_stop_finishes_current_turn_then_ends(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Let me finish.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Exit", rounds=3)))
    await wait_for(started)
    orchestrator.stop()
    gate.set()
    outcome = await task

    assert outcome.reason is StopReason.USER_STOPPED
    assert outcome.rounds[0].ended_early is RoundEnd.STOP_REQUESTED
    assert [m.text for m in orchestrator.workspace.messages] == ["Let me finish."]


async def test_kill_returns_immediately_and_drops_late_reply(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Too late.", started=started, gate=gate, input_tokens=10, output_tokens=5))
    orchestrator = make_orchestrator()
    seen = []
    orchestrator.events.subscribe(seen.append)

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Exit", rounds=3)))
    await wait_for(started)
    assert orchestrator.kill().accepted
    assert orchestrator.state is RunState.STOPPED
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.reason is StopReason.KILLED
    assert outcome.rounds[0].ended_early is RoundEnd.KILLED

    gate.set()
    await orchestrator.drain()
    assert len(orchestrator.workspace) == 0
    assert orchestrator.budget.snapshot().calls == 1
    assert not [e for e in seen if e.kind is EventKind.CHUNK]


async def test_provider_failure_skips_participant(make_orchestrator, scripted_provider, caplog):
    scripted_provider.script("model-a", RuntimeError("upstream 500"))
    orchestrator = make_orchestrator()
    seen = []
    orchestrator.events.subscribe(seen.append)

    outcome = await orchestrator.run(DiscussionRequest(topic="Churn", rounds=1))

    assert [m.author for m in outcome.rounds[0].messages] == ["VC Partner", "Technical Advisor"]
    assert any(e.status == "provider_failed" for e in seen)
    assert orchestrator.budget.snapshot().calls == 2
    assert "upstream 500" in caplog.text


async def test_run_refuses_while_active(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Busy.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="One", rounds=1)))
    await wait_for(started)
    with pytest.raises(RunAlreadyActive):
        await orchestrator.run(DiscussionRequest(topic="Two", rounds=1))
    gate.set()
    await task


async def test_exhausted_budget_refuses_to_start(make_orchestrator, scripted_provider):
    orchestrator = make_orchestrator()
    orchestrator.budget.kill_switch("test")

    outcome = await orchestrator.run(DiscussionRequest(topic="Anything", rounds=2))

    assert outcome.reason is StopReason.BUDGET_EXCEEDED
    assert outcome.rounds_completed == 0
    assert scripted_provider.calls == []


async def test_budget_kill_switch_halts_after_current_call(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Spending.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Costs", rounds=3)))
    await wait_for(started)
    orchestrator.budget.kill_switch("finance said so")
    gate.set()
    outcome = await task

    assert outcome.reason is StopReason.BUDGET_EXCEEDED
    assert outcome.rounds[0].ended_early is RoundEnd.BUDGET_HALTED
    assert [m.text for m in orchestrator.workspace.messages] == ["Spending."]


async def test_call_on_reserves_next_round(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Numbers first.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Platform", rounds=2)))
    await wait_for(started)
    assert orchestrator.call_on("cto").accepted
    gate.set()
    outcome = await task

    assert [m.author for m in outcome.rounds[1].messages] == ["Technical Advisor"]


async def test_moderation_commands_need_a_running_discussion(make_orchestrator):
    orchestrator = make_orchestrator()

    for result in (
        orchestrator.set_max_speakers(2),
        orchestrator.set_cooldown(1.0),
        orchestrator.call_on("cfo"),
        orchestrator.pause(),
        orchestrator.interject("hello"),
    ):
        assert not result.accepted
        assert "No discussion is running" in result.message
    assert len(orchestrator.workspace) == 0


async def test_invalid_command_during_run_changes_nothing(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Hold on.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Ops", rounds=1)))
    await wait_for(started)
    result = orchestrator.set_max_speakers(0)
    unknown = orchestrator.call_on("janitor")
    gate.set()
    await task

    assert not result.accepted
    assert not unknown.accepted
    assert orchestrator.moderation.state.max_speakers_per_round == 3


async def test_template_focus_restricts_speakers(make_orchestrator, sample_app_config, scripted_provider):
    orchestrator = make_orchestrator()
    template = build_template("two-step", sample_app_config)

    outcome = await orchestrator.run(DiscussionRequest(topic="Series A", template=template, rounds=99))

    assert outcome.rounds_completed == 2
    assert [m.author for m in outcome.rounds[0].messages] == ["Virtual CFO"]
    assert len(outcome.rounds[1].messages) == 3
    assert "Check the numbers." in scripted_provider.calls[0]["user"]


async def test_acknowledgment_names_previous_speaker(make_orchestrator, scripted_provider):
    orchestrator = make_orchestrator()

    await orchestrator.run(DiscussionRequest(topic="Moat", rounds=1))

    assert "Acknowledge" not in scripted_provider.calls[0]["user"]
    assert "Acknowledge Virtual CFO." in scripted_provider.calls[1]["user"]


async def test_events_stream_chunks_before_message(make_orchestrator):
    orchestrator = make_orchestrator()
    seen = []
    orchestrator.events.subscribe(seen.append)

    def broken(_event):
        raise RuntimeError("listener bug")

    orchestrator.events.subscribe(broken)

    await orchestrator.run(DiscussionRequest(topic="Brand", rounds=1, moderation=ModerationOverrides(max_speakers_per_round=1)))

    kinds = [e.kind for e in seen]
    assert seen[0].status == "run_started"
    assert seen[-1].status == "run_stopped"
    first_message = kinds.index(EventKind.MESSAGE)
    assert kinds[first_message - 1] is EventKind.CHUNK
    chunks = "".join(e.text for e in seen if e.kind is EventKind.CHUNK)
    assert chunks == seen[first_message].text


async def test_fan_out_appends_in_completion_order(make_orchestrator, scripted_provider):
    orchestrator = make_orchestrator()
    await orchestrator.ask("Where do we start?")
    scripted_provider.script("model-a", Reply("slow", delay=0.06))
    scripted_provider.script("model-b", Reply("medium", delay=0.03))
    scripted_provider.script("model-c", Reply("fast"))

    replies = await orchestrator.ask("What is our biggest risk?")

    assert [m.text for m in replies] == ["fast", "medium", "slow"]
    user_message = [m for m in orchestrator.workspace.messages if m.role == "user"][-1]
    assert user_message.text == "What is our biggest risk?"
    assert all(m.responds_to == user_message.id for m in replies)
    assert orchestrator.budget.snapshot().calls == 6


async def test_first_fan_out_waits_for_one_settled_cost(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("First.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.ask("Biggest risk?"))
    await wait_for(started)
    await asyncio.sleep(0.01)
    assert scripted_provider.models_called() == ["model-a"]
    gate.set()
    replies = await task

    assert replies[0].text == "First."
    assert len(replies) == 3


async def test_fan_out_overshoots_cap_by_at_most_one_call(make_orchestrator, sample_app_config, scripted_provider):
    sample_app_config.budget.session_cap_usd = 0.10
    sample_app_config.budget.pricing["scripted"] = {
        model: ModelRate(0.5, 0.0) for model in ("model-a", "model-b", "model-c")
    }
    for model in ("model-a", "model-b", "model-c"):
        scripted_provider.script(model, Reply("Costly answer.", input_tokens=1000, output_tokens=0, delay=0.01))
    orchestrator = make_orchestrator()
    seen = []
    orchestrator.events.subscribe(seen.append)

    replies = await orchestrator.ask("Biggest risk?")

    # one call costs 0.5
    assert orchestrator.budget.spent_usd - 0.10 <= 0.5 + 1e-9
    assert len(replies) == 1
    assert len(scripted_provider.calls) == 1
    blocked = [e for e in seen if e.status == "budget_blocked"]
    assert len(blocked) == 2


async def test_capped_model_is_skipped_in_rounds(make_orchestrator, sample_app_config, scripted_provider):
    sample_app_config.budget.model_caps = {"model-b": 0.0}
    orchestrator = make_orchestrator()
    seen = []
    orchestrator.events.subscribe(seen.append)

    outcome = await orchestrator.run(DiscussionRequest(topic="Pricing", rounds=1))

    assert [m.author for m in outcome.rounds[0].messages] == ["Virtual CFO", "Technical Advisor"]
    assert "model-b" not in scripted_provider.models_called()
    capped = [e for e in seen if e.status == "provider_capped"]
    assert [e.data["participant_id"] for e in capped] == ["p-vc"]


async def test_round_of_capped_providers_ends_on_budget(make_orchestrator, sample_app_config, scripted_provider):
    sample_app_config.budget.provider_caps = {"scripted": 0.0}
    orchestrator = make_orchestrator()

    outcome = await orchestrator.run(DiscussionRequest(topic="Pricing", rounds=2))

    assert outcome.reason is StopReason.BUDGET_EXCEEDED
    assert outcome.rounds[0].ended_early is RoundEnd.BUDGET_BLOCKED
    assert scripted_provider.calls == []


async def test_capped_provider_is_not_asked_in_fan_out(make_orchestrator, sample_app_config, scripted_provider):
    sample_app_config.budget.model_caps = {"model-a": 0.0}
    orchestrator = make_orchestrator()

    replies = await orchestrator.ask("Who disagrees?")

    assert sorted(m.author for m in replies) == ["Technical Advisor", "VC Partner"]
    assert "model-a" not in scripted_provider.models_called()


async def test_ask_during_run_is_an_interjection(make_orchestrator, scripted_provider):
    started, gate = asyncio.Event(), asyncio.Event()
    scripted_provider.script("model-a", Reply("Mid-thought.", started=started, gate=gate))
    orchestrator = make_orchestrator()

    task = asyncio.create_task(orchestrator.run(DiscussionRequest(topic="Hiring", rounds=1)))
    await wait_for(started)
    replies = await orchestrator.ask("Quick question")
    gate.set()
    outcome = await task

    assert replies == []
    assert outcome.rounds[0].ended_early is RoundEnd.INTERJECTED


async def test_configure_participants_rejects_unknown_provider(make_orchestrator, participants):
    orchestrator = make_orchestrator()
    with pytest.raises(ValueError, match="not available"):
        orchestrator.configure_participants([Participant("x", "missing", "m", "cfo")])
    orchestrator.configure_participants(participants[:1])
    assert orchestrator.participants == tuple(participants[:1])


async def test_citation_results_are_attached(make_orchestrator):
    orchestrator = make_orchestrator(citations=FakeCitations())

    await orchestrator.run(DiscussionRequest(topic="TAM", rounds=1, moderation=ModerationOverrides(max_speakers_per_round=1)))
    await orchestrator.drain()

    message = orchestrator.workspace.messages[0]
    checks = orchestrator.workspace.annotations(message.id)
    assert len(checks) == 1
    assert not checks[0].has_citation
