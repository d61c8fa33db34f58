"""Discussion orchestration: turn-taking, fan-out, moderation and early termination."""

import asyncio
import logging
from collections.abc import Sequence

from config.config_loader import AppConfig
from boardroom import prompts
from boardroom.budget import BudgetGovernor, Reservation
from boardroom.consensus import ConsensusScorer, Evaluator, LexicalConsensusScorer
from boardroom.control import Killed, RunControl
from boardroom.errors import RunAlreadyActive
from boardroom.events import EventBus
from boardroom.grounding import CitationReporter, CitationService
from boardroom.models import (
    STOP_REASON_TEXT,
    BudgetTier,
    CommandResult,
    DiscussionOutcome,
    DiscussionRequest,
    DiscussionRun,
    Message,
    Participant,
    Role,
    RoundEnd,
    RoundResult,
    RunState,
    StopReason,
)
from boardroom.moderation import ModerationPolicy
from boardroom.providers.base import AIProvider, ProviderError, estimate_tokens
from boardroom.workspace import Workspace

logger = logging.getLogger(__name__)

USER_AUTHOR = "User"
NOT_ACTIVE = "No discussion is running. Start one before sending moderation commands."

_COMPLETED_REASONS = {StopReason.CONSENSUS_REACHED, StopReason.STALLED, StopReason.ROUNDS_EXHAUSTED}

_ROUND_END_TEXT = {
    RoundEnd.INTERJECTED: "Yielding to user.",
    RoundEnd.STOP_REQUESTED: "Stop requested.",
    RoundEnd.BUDGET_BLOCKED: "Budget exceeded. Skipping remaining speakers.",
    RoundEnd.BUDGET_HALTED: "Budget kill switch engaged.",
    RoundEnd.KILLED: "Discussion killed.",
}


class DiscussionOrchestrator:
    """One session: participants, transcript, budget, moderation and at most one run.

    Auto-discussion rounds (``run``) ask candidates one at a time, because
    each speaker prompts against the transcript including earlier turns of
    the same round. ``ask`` fans a single prompt out to every participant
    concurrently.
    """

    def __init__(
        self,
        config: AppConfig,
        providers: dict[str, AIProvider],
        participants: Sequence[Participant] = (),
        *,
        budget: BudgetGovernor | None = None,
        scorer: ConsensusScorer | None = None,
        citations: CitationService | None = None,
    ) -> None:
        self._config = config
        self._providers = providers
        self.roles = {
            role_id: Role(role_id, role_cfg.name, role_cfg.persona)
            for role_id, role_cfg in config.roles.items()
        }
        self.workspace = Workspace(recent_limit=config.defaults.recent_messages)
        self.budget = budget or BudgetGovernor(config.budget)
        self.moderation = ModerationPolicy(config.moderation, config.prompts)
        self.evaluator = Evaluator(
            scorer or LexicalConsensusScorer(config.discussion.consensus_window),
            consensus_threshold=config.discussion.consensus_threshold,
            silence_threshold=config.discussion.silence_threshold,
        )
        self.events = EventBus()
        self._citations = CitationReporter(citations, self.workspace) if citations else None
        self._participants: tuple[Participant, ...] = ()
        self._run: DiscussionRun | None = None
        self._control: RunControl | None = None
        self._last_state = RunState.IDLE
        self._background: set[asyncio.Task] = set()

        self.budget.subscribe(self._on_tier_change)
        self.budget.on_kill(self._on_budget_kill)
        if participants:
            self.configure_participants(participants)

    @property
    def config(self) -> AppConfig:
        return self._config

    # --- participants ------------------------------------------------------

    @property
    def participants(self) -> tuple[Participant, ...]:
        return self._participants

    def configure_participants(self, participants: Sequence[Participant]) -> None:
        """Replace the whole registered set. A running round keeps the set it started with."""
        for participant in participants:
            if participant.provider not in self._providers:
                raise ValueError(f"Participant {participant.id}: provider '{participant.provider}' is not available")
            if participant.role not in self.roles:
                raise ValueError(f"Participant {participant.id}: unknown role '{participant.role}'")
        ids = [p.id for p in participants]
        if len(set(ids)) != len(ids):
            raise ValueError("Participant ids must be unique")
        self._participants = tuple(participants)
        logger.info("Participants configured: %s", ", ".join(ids) or "none")

    def author_for(self, participant: Participant) -> str:
        return self.roles[participant.role].name

    # --- state -------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._run.state if self._run is not None else self._last_state

    @property
    def is_active(self) -> bool:
        return self._run is not None and self._run.state in (RunState.RUNNING, RunState.PAUSED)

    # --- single turns ------------------------------------------------------

    def _context(self) -> list[Message]:
        return self.workspace.context_window(self._config.defaults.context_tokens)

    def _reserve(
        self, participant: Participant, prompt: str, context: Sequence[Message]
    ) -> Reservation | None:
        """Reserve budget for one call, priced at its prompt size plus a full-length reply."""
        provider = self._providers[participant.provider]
        input_tokens = (
            estimate_tokens(prompt)
            + estimate_tokens(self.roles[participant.role].persona)
            + sum(estimate_tokens(m.text) for m in context)
        )
        estimate = self.budget.estimate_cost(
            participant.provider, participant.model, input_tokens, provider.max_tokens
        )
        return self.budget.try_reserve(participant.provider, participant.model, estimate)

    def _provider_capped(self, participant: Participant) -> bool:
        if not self.budget.provider_capped(participant.provider, participant.model):
            return False
        self.events.system(
            "provider_capped",
            f"{self.author_for(participant)} skipped: {participant.provider} budget exceeded.",
            participant_id=participant.id,
        )
        return True

    async def _take_turn(
        self,
        participant: Participant,
        prompt: str,
        responds_to: str | None,
        recent_speakers: Sequence[str],
        focus: str,
        reservation: Reservation,
        context: Sequence[Message],
        control: RunControl | None = None,
    ) -> Message | None:
        """Stream one reply, account for it against ``reservation`` and append it.

        Returns None when the provider failed, the reply was empty, or the
        run was killed while the call was in flight (its cost is still
        recorded).
        """
        provider = self._providers[participant.provider]
        role = self.roles[participant.role]
        system = prompts.system_prompt(self._config.prompts, role, recent_speakers, focus)

        def live() -> bool:
            return control is None or not control.killed

        recorded = False
        stream = None
        try:
            stream = provider.stream(participant, system, context, prompt)
            async for fragment in stream:
                if live():
                    self.events.chunk(participant, role.name, fragment)
            reply = stream.reply()
            cost = self.budget.estimate_cost(
                participant.provider, participant.model, reply.input_tokens, reply.output_tokens
            )
            self.budget.record(cost, reservation)
            recorded = True
        except ProviderError as exc:
            logger.warning("Provider %s failed for %s: %s", participant.provider, participant.id, exc.reason)
            if stream is not None:
                await stream.aclose()
            if live():
                self.events.system(
                    "provider_failed",
                    f"{role.name} did not respond: {exc.reason}",
                    participant_id=participant.id,
                )
            return None
        finally:
            if not recorded:
                self.budget.release(reservation)

        if not live():
            logger.info("Discarding reply from %s: run was killed mid-call", participant.id)
            return None
        if not reply.text.strip():
            logger.info("%s yielded the turn", participant.id)
            return None

        message = self.workspace.post(
            role.name,
            reply.text,
            participant.role,
            model=participant.model,
            responds_to=responds_to,
            participant_id=participant.id,
        )
        self.events.message(message)
        if self._citations is not None:
            self._citations.schedule(message)
        return message

    async def ask(self, text: str) -> list[Message]:
        """Fan-out mode: every participant answers ``text`` concurrently.

        Appends happen in completion order. A participant the budget cannot
        admit yet waits for an answer in flight to settle and is retried;
        with nothing left in flight it is skipped. While a discussion is
        running the text is treated as an interjection instead and no one
        is asked directly.
        """
        if self.is_active:
            self.interject(text)
            return []

        user_message = self.workspace.post(USER_AUTHOR, text, "user")
        self.events.message(user_message)
        recent_speakers = [m.author for m in self.workspace.recent(3)]
        context = self._context()

        replies: list[Message] = []

        async def turn(participant: Participant, reservation: Reservation) -> None:
            message = await self._take_turn(
                participant, text, user_message.id, recent_speakers, "general discussion", reservation, context
            )
            if message is not None:
                replies.append(message)

        pending = [p for p in self._participants if not self._provider_capped(p)]
        running: set[asyncio.Task] = set()
        try:
            while pending or running:
                while pending:
                    reservation = self._reserve(pending[0], text, context)
                    if reservation is not None:
                        running.add(asyncio.create_task(turn(pending.pop(0), reservation)))
                        continue
                    if running:
                        # retried once an answer in flight has settled its cost
                        break
                    participant = pending.pop(0)
                    self.events.system(
                        "budget_blocked",
                        f"Budget exceeded. {self.author_for(participant)} was not asked.",
                        participant_id=participant.id,
                    )
                if not running:
                    break
                done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    task.result()
        finally:
            for task in running:
                task.cancel()
        return replies

    async def consult(
        self,
        participant: Participant,
        prompt: str,
        *,
        context: Sequence[Message] | None = None,
        focus: str = "summary",
    ) -> Message | None:
        """One budget-gated turn for a single participant outside any run."""
        if self.is_active:
            raise RunAlreadyActive("Cannot consult a participant while a discussion is running")
        if participant.provider not in self._providers or participant.role not in self.roles:
            raise ValueError(f"Participant {participant.id} cannot be consulted in this session")
        if context is None:
            context = self._context()
        reservation = self._reserve(participant, prompt, context)
        if reservation is None:
            self.events.system("budget_blocked", f"Budget exceeded. {self.author_for(participant)} was not asked.")
            return None
        last = self.workspace.last()
        return await self._take_turn(
            participant,
            prompt,
            last.id if last else None,
            [m.author for m in self.workspace.recent(3)],
            focus,
            reservation,
            context,
        )

    # --- auto-discussion ---------------------------------------------------

    async def run(self, request: DiscussionRequest) -> DiscussionOutcome:
        """Run an auto-discussion to a terminal state and report why it ended."""
        if self.is_active:
            raise RunAlreadyActive("A discussion is already running in this session")
        total_rounds = len(request.template.rounds) if request.template else request.rounds
        if total_rounds < 1:
            raise ValueError(f"A discussion needs at least one round, got {total_rounds}")

        self.moderation.reset(request.moderation)
        control = RunControl(self.moderation.state)
        run = DiscussionRun(request=request, rounds=total_rounds)
        self._run, self._control = run, control

        logger.info("Starting discussion: %d round(s), topic=%r", total_rounds, request.topic)
        self.events.system(
            "run_started",
            f"Discussion started: {total_rounds} round(s) on: {request.topic}",
            rounds=total_rounds,
        )
        if self.budget.killed or self.budget.tier is BudgetTier.EXCEEDED:
            return self._finish(run, StopReason.BUDGET_EXCEEDED)
        try:
            reason = await self._run_rounds(run, control)
        except asyncio.CancelledError:
            logger.info("Discussion cancelled in round %d", run.current_round)
            run.state = RunState.STOPPED
            self._detach(run)
            raise
        except Exception:
            logger.exception("Discussion aborted in round %d", run.current_round)
            run.state = RunState.STOPPED
            self._detach(run)
            raise
        return self._finish(run, reason)

    async def _run_rounds(self, run: DiscussionRun, control: RunControl) -> StopReason:
        request = run.request
        prompt = request.topic
        for index in range(run.rounds):
            await control.wait_while_paused()
            reason = self._terminal_reason(control)
            if reason is not None:
                return reason

            interjection = None
            if run.pending_interjection is not None:
                interjection = prompts.interjection_prompt(
                    self._config.prompts, run.pending_interjection, request.topic
                )
                prompt = interjection
                run.pending_interjection = None
            control.clear_interjection()

            focus_roles = None
            focus = "auto-discussion"
            round_prompt = prompt
            if request.template is not None:
                template_round = request.template.rounds[index]
                focus_roles = template_round.focus
                focus = template_round.prompt
                round_prompt = f"{template_round.prompt}\n\nTopic: {request.topic}"
                if interjection is not None:
                    round_prompt = f"{interjection}\n\n{round_prompt}"

            run.current_round = index + 1
            is_last = index == run.rounds - 1
            result = await self._run_round(run, control, round_prompt, focus_roles, focus, is_last)
            run.results.append(result)

            reason = self._terminal_reason(control)
            if reason is None and result.ended_early is RoundEnd.BUDGET_BLOCKED:
                reason = StopReason.BUDGET_EXCEEDED
            if reason is None:
                reason = self.evaluator.after_round(
                    run,
                    result,
                    self.workspace.messages,
                    request.seek_consensus,
                    consensus_threshold=request.consensus_threshold,
                    silence_threshold=request.silence_threshold,
                )
            if reason is not None:
                return reason

            prompt = prompts.follow_up_prompt(
                self._config.prompts,
                self.workspace.last(),
                index,
                request.natural_conversation,
                request.topic,
            )
        return StopReason.ROUNDS_EXHAUSTED

    async def _run_round(
        self,
        run: DiscussionRun,
        control: RunControl,
        prompt: str,
        focus_roles: Sequence[str] | None,
        focus: str,
        is_last: bool,
    ) -> RoundResult:
        number = run.current_round
        result = RoundResult(number=number, prompt=prompt)
        self.events.system("round_started", f"Round {number} of {run.rounds}", round=number)

        pool = list(self._participants)
        if focus_roles is not None:
            pool = [p for p in pool if p.role in focus_roles]
        candidates = self.moderation.select_speakers(pool)
        last = self.workspace.last()
        responds_to = last.id if last else None

        capped = 0
        for position, participant in enumerate(candidates):
            await control.wait_while_paused()
            if control.interrupted:
                result.ended_early = self._interruption(control)
                break
            if self._provider_capped(participant):
                capped += 1
                continue

            previous = run.last_speakers[-1] if run.last_speakers else None
            turn_prompt = self.moderation.acknowledgment_prefix(previous) + prompt
            context = self._context()
            reservation = self._reserve(participant, turn_prompt, context)
            if reservation is None:
                result.ended_early = RoundEnd.BUDGET_BLOCKED
                break
            result.attempted += 1
            task = asyncio.create_task(
                self._take_turn(
                    participant, turn_prompt, responds_to, list(run.last_speakers), focus,
                    reservation, context, control,
                )
            )
            self._track(task)
            try:
                message = await control.guard(task)
            except Killed:
                result.ended_early = RoundEnd.KILLED
                break
            if message is None:
                continue

            result.messages.append(message)
            responds_to = message.id
            run.last_speakers.append(message.author)
            more_to_come = position < len(candidates) - 1 or not is_last
            if more_to_come:
                await control.sleep(self.moderation.state.cooldown_sec)

        if result.ended_early is None and capped and not result.attempted:
            result.ended_early = RoundEnd.BUDGET_BLOCKED
        if result.ended_early is not None:
            logger.info("Round %d ended early: %s", number, result.ended_early.value)
            self.events.system(
                "round_ended_early",
                _ROUND_END_TEXT[result.ended_early],
                round=number,
                reason=result.ended_early.value,
            )
        return result

    def _interruption(self, control: RunControl) -> RoundEnd:
        if control.killed:
            return RoundEnd.KILLED
        if control.budget_halted:
            return RoundEnd.BUDGET_HALTED
        if control.state.stop_requested:
            return RoundEnd.STOP_REQUESTED
        return RoundEnd.INTERJECTED

    def _terminal_reason(self, control: RunControl) -> StopReason | None:
        if control.killed:
            return StopReason.KILLED
        if control.state.stop_requested:
            return StopReason.USER_STOPPED
        if control.budget_halted or self.budget.killed or self.budget.tier is BudgetTier.EXCEEDED:
            return StopReason.BUDGET_EXCEEDED
        return None

    def _finish(self, run: DiscussionRun, reason: StopReason) -> DiscussionOutcome:
        run.state = RunState.COMPLETED if reason in _COMPLETED_REASONS else RunState.STOPPED
        self._detach(run)
        detail = STOP_REASON_TEXT[reason]
        if reason is StopReason.CONSENSUS_REACHED:
            score = self.evaluator.score(self.workspace.messages)
            detail = f"Consensus reached with score {score:.1f}/10. Ending discussion."
        logger.info("Discussion ended after %d round(s): %s", len(run.results), reason.value)
        self.events.system("run_stopped", detail, reason=reason.value, rounds=len(run.results))
        return DiscussionOutcome(reason=reason, rounds=list(run.results), detail=detail)

    def _detach(self, run: DiscussionRun) -> None:
        # a killed run may finish after a new one has started
        if self._run is run:
            self._last_state = run.state
            self._run = None
            self._control = None

    # --- run control -------------------------------------------------------

    def pause(self) -> CommandResult:
        if not self.is_active:
            return CommandResult(False, NOT_ACTIVE)
        if self._run.state is RunState.PAUSED:
            return CommandResult(True, "Discussion is already paused.")
        self._control.pause()
        self._run.state = RunState.PAUSED
        self.events.system("paused", "Discussion paused.")
        return CommandResult(True, "Discussion paused.")

    def resume(self) -> CommandResult:
        if not self.is_active:
            return CommandResult(False, NOT_ACTIVE)
        if self._run.state is not RunState.PAUSED:
            return CommandResult(True, "Discussion is not paused.")
        self._control.resume()
        self._run.state = RunState.RUNNING
        self.events.system("resumed", "Discussion resumed.")
        return CommandResult(True, "Discussion resumed.")

    def stop(self) -> CommandResult:
        if not self.is_active:
            return CommandResult(False, NOT_ACTIVE)
        self._control.stop()
        self.events.system("stop_requested", "Stopping after the current turn.")
        return CommandResult(True, "Stopping after the current turn.")

    def kill(self) -> CommandResult:
        """Stop immediately. An in-flight call finishes in the background; its text is dropped."""
        if not self.is_active:
            return CommandResult(False, NOT_ACTIVE)
        self._control.kill()
        self._run.state = RunState.STOPPED
        logger.warning("Discussion killed")
        self.events.system("killed", "Discussion killed.")
        return CommandResult(True, "Discussion killed.")

    def interject(self, text: str) -> CommandResult:
        """Append a user message now and end the current round at the next checkpoint."""
        if not self.is_active:
            return CommandResult(False, NOT_ACTIVE)
        message = self.workspace.post(USER_AUTHOR, text, "user")
        self.events.message(message)
        self._run.pending_interjection = message
        self._control.interject()
        return CommandResult(True, "Yielding the floor to the user.")

    # --- moderation commands -----------------------------------------------

    def set_max_speakers(self, n: int) -> CommandResult:
        return self._moderate(lambda: self.moderation.set_max_speakers(n))

    def set_cooldown(self, seconds: float) -> CommandResult:
        return self._moderate(lambda: self.moderation.set_cooldown(seconds))

    def set_require_acknowledgment(self, required: bool) -> CommandResult:
        return self._moderate(lambda: self.moderation.set_require_acknowledgment(required))

    def call_on(self, role: str) -> CommandResult:
        return self._moderate(lambda: self.moderation.call_on(role, self._participants))

    def _moderate(self, command) -> CommandResult:
        if not self.is_active:
            return CommandResult(False, NOT_ACTIVE)
        result = command()
        if result.accepted:
            self.events.system("moderation", result.message)
        return result

    # --- budget hooks ------------------------------------------------------

    def _on_tier_change(self, old_tier: BudgetTier, new_tier: BudgetTier) -> None:
        self.events.system(
            "budget_tier_changed",
            f"Budget {new_tier.value}: ${self.budget.spent_usd:.4f} spent",
            old=old_tier.value,
            new=new_tier.value,
        )

    def _on_budget_kill(self, reason: str) -> None:
        if self._control is not None:
            self._control.halt_for_budget()
        self.events.system("budget_killed", f"Budget kill switch: {reason}")

    # --- background work ---------------------------------------------------

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Background turn failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for detached calls and citation checks to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._citations is not None:
            await self._citations.drain()
