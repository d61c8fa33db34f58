"""Per-session moderation settings and per-round speaker selection."""

import logging
from collections.abc import Sequence

from config.config_loader import ModerationConfig, PromptsConfig
from boardroom.errors import InvalidModerationCommand
from boardroom.models import CommandResult, ModerationOverrides, ModerationState, Participant

logger = logging.getLogger(__name__)


class ModerationPolicy:
    """Owns a session's ModerationState and decides who may speak each round.

    Commands may arrive while a round is in flight. They mutate the state
    in place; the orchestrator reads it at every checkpoint, so a change
    applies to the running round from the next candidate on.
    """

    def __init__(self, config: ModerationConfig, prompts: PromptsConfig) -> None:
        self._config = config
        self._prompts = prompts
        self.state = ModerationState(
            max_speakers_per_round=config.max_speakers_per_round,
            cooldown_sec=config.cooldown_sec,
            require_acknowledgment=config.require_acknowledgment,
        )

    def reset(self, overrides: ModerationOverrides | None = None) -> None:
        """Restore configured defaults, apply request overrides, clear all run flags.

        Raises InvalidModerationCommand for a bad override; the current
        state is left untouched in that case.
        """
        state = ModerationState(
            max_speakers_per_round=self._config.max_speakers_per_round,
            cooldown_sec=self._config.cooldown_sec,
            require_acknowledgment=self._config.require_acknowledgment,
        )
        if overrides is not None:
            if overrides.max_speakers_per_round is not None:
                _check_max_speakers(overrides.max_speakers_per_round)
                state.max_speakers_per_round = overrides.max_speakers_per_round
            if overrides.cooldown_sec is not None:
                _check_cooldown(overrides.cooldown_sec)
                state.cooldown_sec = overrides.cooldown_sec
            if overrides.require_acknowledgment is not None:
                state.require_acknowledgment = overrides.require_acknowledgment
        self.state = state

    def select_speakers(self, participants: Sequence[Participant]) -> list[Participant]:
        """Ordered candidates for one round.

        A forced role narrows the pool to that role and is consumed. The
        pool is then cut to ``max_speakers_per_round`` in registration order.
        """
        pool = list(participants)
        forced = self.state.forced_next_role
        if forced is not None:
            pool = [p for p in pool if p.role == forced]
            self.state.forced_next_role = None
            logger.debug("Forced role %s selects %d participant(s)", forced, len(pool))
        return pool[: self.state.max_speakers_per_round]

    def acknowledgment_prefix(self, previous_speaker: str | None) -> str:
        if not self.state.require_acknowledgment or not previous_speaker:
            return ""
        return self._prompts.acknowledgment.format(speaker=previous_speaker)

    # --- commands ----------------------------------------------------------

    def set_max_speakers(self, n: int) -> CommandResult:
        return self._apply(lambda: self._set_max_speakers(n))

    def set_cooldown(self, seconds: float) -> CommandResult:
        return self._apply(lambda: self._set_cooldown(seconds))

    def set_require_acknowledgment(self, required: bool) -> CommandResult:
        def apply() -> str:
            self.state.require_acknowledgment = bool(required)
            return "Acknowledgment " + ("required." if required else "not required.")

        return self._apply(apply)

    def call_on(self, role: str, participants: Sequence[Participant]) -> CommandResult:
        def apply() -> str:
            available = sorted({p.role for p in participants})
            if role not in available:
                raise InvalidModerationCommand(
                    f"Unknown role '{role}'. Available roles: {', '.join(available) or 'none'}"
                )
            self.state.forced_next_role = role
            return f"Next turn reserved for {role}."

        return self._apply(apply)

    def _set_max_speakers(self, n: int) -> str:
        _check_max_speakers(n)
        self.state.max_speakers_per_round = n
        return f"Limited to {n} speaker(s) per round."

    def _set_cooldown(self, seconds: float) -> str:
        _check_cooldown(seconds)
        self.state.cooldown_sec = float(seconds)
        return f"Pace set to {seconds:g}s between speakers."

    @staticmethod
    def _apply(command) -> CommandResult:
        try:
            return CommandResult(True, command())
        except InvalidModerationCommand as exc:
            logger.info("Moderation command rejected: %s", exc)
            return CommandResult(False, str(exc))


def _check_max_speakers(n: int) -> None:
    if isinstance(n, bool) or not isinstance(n, int) or n < 1:
        raise InvalidModerationCommand(f"Max speakers per round must be a whole number >= 1, got {n!r}")


def _check_cooldown(seconds: float) -> None:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds < 0:
        raise InvalidModerationCommand(f"Cooldown must be a number of seconds >= 0, got {seconds!r}")
