"""Provider health checks: ping each participant's model before a session."""

import asyncio
import logging

from boardroom.budget import BudgetGovernor
from boardroom.models import BudgetTier, Participant
from boardroom.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_PING_SYSTEM = "You are a health check. Answer as briefly as possible."
_TIMEOUT_SEC = 15.0


async def _check_one(
    participant: Participant,
    provider: AIProvider,
    budget: BudgetGovernor | None = None,
) -> tuple[str, bool, str]:
    """Ping a single participant's model. Returns (participant_id, ok, error_message).

    With a ``budget``, no ping is sent once a cap is reached, and the cost
    of each reply is recorded against the participant's provider and model.
    """
    if budget is not None and (
        budget.tier is BudgetTier.EXCEEDED or budget.provider_capped(participant.provider, participant.model)
    ):
        return participant.id, False, "budget exceeded"

    try:
        async with asyncio.timeout(_TIMEOUT_SEC):
            reply = await provider.stream(participant, _PING_SYSTEM, (), _PING_PROMPT).collect()
    except TimeoutError:
        return participant.id, False, f"no reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        return participant.id, False, str(exc)

    if budget is not None:
        cost = budget.estimate_cost(participant.provider, participant.model, reply.input_tokens, reply.output_tokens)
        budget.record(cost, provider=participant.provider, model=participant.model)
    return participant.id, True, ""


async def run_health_checks(
    participants: list[Participant],
    providers: dict[str, AIProvider],
    budget: BudgetGovernor | None = None,
) -> dict[str, tuple[bool, str]]:
    """Ping every participant in parallel.

    Participants sharing a provider and model are pinged once. Ping spend
    goes on ``budget`` when one is given.

    Returns:
        Dict mapping participant id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    unique: dict[tuple[str, str], Participant] = {}
    for participant in participants:
        unique.setdefault((participant.provider, participant.model), participant)

    results = await asyncio.gather(
        *(_check_one(p, providers[p.provider], budget) for p in unique.values())
    )
    by_model = {}
    for (key, _), (_, ok, err) in zip(unique.items(), results):
        by_model[key] = (ok, err)
        if not ok:
            logger.warning("Health check failed for %s/%s: %s", key[0], key[1], err)
    return {p.id: by_model[(p.provider, p.model)] for p in participants}
