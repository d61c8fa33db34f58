"""Early-termination checks: consensus scoring and silence detection."""

import logging
import re
from collections import defaultdict
from collections.abc import Sequence
from typing import Protocol

from boardroom.models import DiscussionRun, Message, RoundResult, StopReason

logger = logging.getLogger(__name__)


class ConsensusScorer(Protocol):
    def score(self, messages: Sequence[Message]) -> float:
        """Return agreement on a 0..10 scale; 5 is neutral."""
        ...


class LexicalConsensusScorer:
    """Keyword heuristic: agreement words minus disagreement words, per author.

    Crude by design of the signal it reads; swap in another ConsensusScorer
    for anything better.
    """

    AGREEMENT = re.compile(r"\b(?:agree|agreed|agreement|support|correct|yes|exactly|aligned)\b", re.IGNORECASE)
    DISAGREEMENT = re.compile(r"\b(?:disagree|however|but|concern|concerned|object)\b", re.IGNORECASE)

    def __init__(self, window: int = 10) -> None:
        self.window = window

    def score(self, messages: Sequence[Message]) -> float:
        recent = [m for m in messages if m.role not in ("user", "system")][-self.window:]
        per_author: dict[str, int] = defaultdict(int)
        for message in recent:
            agree = len(self.AGREEMENT.findall(message.text))
            disagree = len(self.DISAGREEMENT.findall(message.text))
            per_author[message.author] += agree - disagree
        if not per_author:
            return 0.0
        average = sum(per_author.values()) / len(per_author)
        return max(0.0, min(10.0, 5.0 + average))


def has_new_insight(round_result: RoundResult) -> bool:
    """True iff at least one participant produced non-empty text this round."""
    return any(m.text.strip() for m in round_result.messages)


class Evaluator:
    def __init__(
        self,
        scorer: ConsensusScorer,
        consensus_threshold: float = 7.0,
        silence_threshold: int = 2,
    ) -> None:
        self.scorer = scorer
        self.consensus_threshold = consensus_threshold
        self.silence_threshold = silence_threshold

    def score(self, messages: Sequence[Message]) -> float:
        return self.scorer.score(messages)

    def after_round(
        self,
        run: DiscussionRun,
        round_result: RoundResult,
        recent: Sequence[Message],
        seek_consensus: bool,
        consensus_threshold: float | None = None,
        silence_threshold: int | None = None,
    ) -> StopReason | None:
        """Update the run's silence streak and decide whether to stop early.

        Rounds in which nobody was asked to speak (for example cut short by
        an interjection before the first turn) leave the streak unchanged.
        """
        consensus_threshold = self.consensus_threshold if consensus_threshold is None else consensus_threshold
        silence_threshold = self.silence_threshold if silence_threshold is None else silence_threshold

        if seek_consensus:
            score = self.score(recent)
            logger.info("Round %d consensus score %.1f/10", round_result.number, score)
            if score >= consensus_threshold:
                return StopReason.CONSENSUS_REACHED

        if round_result.attempted == 0:
            return None
        if has_new_insight(round_result):
            run.silence_streak = 0
            return None
        run.silence_streak += 1
        logger.info("Round %d produced no new insight (%d in a row)", round_result.number, run.silence_streak)
        if run.silence_streak >= silence_threshold:
            return StopReason.STALLED
        return None
