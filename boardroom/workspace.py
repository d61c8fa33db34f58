"""Append-only discussion transcript with context-window selection and a reply graph."""

import logging
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from boardroom import insights
from boardroom.errors import TranscriptError
from boardroom.models import ActionItem, CitationCheck, Decision, Message
from boardroom.providers.base import estimate_tokens

logger = logging.getLogger(__name__)

_SUMMARY_EXCERPT = 140


class Workspace:
    """Shared transcript for one session.

    Messages are never mutated or removed once appended. Derived data
    (sections, decisions, action items, citation annotations) lives beside
    the messages and may be filled in later.
    """

    def __init__(self, recent_limit: int = 20) -> None:
        self.recent_limit = recent_limit
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}
        self._replies: dict[str, list[str]] = defaultdict(list)
        self._pinned: set[str] = set()
        self._annotations: dict[str, list[CitationCheck]] = {}
        self.sections: dict[str, list[str]] = {section: [] for section in insights.SECTION_KEYWORDS}
        self.decisions: list[Decision] = []
        self.action_items: list[ActionItem] = []
        self.total_tokens = 0

    # --- writes ------------------------------------------------------------

    def append(self, message: Message) -> Message:
        """Validate and append ``message``; returns it unchanged.

        Raises:
            TranscriptError: duplicate id, timestamp earlier than the last
                message, or ``responds_to`` naming a message not yet appended.
        """
        if message.id in self._index:
            raise TranscriptError(f"Duplicate message id: {message.id}")
        if self._messages and message.timestamp < self._messages[-1].timestamp:
            raise TranscriptError(
                f"Message {message.id} timestamp {message.timestamp.isoformat()} "
                f"is earlier than the last appended message"
            )
        if message.responds_to is not None and message.responds_to not in self._index:
            raise TranscriptError(f"Message {message.id} responds to unknown message {message.responds_to}")

        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        if message.responds_to is not None:
            self._replies[message.responds_to].append(message.id)
        self.total_tokens += estimate_tokens(message.text)

        self._run_side_effects(message)
        return message

    def post(
        self,
        author: str,
        text: str,
        role: str,
        *,
        model: str | None = None,
        responds_to: str | None = None,
        participant_id: str | None = None,
    ) -> Message:
        """Create a message with a fresh id and a non-decreasing timestamp, then append it."""
        timestamp = datetime.now(timezone.utc)
        if self._messages and timestamp < self._messages[-1].timestamp:
            timestamp = self._messages[-1].timestamp
        message = Message(
            id=str(uuid.uuid4()),
            author=author,
            text=text,
            role=role,
            timestamp=timestamp,
            model=model,
            responds_to=responds_to,
            participant_id=participant_id,
        )
        return self.append(message)

    def pin(self, message_id: str) -> None:
        if message_id not in self._index:
            raise KeyError(message_id)
        self._pinned.add(message_id)

    def unpin(self, message_id: str) -> None:
        self._pinned.discard(message_id)

    def annotate(self, message_id: str, checks: Iterable[CitationCheck]) -> None:
        """Attach citation results to a message without touching the message."""
        if message_id not in self._index:
            raise KeyError(message_id)
        self._annotations.setdefault(message_id, []).extend(checks)

    def _run_side_effects(self, message: Message) -> None:
        try:
            for section in insights.categorize(message.text):
                self.sections[section].append(message.id)
            self.decisions.extend(insights.extract_decisions(message))
            self.action_items.extend(insights.extract_action_items(message))
        except Exception:
            logger.warning("Insight extraction failed for message %s", message.id, exc_info=True)

    # --- reads -------------------------------------------------------------

    @property
    def messages(self) -> Sequence[Message]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Message:
        return self._messages[self._index[message_id]]

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def recent(self, n: int) -> list[Message]:
        return self._messages[-n:] if n > 0 else []

    def is_pinned(self, message_id: str) -> bool:
        return message_id in self._pinned

    def replies_to(self, message_id: str) -> list[Message]:
        return [self.get(reply_id) for reply_id in self._replies.get(message_id, [])]

    def annotations(self, message_id: str) -> list[CitationCheck]:
        return list(self._annotations.get(message_id, []))

    def context_window(self, max_tokens: int) -> list[Message]:
        """Select messages for a prompt within an estimated token budget.

        Pinned messages are always included, even past the budget. The
        remaining budget is filled with the most recent ``recent_limit``
        messages, dropping the oldest first. Result is in append order.
        """
        pinned = [m for m in self._messages if m.id in self._pinned]
        used = sum(estimate_tokens(m.text) for m in pinned)

        window = self._messages[-self.recent_limit:] if self.recent_limit > 0 else []
        candidates = [m for m in window if m.id not in self._pinned]
        selected: list[Message] = []
        for message in reversed(candidates):
            cost = estimate_tokens(message.text)
            if used + cost > max_tokens:
                break
            selected.append(message)
            used += cost

        chosen = {m.id for m in pinned} | {m.id for m in selected}
        return [m for m in self._messages if m.id in chosen]

    def discussion_flow(self, max_nodes: int = 40) -> dict[str, list[dict]]:
        """Nodes and reply edges for the most recent ``max_nodes`` messages."""
        recent = self._messages[-max_nodes:]
        ids = {m.id for m in recent}
        nodes = [
            {"id": m.id, "label": m.author, "text": m.text[:50], "role": m.role}
            for m in recent
        ]
        edges = [
            {"from": m.responds_to, "to": m.id}
            for m in recent
            if m.responds_to is not None and m.responds_to in ids
        ]
        return {"nodes": nodes, "edges": edges}

    def summary(self) -> str:
        """Bullet summary from pinned and decision-bearing messages, else the last five."""
        decision_ids = {d.message_id for d in self.decisions}
        key = [m for m in self._messages if m.id in self._pinned or m.id in decision_ids]
        source = key or self._messages[-5:]
        if not source:
            return "No key decisions made yet"
        return "\n".join(f"- {m.author}: {m.text[:_SUMMARY_EXCERPT]}" for m in source)
