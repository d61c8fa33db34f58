"""Pure dataclasses and enums for the boardroom discussion engine. No logic, no deps."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class StopReason(str, Enum):
    CONSENSUS_REACHED = "consensus_reached"
    STALLED = "stalled"
    USER_STOPPED = "user_stopped"
    BUDGET_EXCEEDED = "budget_exceeded"
    ROUNDS_EXHAUSTED = "rounds_exhausted"
    KILLED = "killed"


STOP_REASON_TEXT: dict[StopReason, str] = {
    StopReason.CONSENSUS_REACHED: "Consensus reached. Ending discussion.",
    StopReason.STALLED: "Discussion stalled due to lack of new insights. Ending.",
    StopReason.USER_STOPPED: "Discussion stopped by user.",
    StopReason.BUDGET_EXCEEDED: "Budget exceeded. Stopping discussion.",
    StopReason.ROUNDS_EXHAUSTED: "All rounds completed.",
    StopReason.KILLED: "Discussion killed.",
}


class RoundEnd(str, Enum):
    """Why a round stopped before every candidate spoke."""

    INTERJECTED = "interjected"
    STOP_REQUESTED = "stop_requested"
    BUDGET_BLOCKED = "budget_blocked"
    BUDGET_HALTED = "budget_halted"
    KILLED = "killed"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


class BudgetTier(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


class EventKind(str, Enum):
    CHUNK = "chunk"
    MESSAGE = "message"
    SYSTEM = "system"


@dataclass(frozen=True)
class Role:
    id: str                # "cfo", "vc", ...
    name: str              # display name, used as message author
    persona: str = ""


@dataclass(frozen=True)
class Participant:
    id: str                # "claude-cfo"
    provider: str          # key into configured providers, e.g. "anthropic"
    model: str             # model string sent to the provider
    role: str              # key into roles


@dataclass(frozen=True)
class Message:
    id: str
    author: str
    text: str
    role: str              # role id, or "user" / "system"
    timestamp: datetime
    model: str | None = None
    responds_to: str | None = None
    participant_id: str | None = None


@dataclass(frozen=True)
class ProviderReply:
    text: str
    input_tokens: int
    output_tokens: int


@dataclass
class ModerationState:
    max_speakers_per_round: int = 2
    cooldown_sec: float = 2.5
    require_acknowledgment: bool = True
    forced_next_role: str | None = None
    is_paused: bool = False
    stop_requested: bool = False
    interject_requested: bool = False


@dataclass
class ModerationOverrides:
    max_speakers_per_round: int | None = None
    cooldown_sec: float | None = None
    require_acknowledgment: bool | None = None


@dataclass(frozen=True)
class TemplateRound:
    prompt: str
    focus: tuple[str, ...] | None = None   # None means every participant


@dataclass(frozen=True)
class DiscussionTemplate:
    id: str
    name: str
    description: str
    rounds: tuple[TemplateRound, ...]


@dataclass
class DiscussionRequest:
    topic: str
    rounds: int = 3
    seek_consensus: bool = False
    natural_conversation: bool = False
    template: DiscussionTemplate | None = None
    moderation: ModerationOverrides = field(default_factory=ModerationOverrides)
    consensus_threshold: float | None = None
    silence_threshold: int | None = None


@dataclass
class RoundResult:
    number: int
    prompt: str
    messages: list[Message] = field(default_factory=list)
    attempted: int = 0
    ended_early: RoundEnd | None = None


@dataclass
class DiscussionRun:
    request: DiscussionRequest
    rounds: int
    current_round: int = 0
    last_speakers: deque[str] = field(default_factory=lambda: deque(maxlen=3))
    silence_streak: int = 0
    state: RunState = RunState.RUNNING
    results: list[RoundResult] = field(default_factory=list)
    pending_interjection: Message | None = None


@dataclass
class DiscussionOutcome:
    reason: StopReason
    rounds: list[RoundResult]
    detail: str

    @property
    def rounds_completed(self) -> int:
        return len(self.rounds)


@dataclass(frozen=True)
class CommandResult:
    accepted: bool
    message: str


@dataclass(frozen=True)
class BudgetSnapshot:
    spent_usd: float
    session_cap_usd: float
    daily_spent_usd: float
    daily_cap_usd: float | None
    monthly_spent_usd: float
    monthly_cap_usd: float | None
    tier: BudgetTier
    killed: bool
    calls: int
    by_provider: dict[str, float] = field(default_factory=dict)
    provider_caps: dict[str, float] = field(default_factory=dict)
    by_model: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    text: str
    author: str
    message_id: str
    timestamp: datetime


@dataclass(frozen=True)
class ActionItem:
    text: str
    source: str
    message_id: str
    timestamp: datetime
    priority: str = "normal"   # "urgent", "high", "normal"


@dataclass(frozen=True)
class CitationCheck:
    claim: str
    has_citation: bool
    citations: tuple[str, ...] = ()


@dataclass
class DiscussionEvent:
    kind: EventKind
    text: str = ""
    participant_id: str | None = None
    author: str | None = None
    message: Message | None = None
    status: str | None = None      # for system events: "round_started", "run_stopped", ...
    data: dict = field(default_factory=dict)
