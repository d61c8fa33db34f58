"""Best-effort extraction of plan sections, decisions and action items from message text.

These run after every transcript append. They are regex heuristics, not
parsers: a miss or a false positive is acceptable, an exception is not
allowed to reach the append path (the Workspace guards the calls).
"""

import re

from boardroom.models import ActionItem, Decision, Message

SECTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "market": ("market", "competitor", "customer", "tam", "sam", "som"),
    "financials": ("revenue", "cost", "profit", "burn", "runway", "valuation", "$"),
    "product": ("feature", "mvp", "product", "user experience", "ux"),
    "strategy": ("strategy", "growth", "scale", "expand"),
    "risks": ("risk", "challenge", "concern", "threat"),
    "decisions": ("decision", "decided", "agreed", "consensus"),
    "executive": ("summary", "overview", "vision", "mission"),
    "business_model": ("business model", "monetize", "pricing"),
    "marketing": ("marketing", "advertising", "promotion", "brand"),
    "operations": ("operations", "process", "workflow", "efficiency"),
    "team": ("team", "hire", "culture", "organization"),
    "milestones": ("milestone", "timeline", "roadmap", "deadline"),
}

_DECISION_PATTERNS = [
    re.compile(r"\bfinal decision:?\s*(.+)", re.IGNORECASE),
    re.compile(r"(?<!final )\bdecision:\s*(.+)", re.IGNORECASE),
    re.compile(r"\bagreed to\s+(.+)", re.IGNORECASE),
    re.compile(r"\bconsensus:\s*(.+)", re.IGNORECASE),
    re.compile(r"\bwe should\s+(.+)", re.IGNORECASE),
]

_ACTION_PATTERNS = [
    re.compile(
        r"\b(?:TODO|Action item|Action|Next step|Will need to|Need to|Must)\b[:\s-]+([^.!?\n]{5,150})",
        re.IGNORECASE,
    ),
    re.compile(r"\[\s?\]\s+([^.!?\n]{5,150})"),
]

_URGENT_WORDS = ("urgent", "immediately", "asap", "critical", "blocker")
_HIGH_WORDS = ("important", "priority", "must", "need")


def categorize(text: str) -> list[str]:
    """Return every plan section whose keywords appear in ``text``."""
    lowered = text.lower()
    return [
        section
        for section, keywords in SECTION_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]


def extract_decisions(message: Message) -> list[Decision]:
    decisions: list[Decision] = []
    seen: set[str] = set()
    for line in message.text.splitlines():
        for pattern in _DECISION_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            text = match.group(1).strip().rstrip(".")
            if text and text.lower() not in seen:
                seen.add(text.lower())
                decisions.append(Decision(text, message.author, message.id, message.timestamp))
            break
    return decisions


def detect_priority(text: str) -> str:
    lowered = text.lower()
    if any(word in lowered for word in _URGENT_WORDS):
        return "urgent"
    if any(word in lowered for word in _HIGH_WORDS):
        return "high"
    return "normal"


def extract_action_items(message: Message) -> list[ActionItem]:
    items: list[ActionItem] = []
    for pattern in _ACTION_PATTERNS:
        for match in pattern.finditer(message.text):
            text = match.group(1).strip()
            items.append(
                ActionItem(
                    text=text,
                    source=message.author,
                    message_id=message.id,
                    timestamp=message.timestamp,
                    # The trigger word ("Must", "Need to") counts toward priority.
                    priority=detect_priority(match.group(0)),
                )
            )
    return items
