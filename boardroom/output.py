"""Rich console rendering of discussion events and markdown transcript export."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from boardroom.models import (
    BudgetSnapshot,
    BudgetTier,
    DiscussionEvent,
    DiscussionOutcome,
    DiscussionRequest,
    EventKind,
    Message,
)
from boardroom.workspace import Workspace

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_TIER_STYLE = {
    BudgetTier.OK: "green",
    BudgetTier.WARNING: "yellow",
    BudgetTier.CRITICAL: "bold yellow",
    BudgetTier.EXCEEDED: "bold red",
}

_QUIET_STATUSES = {"moderation"}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


class ConsoleRenderer:
    """EventBus listener that streams a discussion to the console.

    Chunks are printed inline under a speaker header; the finished message
    closes the line. With ``stream=False`` only finished messages are shown,
    one panel each.
    """

    def __init__(self, out: Console | None = None, stream: bool = True) -> None:
        self.console = out or console
        self.stream = stream
        self._streaming: str | None = None

    def __call__(self, event: DiscussionEvent) -> None:
        if event.kind is EventKind.CHUNK:
            self._on_chunk(event)
        elif event.kind is EventKind.MESSAGE:
            self._on_message(event)
        else:
            self._on_system(event)

    def _on_chunk(self, event: DiscussionEvent) -> None:
        if not self.stream:
            return
        if self._streaming != event.participant_id:
            self._end_line()
            self.console.print(Text(f"{event.author}: ", style="bold cyan"), end="")
            self._streaming = event.participant_id
        self.console.print(event.text, end="", markup=False, highlight=False)

    def _on_message(self, event: DiscussionEvent) -> None:
        message = event.message
        if message is None:
            return
        if message.role == "user":
            self._end_line()
            self.console.print(Text(f"You: {message.text}", style="bold magenta"))
            return
        if self.stream and self._streaming == message.participant_id:
            self._end_line()
            return
        self._end_line()
        self.console.print(
            Panel(
                Markdown(message.text),
                title=f"[bold]{message.author}[/bold]",
                subtitle=message.model or "",
                border_style="dim",
            )
        )

    def _on_system(self, event: DiscussionEvent) -> None:
        self._end_line()
        if event.status == "round_started":
            self.console.print(Rule(f"[bold cyan]{event.text}[/bold cyan]"))
        elif event.status in ("budget_tier_changed", "budget_blocked", "budget_killed", "killed"):
            self.console.print(f"[yellow]{event.text}[/yellow]")
        elif event.status == "provider_failed":
            self.console.print(f"[red]{event.text}[/red]")
        elif event.status not in _QUIET_STATUSES:
            self.console.print(Text(event.text, style="dim"))

    def _end_line(self) -> None:
        if self._streaming is not None:
            self.console.print()
            self._streaming = None


def budget_table(snapshot: BudgetSnapshot) -> Table:
    table = Table(title="Budget", show_header=True, header_style="bold")
    table.add_column("Period")
    table.add_column("Spent", justify="right")
    table.add_column("Cap", justify="right")
    table.add_row("Session", f"${snapshot.spent_usd:.4f}", f"${snapshot.session_cap_usd:.2f}")
    if snapshot.daily_cap_usd is not None:
        table.add_row("Today", f"${snapshot.daily_spent_usd:.4f}", f"${snapshot.daily_cap_usd:.2f}")
    if snapshot.monthly_cap_usd is not None:
        table.add_row("Month", f"${snapshot.monthly_spent_usd:.4f}", f"${snapshot.monthly_cap_usd:.2f}")
    for provider, spent in sorted(snapshot.by_provider.items()):
        cap = snapshot.provider_caps.get(provider)
        table.add_row(f"Provider: {provider}", f"${spent:.4f}", f"${cap:.2f}" if cap is not None else "-")
    style = _TIER_STYLE[snapshot.tier]
    table.caption = f"[{style}]{snapshot.tier.value}[/{style}] | {snapshot.calls} calls"
    return table


def print_outcome(outcome: DiscussionOutcome, snapshot: BudgetSnapshot) -> None:
    """Print why the discussion ended, round stats and the budget."""
    console.print(Rule("[bold green]Discussion ended[/bold green]"))
    console.print(f"[bold]{outcome.detail}[/bold]")
    spoken = sum(len(r.messages) for r in outcome.rounds)
    console.print(
        Text(
            f"Reason: {outcome.reason.value} | Rounds: {outcome.rounds_completed} | Messages: {spoken}",
            style="dim",
        )
    )
    console.print(budget_table(snapshot))


def print_replies(replies: list[Message]) -> None:
    """Print fan-out replies in the order they arrived."""
    for message in replies:
        console.print(
            Panel(Markdown(message.text), title=f"[bold]{message.author}[/bold]", subtitle=message.model or "")
        )


def save_transcript(
    workspace: Workspace,
    topic: str,
    output_dir: Path,
    snapshot: BudgetSnapshot,
    outcome: DiscussionOutcome | None = None,
    request: DiscussionRequest | None = None,
    summary: Message | None = None,
) -> Path:
    """Save the discussion as a markdown file and return its path.

    Sections: header, transcript (rounds when ``outcome`` is given, else the
    flat message list), extracted decisions and action items, the closing
    summary and budget totals.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(topic) or 'discussion'}.md"

    lines: list[str] = [
        f"# Boardroom Discussion: {topic[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if request is not None and request.template is not None:
        lines.append(f"**Template:** {request.template.name}")
    if outcome is not None:
        lines.append(f"**Rounds:** {outcome.rounds_completed}")
        lines.append(f"**Ended:** {outcome.detail} (`{outcome.reason.value}`)")
    lines += ["", "---", ""]

    lines.append("## Transcript")
    lines.append("")
    for message in workspace.messages:
        if summary is not None and message.id == summary.id:
            continue
        label = message.author if message.model is None else f"{message.author} ({message.model})"
        lines.append(f"### {label}")
        lines.append(f"*{message.timestamp.strftime('%H:%M:%S')}*")
        lines.append("")
        lines.append(message.text)
        lines.append("")
        uncited = [c.claim for c in workspace.annotations(message.id) if not c.has_citation]
        if uncited:
            lines.append("> Uncited claims: " + "; ".join(uncited))
            lines.append("")

    if workspace.decisions:
        lines += ["## Decisions", ""]
        lines += [f"- {d.text} ({d.author})" for d in workspace.decisions]
        lines.append("")

    if workspace.action_items:
        lines += ["## Action Items", ""]
        lines += [
            f"- [{item.priority}] {item.text} ({item.source})" for item in workspace.action_items
        ]
        lines.append("")

    if summary is not None:
        lines += [f"## Summary (by {summary.author})", "", summary.text, ""]

    lines += [
        "## Budget",
        "",
        f"- Session spend: ${snapshot.spent_usd:.4f} of ${snapshot.session_cap_usd:.2f}",
        f"- Calls: {snapshot.calls}",
        f"- Tier: {snapshot.tier.value}",
    ]
    for provider, spent in sorted(snapshot.by_provider.items()):
        cap = snapshot.provider_caps.get(provider)
        cap_text = f" of ${cap:.2f}" if cap is not None else ""
        lines.append(f"- {provider}: ${spent:.4f}{cap_text}")
    lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
