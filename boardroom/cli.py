"""Click CLI: config loading, participant selection, discussion run, and output."""

import asyncio
import dataclasses
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from boardroom.agenda import build_template, load_agenda
from boardroom.budget import BudgetGovernor
from boardroom.healthcheck import run_health_checks
from boardroom.errors import BoardroomError
from boardroom.models import DiscussionRequest, Participant
from boardroom.orchestrator import DiscussionOrchestrator
from boardroom.output import ConsoleRenderer, print_outcome, print_replies, save_transcript
from boardroom.providers.anthropic import AnthropicProvider
from boardroom.providers.base import AIProvider
from boardroom.providers.gemini import GeminiProvider
from boardroom.providers.openai_provider import OpenAIProvider
from boardroom.providers.xai import XAIProvider
from boardroom.synthesis import pick_summarizer, summarize

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "xai": XAIProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    if not verbose:
        # SDK request logs drown out the discussion
        for noisy in ("httpx", "anthropic", "openai", "google_genai"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build every provider that has an API key. Returns dict keyed by provider name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        provider_cfg = config.providers[name]
        provider_cls = PROVIDER_CLASSES.get(provider_cfg.sdk)
        if provider_cls is None:
            logger.warning("Provider '%s' uses unknown sdk '%s', skipping", name, provider_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(provider_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _build_participants(config: AppConfig, providers: dict[str, AIProvider]) -> list[Participant]:
    """Configured participants whose provider is usable, in config order."""
    participants = []
    for p in config.participants:
        if p.provider not in providers:
            logger.info("Participant %s skipped: provider %s unavailable", p.id, p.provider)
            continue
        participants.append(Participant(p.id, p.provider, p.model, p.role))
    return participants


def _check_and_filter_participants(
    participants: list[Participant],
    providers: dict[str, AIProvider],
    budget: BudgetGovernor,
) -> list[Participant]:
    """Run health checks, print results, and ask the user what to do on failures.

    Ping costs are charged to ``budget``.

    Exits if the user declines to continue or no participant passes.
    """
    console.print("\n[bold]Checking participants...[/bold]")
    results = asyncio.run(run_health_checks(participants, providers, budget))

    failed: list[str] = []
    for participant in participants:
        ok, err = results[participant.id]
        if ok:
            console.print(f"  [green]OK  [/green] {participant.id} ({participant.model})")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {participant.id}: {short_err}")
            failed.append(participant.id)

    if not failed:
        console.print()
        return participants

    working = [p for p in participants if p.id not in failed]
    if not working:
        console.print("\n[bold red]Error:[/bold red] No participants passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed)} participant(s) failed:[/yellow] {', '.join(failed)}")
    if not click.confirm("Continue with working participants only?", default=True):
        sys.exit(0)
    console.print()
    return working


def _install_interrupt_handler(orchestrator: DiscussionOrchestrator) -> bool:
    """Ctrl-C once asks the discussion to stop; a second Ctrl-C kills it."""
    presses = 0

    def on_interrupt() -> None:
        nonlocal presses
        presses += 1
        if presses == 1:
            console.print("\n[yellow]Stopping after the current turn (Ctrl-C again to kill)...[/yellow]")
            orchestrator.stop()
        else:
            orchestrator.kill()

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        logger.debug("Signal handlers unsupported on this platform; Ctrl-C aborts immediately")
        return False
    return True


def _remove_interrupt_handler() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except NotImplementedError:
        pass


async def _run_discussion(
    orchestrator: DiscussionOrchestrator,
    request: DiscussionRequest,
    output_dir: Path,
    summarizer: Participant | None,
) -> Path:
    """Run one auto-discussion, optionally summarize it, and save the transcript."""
    installed = _install_interrupt_handler(orchestrator)
    try:
        outcome = await orchestrator.run(request)
    finally:
        if installed:
            _remove_interrupt_handler()

    summary = None
    if summarizer is not None and orchestrator.workspace.messages:
        console.print(f"\n[bold cyan]Summary[/bold cyan] by {orchestrator.author_for(summarizer)}")
        summary = await summarize(orchestrator, summarizer)

    await orchestrator.drain()
    print_outcome(outcome, orchestrator.budget.snapshot())
    return save_transcript(
        orchestrator.workspace,
        request.topic,
        output_dir,
        orchestrator.budget.snapshot(),
        outcome=outcome,
        request=request,
        summary=summary,
    )


async def _run_fan_out(orchestrator: DiscussionOrchestrator, topic: str, output_dir: Path) -> Path:
    """Ask every participant the same question at once and save the answers."""
    replies = await orchestrator.ask(topic)
    await orchestrator.drain()
    console.print()
    print_replies(replies)
    return save_transcript(orchestrator.workspace, topic, output_dir, orchestrator.budget.snapshot())


@click.command()
@click.argument("topic", required=False)
@click.option("--file", "agenda_file", type=click.Path(exists=True, dir_okay=False), help="Read the agenda from a .md file")
@click.option("--rounds", default=None, type=int, help="Number of discussion rounds (default: from config)")
@click.option("--consensus", "seek_consensus", is_flag=True, help="End early once the panel agrees")
@click.option("--natural", is_flag=True, help="Use short reaction prompts between rounds")
@click.option("--template", "template_id", default=None, help="Run a structured template (e.g. series-a-prep)")
@click.option("--max-speakers", default=None, type=int, help="Speakers per round (default: from config)")
@click.option("--cooldown", default=None, type=float, help="Seconds between speakers (default: from config)")
@click.option("--budget", "budget_usd", default=None, type=float, help="Session budget cap in USD")
@click.option("--fan-out", is_flag=True, help="Ask every participant once, concurrently, instead of discussing")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--summarize/--no-summarize", default=True, help="Close with a summary of the discussion")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False, help="Skip the API connectivity check at startup")
def main(
    topic: str | None,
    agenda_file: str | None,
    rounds: int | None,
    seek_consensus: bool,
    natural: bool,
    template_id: str | None,
    max_speakers: int | None,
    cooldown: float | None,
    budget_usd: float | None,
    fan_out: bool,
    output_path: str | None,
    summarize: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """AI Boardroom -- multi-model business advisory discussion.

    \b
    Examples:
      boardroom "Should we raise a seed round now?" --rounds 3
      boardroom "Pricing for the pro tier" --consensus --max-speakers 3
      boardroom "Our Series A" --template series-a-prep
      boardroom --file agenda.md
      boardroom "What is our biggest risk?" --fan-out
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    try:
        if agenda_file:
            request = load_agenda(Path(agenda_file), config)
            if topic:
                request.topic = topic
        elif topic:
            request = DiscussionRequest(topic=topic, rounds=config.defaults.rounds)
        else:
            console.print("[bold red]Error:[/bold red] Provide a TOPIC argument or --file.")
            sys.exit(1)

        if rounds is not None:
            if not 1 <= rounds <= config.defaults.max_rounds:
                raise ValueError(f"--rounds must be 1-{config.defaults.max_rounds}, got {rounds}")
            request.rounds = rounds
        request.seek_consensus = request.seek_consensus or seek_consensus
        request.natural_conversation = request.natural_conversation or natural
        if template_id:
            request.template = build_template(template_id, config)
        request.moderation = dataclasses.replace(
            request.moderation,
            max_speakers_per_round=max_speakers if max_speakers is not None else request.moderation.max_speakers_per_round,
            cooldown_sec=cooldown if cooldown is not None else request.moderation.cooldown_sec,
        )
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    providers = _build_all_providers(config)
    participants = _build_participants(config, providers)
    if not participants:
        console.print("[bold red]Error:[/bold red] No participants available. Check API keys in .env.")
        sys.exit(1)

    budget_cfg = config.budget
    if budget_usd is not None:
        budget_cfg = dataclasses.replace(budget_cfg, session_cap_usd=budget_usd)
    budget = BudgetGovernor(budget_cfg)

    if not skip_health_check:
        participants = _check_and_filter_participants(participants, providers, budget)

    orchestrator = DiscussionOrchestrator(config, providers, participants, budget=budget)
    orchestrator.events.subscribe(ConsoleRenderer(console))

    output_dir = Path(output_path) if output_path else config.defaults.output_dir
    names = ", ".join(f"{orchestrator.author_for(p)} ({p.model})" for p in participants)
    console.print(f"\n[bold cyan]AI Boardroom[/bold cyan] -- {len(participants)} participants")
    console.print(f"Panel: {names}")
    console.print(f"Topic: [italic]{request.topic[:80]}{'...' if len(request.topic) > 80 else ''}[/italic]\n")

    try:
        if fan_out:
            saved_path = asyncio.run(_run_fan_out(orchestrator, request.topic, output_dir))
        else:
            summarizer = pick_summarizer(participants, config.defaults.summarizer) if summarize else None
            saved_path = asyncio.run(_run_discussion(orchestrator, request, output_dir, summarizer))
    except (BoardroomError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")


if __name__ == "__main__":
    main()
