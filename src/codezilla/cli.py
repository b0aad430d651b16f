"""CLI entry point for Codezilla developer tooling."""

import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import CONFIG_DIR, CONFIG_FILE, Config, load_config
from .discovery import TranscriptPathError, discover_transcript
from .events import ParsedTranscriptSignal
from .metrics import ParseMetrics, with_diagnostics
from .models import AgentKind, TranscriptInfo, create_initial_transcript_info
from .state_machine import transcript_reducer
from .transcript import classify

console = Console()

AGENT_CHOICES = click.Choice(["claude", "codex"])


def setup_logging(config: Config) -> None:
    """Log to a rotating file when debug logging is on, else warnings to stderr."""
    if config.debug_logging:
        log_file = CONFIG_DIR / "debug.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
        )
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            handlers=[handler],
        )
        logging.info("Codezilla starting (debug logging enabled)")
    else:
        logging.basicConfig(
            level=logging.WARNING,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )


def guess_agent_kind(path: Path) -> AgentKind:
    """Codex rollouts are named rollout-*.jsonl; anything else is treated as Claude."""
    if path.name.startswith("rollout-") or ".codex" in path.parts:
        return AgentKind.CODEX
    return AgentKind.CLAUDE


def event_name(signal: ParsedTranscriptSignal) -> str:
    return type(signal.event).__name__


def replay_lines(
    lines: list[str],
    agent_kind: AgentKind,
    degraded_min_unparsed: int = 20,
) -> tuple[TranscriptInfo, list[tuple[int, ParsedTranscriptSignal | None, TranscriptInfo]]]:
    """Feed transcript lines through the classifier and reducer.

    Returns:
        Final record and one (line number, signal, record after the line) row per non-blank line.
    """
    metrics = ParseMetrics()
    info = create_initial_transcript_info()
    rows = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        now = datetime.now()
        metrics.record_line(now)
        signal = classify(line, agent_kind)
        if signal is None:
            metrics.record_unparsed()
        elif signal.is_ignored:
            metrics.record_ignored()
        else:
            metrics.record_parsed(now)
            info = transcript_reducer(info, signal.event, signal, now)
        info = with_diagnostics(info, metrics, degraded_min_unparsed=degraded_min_unparsed)
        rows.append((number, signal, info))
    return info, rows


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.pass_context
def main(ctx: click.Context, version: bool) -> None:
    """Codezilla - transcript state tooling for Claude Code and Codex threads."""
    if version:
        console.print(f"codezilla v{__version__}")
        return
    ctx.obj = load_config()
    setup_logging(ctx.obj)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--agent", type=AGENT_CHOICES, default=None, help="Transcript format (guessed from the file name by default)")
@click.option("--verbose", is_flag=True, help="Also show ignored and unrecognized lines")
@click.pass_obj
def replay(config: Config | None, path: Path, agent: str | None, verbose: bool) -> None:
    """Replay a transcript file and show how each line changes thread state."""
    config = config or load_config()
    agent_kind = AgentKind(agent) if agent else guess_agent_kind(path)
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as e:
        raise click.ClickException(f"Cannot read {path}: {e}")

    final, rows = replay_lines(lines, agent_kind, config.diagnostics.degraded_min_unparsed)

    table = Table(title=f"{path.name} ({agent_kind.value})")
    table.add_column("Line", justify="right", style="dim")
    table.add_column("Signal", style="cyan")
    table.add_column("Group")
    table.add_column("Phase")
    table.add_column("Event")
    table.add_column("Idle hint")
    table.add_column("Subtitle", style="green")

    for number, signal, info in rows:
        if signal is None:
            if verbose:
                table.add_row(str(number), "[red]unrecognized[/red]", "", "", "", "", info.subtitle)
            continue
        if signal.is_ignored and not verbose:
            continue
        table.add_row(
            str(number),
            signal.signal_key,
            signal.signal_group.value,
            signal.semantic_phase.value,
            event_name(signal),
            signal.idle_reason_hint.value,
            info.subtitle,
        )

    console.print(table)
    console.print("\n[bold]Final state:[/bold]")
    console.print(f"  Subtitle:       [cyan]{final.subtitle}[/cyan]")
    console.print(f"  Phase:          [cyan]{final.semantic_phase.value}[/cyan]")
    console.print(f"  Idle reason:    [cyan]{final.idle_reason.value}[/cyan]")
    if final.cost_usd is not None:
        console.print(f"  Cost:           [cyan]${final.cost_usd:.4f}[/cyan]")
    if final.plan_progress is not None:
        console.print(f"  Plan:           [cyan]{final.plan_progress.done}/{final.plan_progress.total}[/cyan]")
    if final.pending_tool_use_ids:
        console.print(f"  Pending calls:  [yellow]{len(final.pending_tool_use_ids)}[/yellow]")
    if final.last_error is not None:
        console.print(f"  Last error:     [red]{final.last_error.message}[/red]")
    console.print(
        f"  Lines:          {final.parsed_line_count} parsed, "
        f"{final.ignored_line_count} ignored, {final.unparsed_line_count} unrecognized"
    )
    health_style = {"healthy": "green", "degraded": "red"}.get(final.parser_health.value, "yellow")
    console.print(f"  Parser health:  [{health_style}]{final.parser_health.value}[/{health_style}]")


@main.command(name="classify")
@click.argument("line")
@click.option("--agent", type=AGENT_CHOICES, default="claude", help="Transcript format")
def classify_line(line: str, agent: str) -> None:
    """Classify a single transcript line."""
    signal = classify(line, AgentKind(agent))
    if signal is None:
        console.print("[red]unrecognized[/red]")
        return
    console.print(f"Signal:    [cyan]{signal.signal_key}[/cyan]")
    console.print(f"Group:     {signal.signal_group.value}")
    console.print(f"Phase:     {signal.semantic_phase.value}")
    console.print(f"Event:     {event_name(signal)}")
    console.print(f"Idle hint: {signal.idle_reason_hint.value}")
    console.print(f"Confidence: {signal.confidence.value}")


@main.command()
@click.argument("session_id")
@click.option("--claude-dir", type=click.Path(path_type=Path), default=None, help="Claude data directory (default: ~/.claude)")
def discover(session_id: str, claude_dir: Path | None) -> None:
    """Find the transcript file for a Claude session id."""
    try:
        path = discover_transcript(session_id, claude_dir)
    except TranscriptPathError as e:
        raise click.ClickException(str(e))
    if path is None:
        console.print(f"[yellow]No transcript found for session {session_id}[/yellow]")
        raise SystemExit(1)
    click.echo(path)


@main.command(name="config")
@click.pass_obj
def show_config(config: Config | None) -> None:
    """Show the effective configuration."""
    config = config or load_config()
    console.print("\n[bold]Current Configuration:[/bold]")
    console.print(f"  Transcript watcher: [cyan]{config.transcript_watcher_enabled}[/cyan]")
    console.print(f"  Debug signals:      [cyan]{config.debug_signals}[/cyan]")
    console.print(f"  Debug logging:      [cyan]{config.debug_logging}[/cyan]")
    console.print(f"  Activity mode:      [cyan]{config.activity_mode.value}[/cyan]")

    data = config.to_dict()
    for section in ("discovery", "diagnostics", "badges", "bindings", "watcher"):
        console.print(f"\n[bold]\\[{section}][/bold]")
        for key, value in data[section].items():
            console.print(f"  {key:22} [cyan]{value}[/cyan]")

    console.print(f"\nConfig file: [dim]{CONFIG_FILE}[/dim]")


if __name__ == "__main__":
    main()
