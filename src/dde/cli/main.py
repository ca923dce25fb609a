"""
CLI for the deal diligence engine.

Commands:
    dde facts SUBJECT - Show the current fact view of a deal
    dde history SUBJECT KEY - Show every event recorded for one fact
    dde resolve SUBJECT KEY VALUE - Settle a disputed fact
    dde sessions - List analysis sessions
    dde checkpoints SESSION - List the checkpoints of a session
    dde cancel SESSION - Mark an interrupted session failed
    dde config - Show current configuration
    dde version - Print version
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Optional

import orjson
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dde import __version__
from dde.config import Settings, clear_settings_cache, get_settings
from dde.coordinator.checkpoint import CheckpointManager
from dde.exceptions import DDEError
from dde.facts.current import fact_store_summary, format_value
from dde.facts.store import FactStore
from dde.logging import setup_logging
from dde.persistence.session_store import SessionStore
from dde.types import FactSource, SessionStatus

app = typer.Typer(
    name="dde",
    help="Deal Diligence Engine - inspect facts, sessions and checkpoints",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

_STATUS_STYLES = {
    SessionStatus.RUNNING: "yellow",
    SessionStatus.COMPLETED: "green",
    SessionStatus.FAILED: "red",
}


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _require_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'dde config' to see the current values."
        )
        raise typer.Exit(1)
    setup_logging(log_level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)
    return settings


async def _open_fact_store(settings: Settings) -> FactStore:
    store = FactStore(settings.facts_db_path)
    await store.init()
    return store


async def _open_session_store(settings: Settings) -> SessionStore:
    store = SessionStore(settings.sessions_db_path)
    await store.init()
    return store


def _print_json(data: object) -> None:
    console.print_json(orjson.dumps(data, default=str).decode("utf-8"))


@app.command()
def facts(
    subject: Annotated[str, typer.Argument(help="Deal (subject) id")],
    disputed: Annotated[
        bool,
        typer.Option("--disputed", "-d", help="Only show disputed facts"),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print JSON instead of a table"),
    ] = False,
) -> None:
    """Show the current fact view of a deal."""
    settings = _require_settings()

    async def load() -> list:
        store = await _open_fact_store(settings)
        try:
            if disputed:
                return await store.get_disputed(subject)
            return await store.get_current(subject)
        finally:
            await store.close()

    current = asyncio.run(load())

    if as_json:
        _print_json([f.to_dict() for f in current])
        return

    if not current:
        console.print(f"[yellow]No facts recorded for {subject}.[/yellow]")
        return

    table = Table(title=f"Facts for {subject}", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source")
    table.add_column("Conf.", justify="right")
    table.add_column("Dispute", style="red")

    for fact in current:
        dispute = ""
        if fact.dispute_details is not None:
            d = fact.dispute_details
            dispute = f"{format_value(d.conflicting_value)} ({d.conflicting_source.value})"
            if d.related_fact_key:
                dispute += f" via {d.related_fact_key}"
        table.add_row(
            fact.fact_key,
            fact.current_display_value,
            fact.current_source.value,
            str(fact.current_confidence),
            dispute,
        )

    console.print(table)
    summary = fact_store_summary(current)
    console.print(
        f"[dim]{summary.total_facts} facts | {summary.disputed_count} disputed | "
        f"average confidence {summary.average_confidence}%[/dim]"
    )


@app.command()
def history(
    subject: Annotated[str, typer.Argument(help="Deal (subject) id")],
    key: Annotated[str, typer.Argument(help="Fact key, e.g. financial.arr")],
) -> None:
    """Show every event recorded for one fact, oldest first."""
    settings = _require_settings()

    async def load() -> list:
        store = await _open_fact_store(settings)
        try:
            return await store.get_history(subject, key)
        finally:
            await store.close()

    events = asyncio.run(load())
    if not events:
        console.print(f"[yellow]No events for {key}.[/yellow]")
        return

    table = Table(title=f"{subject} / {key}", show_header=True)
    table.add_column("When", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source")
    table.add_column("By")
    table.add_column("Reason", style="dim")

    for event in events:
        table.add_row(
            event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type.value,
            event.display_value,
            event.source.value,
            event.created_by,
            event.reason or "",
        )
    console.print(table)


@app.command()
def resolve(
    subject: Annotated[str, typer.Argument(help="Deal (subject) id")],
    key: Annotated[str, typer.Argument(help="Fact key to settle")],
    value: Annotated[str, typer.Argument(help="Value to record (JSON or plain text)")],
    display: Annotated[
        Optional[str],
        typer.Option("--display", help="Display value (defaults to VALUE)"),
    ] = None,
    by: Annotated[str, typer.Option("--by", help="Who resolved it")] = "cli",
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", "-r", help="Why this value is correct"),
    ] = None,
) -> None:
    """Settle a fact with a human override, closing any open dispute."""
    settings = _require_settings()
    try:
        parsed = orjson.loads(value)
    except orjson.JSONDecodeError:
        parsed = value

    async def run() -> None:
        store = await _open_fact_store(settings)
        try:
            await store.resolve_dispute(
                subject,
                key,
                parsed,
                display or value,
                resolved_by=by,
                source=FactSource.BA_OVERRIDE,
                reason=reason,
            )
        finally:
            await store.close()

    try:
        asyncio.run(run())
    except DDEError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    console.print(f"[green]Resolved[/green] {key} = {display or value}")


@app.command()
def sessions(
    subject: Annotated[
        Optional[str],
        typer.Option("--subject", "-s", help="Only sessions for this deal"),
    ] = None,
    interrupted: Annotated[
        bool,
        typer.Option("--interrupted", "-i", help="Only sessions left running by a crash"),
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 20,
) -> None:
    """List analysis sessions, newest first."""
    settings = _require_settings()

    async def load() -> list:
        store = await _open_session_store(settings)
        try:
            if interrupted:
                found = await store.find_interrupted()
                return [
                    (s, await store.last_checkpoint_at(s.id))
                    for s in found
                    if subject is None or s.subject_id == subject
                ]
            found = await store.list_sessions(subject_id=subject, limit=limit)
            return [(s, None) for s in found]
        finally:
            await store.close()

    rows = asyncio.run(load())
    if not rows:
        console.print("[yellow]No sessions found.[/yellow]")
        return

    table = Table(title="Interrupted Sessions" if interrupted else "Sessions", show_header=True)
    table.add_column("Session", style="cyan")
    table.add_column("Subject")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Phase")
    table.add_column("Agents", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Started", style="dim")
    if interrupted:
        table.add_column("Resumable")

    for session, last_checkpoint in rows:
        style = _STATUS_STYLES[session.status]
        cells = [
            session.id,
            session.subject_id,
            session.mode.value,
            f"[{style}]{session.status.value}[/{style}]",
            session.phase_state.value,
            f"{session.completed_agents}/{session.total_agents}",
            f"${session.total_cost:.2f}",
            session.started_at.strftime("%Y-%m-%d %H:%M"),
        ]
        if interrupted:
            cells.append("yes" if last_checkpoint else "[red]no[/red]")
        table.add_row(*cells)

    console.print(table)


@app.command()
def checkpoints(
    session_id: Annotated[str, typer.Argument(help="Session id")],
) -> None:
    """List the retained checkpoints of a session, newest first."""
    settings = _require_settings()

    async def load() -> list:
        store = await _open_session_store(settings)
        manager = CheckpointManager(store, settings.CHECKPOINT_RETENTION)
        try:
            return await manager.history(session_id)
        finally:
            await store.close()

    found = asyncio.run(load())
    if not found:
        console.print(f"[yellow]No checkpoints for {session_id}.[/yellow]")
        return

    table = Table(title=f"Checkpoints for {session_id}", show_header=True)
    table.add_column("Created", style="dim")
    table.add_column("State", style="cyan")
    table.add_column("Completed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Cost", justify="right")

    for checkpoint in found:
        table.add_row(
            checkpoint.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            checkpoint.state.value,
            str(len(checkpoint.completed_agents)),
            str(len(checkpoint.failed_agents)),
            str(len(checkpoint.pending_agents)),
            f"${checkpoint.total_cost:.2f}",
        )
    console.print(table)


@app.command()
def cancel(
    session_id: Annotated[str, typer.Argument(help="Session id")],
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", "-r", help="Reason recorded on the session"),
    ] = None,
) -> None:
    """Mark an interrupted session failed without resuming it."""
    settings = _require_settings()

    async def run() -> str | None:
        store = await _open_session_store(settings)
        try:
            session = await store.get_session(session_id)
            if session is None:
                return "Unknown session"
            if session.status is not SessionStatus.RUNNING:
                return f"Session is {session.status.value}, not running"
            await store.mark_failed(session_id, reason or "Cancelled by user")
            return None
        finally:
            await store.close()

    problem = asyncio.run(run())
    if problem:
        error_console.print(f"[red]Error:[/red] {problem}")
        raise typer.Exit(1)
    console.print(f"[green]Cancelled[/green] {session_id}")


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    console.print("[bold]Deal Diligence Engine Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print()
        error_console.print("Check your environment variables or .env file.")
        error_console.print("  - MAX_BUDGET_USD must be greater than 0 when set")
        error_console.print("  - DEFAULT_MODE must be one of: full, lite, express")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()
    console.print(
        Panel(
            f"[bold]Facts:[/bold] {settings.facts_db_path}\n"
            f"[bold]Sessions:[/bold] {settings.sessions_db_path}",
            title="[bold cyan]Databases[/bold cyan]",
            border_style="cyan",
        )
    )
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"deal-diligence-engine version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
