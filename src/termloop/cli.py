"""Session administration CLI."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from termloop.config import load_settings
from termloop.core.recovery import SessionRecovery
from termloop.errors import TermloopError
from termloop.logging_utils import configure_logging
from termloop.store import FileSessionStore

app = typer.Typer(name="termloop", help="Terminal assistant run loop.", add_completion=False, rich_markup_mode="rich")
sessions_app = typer.Typer(help="Inspect and manage stored sessions.", add_completion=False)
app.add_typer(sessions_app, name="sessions")

console = Console(markup=True, highlight=False)

HomeOption = typer.Option(None, "--home", help="Data directory (defaults to TERMLOOP_HOME or ~/.termloop)")


def _store(home: Path | None) -> FileSessionStore:
    try:
        settings = load_settings() if home is None else load_settings(home=home)
    except TermloopError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    configure_logging(profile="console", level=settings.log_level)
    return FileSessionStore(settings.resolve_home())


def _timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _not_found(session_id: str) -> typer.Exit:
    console.print(f"[red]Session not found:[/red] {session_id}")
    return typer.Exit(1)


@sessions_app.command("list")
def list_sessions(home: Path | None = HomeOption) -> None:
    """List stored sessions, newest first."""
    summaries = _store(home).list_sessions()
    if not summaries:
        console.print("[dim]No sessions.[/dim]")
        return
    table = Table(padding=(0, 1))
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="dim")
    for summary in summaries:
        table.add_row(summary.id, escape(summary.title), str(summary.message_count), _timestamp(summary.updated_at))
    console.print(table)


@sessions_app.command("show")
def show_session(session_id: str, home: Path | None = HomeOption) -> None:
    """Print a session's persisted messages."""
    session = _store(home).load_session(session_id)
    if session is None:
        raise _not_found(session_id)
    console.print(f"[bold]{escape(session.title)}[/bold] ({session.id})")
    table = Table(show_header=True, padding=(0, 1))
    table.add_column("#", justify="right", style="dim")
    table.add_column("ID", style="dim")
    table.add_column("Role", style="bold green")
    table.add_column("Content")
    for index, message in enumerate(session.messages, start=1):
        content = message.content
        if message.tool_calls:
            content = (content + "\n" if content else "") + ", ".join(call.name for call in message.tool_calls)
        if message.aborted:
            content += " [aborted]"
        table.add_row(str(index), message.id, message.role.value, escape(content))
    console.print(table)


@sessions_app.command("export")
def export_session(session_id: str, home: Path | None = HomeOption) -> None:
    """Print a session as JSON."""
    exported = _store(home).export_session(session_id)
    if exported is None:
        raise _not_found(session_id)
    typer.echo(json.dumps(exported, ensure_ascii=False, indent=2))


@sessions_app.command("rename")
def rename_session(session_id: str, title: str, home: Path | None = HomeOption) -> None:
    """Change a session's title."""
    if not _store(home).rename_session(session_id, title):
        raise _not_found(session_id)
    console.print(f"Renamed {session_id}.")


@sessions_app.command("delete")
def delete_session(
    session_id: str,
    home: Path | None = HomeOption,
    archive: bool = typer.Option(False, "--archive", help="Keep a timestamped backup instead of deleting"),
) -> None:
    """Delete (or archive) a session."""
    if not _store(home).delete_session(session_id, archive=archive):
        raise _not_found(session_id)
    console.print(f"{'Archived' if archive else 'Deleted'} {session_id}.")


@sessions_app.command("rollback")
def rollback_session(session_id: str, message_id: str, home: Path | None = HomeOption) -> None:
    """Drop a message and everything after it."""
    result = SessionRecovery(_store(home)).rollback_to_message(session_id, message_id)
    if not result.ok:
        console.print(f"[red]Message not found:[/red] {message_id}")
        raise typer.Exit(1)
    console.print(f"Removed {result.removed_count} message(s) from {session_id}.")
