"""Command-line entry point."""

from __future__ import annotations

from pathlib import Path

import typer

from fieldbot import __version__
from fieldbot.config.loader import load_config
from fieldbot.logging import setup_logging
from fieldbot.session.manager import SessionStore

app = typer.Typer(name="fieldbot", help="Field-service ticketing assistant engine.", no_args_is_help=True)
sessions_app = typer.Typer(help="Inspect and prune stored sessions.", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")


def _store(config_path: Path | None) -> SessionStore:
    config = load_config(config_path)
    return SessionStore(config.sessions.storage_path, config.sessions)


@app.command()
def version() -> None:
    """Print the version."""
    typer.echo(f"fieldbot {__version__}")


@app.command()
def serve(
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Path to config.json"),
    host: str | None = typer.Option(None, help="Bind address (defaults to server.host)"),
    port: int | None = typer.Option(None, help="Port (defaults to server.port)"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    from fieldbot.api.app import create_app

    config = load_config(config_path)
    setup_logging(json_output=config.logging.json_output, level=config.logging.level)
    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.logging.level.lower(),
    )


@sessions_app.command("list")
def list_sessions(
    employee_id: str = typer.Argument(..., help="Employee whose sessions to list"),
    config_path: Path | None = typer.Option(None, "--config", "-c"),
) -> None:
    """List an employee's sessions, most recently active first."""
    sessions = _store(config_path).list_sessions(employee_id)
    if not sessions:
        typer.echo("No sessions.")
        return
    for s in sessions:
        title = s.title or "(untitled)"
        typer.echo(
            f"{s.id}  {s.last_message_at.isoformat(timespec='seconds')}  "
            f"messages={s.message_count}  tokens={s.total_input_tokens}+{s.total_output_tokens}  {title}"
        )


@sessions_app.command("messages")
def list_messages(
    session_id: str = typer.Argument(..., help="Session id"),
    limit: int = typer.Option(100, help="Page size (max 500)"),
    offset: int = typer.Option(0, help="Rows to skip"),
    after: int | None = typer.Option(None, "--after", help="Only messages after this sequence number"),
    config_path: Path | None = typer.Option(None, "--config", "-c"),
) -> None:
    """Print the stored message log of a session."""
    rows = _store(config_path).load_messages(session_id, limit=limit, offset=offset, after_sequence=after)
    if not rows:
        typer.echo("No messages.")
        return
    for row in rows:
        content = row.content if isinstance(row.content, str) else str(row.content or "")
        if row.tool_calls:
            names = ", ".join((tc.get("function") or {}).get("name", "?") for tc in row.tool_calls)
            content = f"{content} [tool_calls: {names}]".strip()
        typer.echo(f"#{row.sequence_number} {row.role}: {content[:200]}")


@sessions_app.command("prune")
def prune(
    employee_id: str = typer.Argument(..., help="Employee whose oldest sessions to delete"),
    keep: int | None = typer.Option(None, help="Sessions to keep (defaults to sessions.maxSessionsPerEmployee)"),
    config_path: Path | None = typer.Option(None, "--config", "-c"),
) -> None:
    """Delete the least recently active sessions beyond the quota."""
    store = _store(config_path)
    deleted = store.cleanup_old_sessions(employee_id, keep)
    typer.echo(f"Deleted {deleted} session(s).")
