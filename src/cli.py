#!/usr/bin/env python3
"""Command Line Interface for the DM Funnel Engine.

Usage:
    cd src
    python cli.py server                 # Start API server (pollers included)
    python cli.py scheduler              # Start pollers and sweeps without the API
    python cli.py load-funnel f.json --experience exp_1 --deploy
    python cli.py status                 # Conversation counts
    python cli.py monitor start <id>     # Ask the running server to poll a conversation
    python cli.py info                   # Show configuration
"""
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from core.config import get_settings
from core.logging_config import get_logger, setup_logging
from core.db import get_session

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

app = typer.Typer(help="DM Funnel Engine CLI")
monitor_app = typer.Typer(help="Conversation monitoring commands")
app.add_typer(monitor_app, name="monitor")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """DM Funnel Engine - scripted funnel conversations over direct messages."""
    log_level = "DEBUG" if verbose else SETTINGS.log_level
    setup_logging(level=log_level, json_format=SETTINGS.log_format == "json")


# =============================================================================
# Processes
# =============================================================================


@app.command("server")
def run_server(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(SETTINGS.api_port, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    typer.echo(f"Starting API server on {host}:{port}...")
    uvicorn.run("api.app:app", host=host, port=port, reload=reload)


@app.command("scheduler")
def run_scheduler_cmd() -> None:
    """Start pollers, the timeout sweep and nudges without the API."""
    from scheduler.runner import run_scheduler_blocking

    typer.echo("Starting scheduler...")
    run_scheduler_blocking()


# =============================================================================
# One-off Jobs
# =============================================================================


@app.command("sweep")
def run_sweep() -> None:
    """Abandon conversations past the inactivity ceiling."""
    from scheduler.jobs import run_timeout_sweep

    result = run_timeout_sweep()
    if result["success"]:
        summary = result["result"]
        typer.secho(
            f"✓ Checked {summary['checked']}, abandoned {summary['count']}", fg="green"
        )
    else:
        typer.secho(f"✗ Sweep failed: {result.get('error') or result['result']['errors']}", fg="red")
        raise typer.Exit(1)


@app.command("nudge")
def run_nudges() -> None:
    """Send due reminder nudges."""
    from scheduler.jobs import run_nudge_job

    result = run_nudge_job()
    if result["success"]:
        typer.secho(f"✓ Nudges sent: {result['result']['count']}", fg="green")
    else:
        typer.secho(f"✗ Nudge job failed: {result.get('error') or result['result']['errors']}", fg="red")
        raise typer.Exit(1)


# =============================================================================
# Conversations
# =============================================================================


@app.command("status")
def show_status(
    conversation_id: Optional[str] = typer.Argument(None, help="Conversation to show"),
) -> None:
    """Show one conversation, or counts by status."""
    from sqlalchemy import func, select

    from core.models import Conversation
    from domain.phase import classify_phase
    from services.conversation_store import ConversationStore
    from services.navigator import script_for

    with get_session() as session:
        if conversation_id:
            conversation = ConversationStore(session).get(conversation_id)
            if conversation is None:
                typer.secho(f"Conversation {conversation_id} not found", fg="red")
                raise typer.Exit(1)
            data = conversation.to_dict()
            data["phase"] = classify_phase(
                conversation.current_block_id, script_for(conversation)
            ).value
            typer.echo(json.dumps(data, indent=2))
            return

        rows = session.execute(
            select(Conversation.conversation_type, Conversation.status, func.count())
            .group_by(Conversation.conversation_type, Conversation.status)
        ).all()

    typer.echo("Conversations:")
    if not rows:
        typer.echo("  (none)")
    for conversation_type, status, count in rows:
        typer.echo(f"  {conversation_type:<9} {status:<10} {count}")


def _api_url(path: str) -> str:
    return f"http://127.0.0.1:{SETTINGS.api_port}{path}"


@monitor_app.command("start")
def monitor_start(
    conversation_id: str = typer.Argument(..., help="Conversation to poll"),
    foreground: bool = typer.Option(
        False, "--foreground", help="Poll in this process until the conversation stops"
    ),
) -> None:
    """Start polling a conversation."""
    if not foreground:
        response = httpx.post(_api_url(f"/conversations/{conversation_id}/monitoring/start"))
        response.raise_for_status()
        typer.echo(json.dumps(response.json(), indent=2))
        return

    from scheduler.runner import build_engine

    engine = build_engine()
    try:
        engine.registry.start(conversation_id)
        typer.echo(f"Polling {conversation_id} (Ctrl+C to stop)...")
        while engine.registry.is_running(conversation_id):
            time.sleep(1)
        status = engine.registry.status(conversation_id)
        typer.echo(f"Stopped: {status.stop_reason if status else 'unknown'}")
    except KeyboardInterrupt:
        typer.echo("Interrupted")
    finally:
        engine.shutdown()


@monitor_app.command("stop")
def monitor_stop(
    conversation_id: str = typer.Argument(..., help="Conversation to stop polling"),
) -> None:
    """Ask the running server to stop polling a conversation."""
    response = httpx.post(_api_url(f"/conversations/{conversation_id}/monitoring/stop"))
    response.raise_for_status()
    typer.echo(json.dumps(response.json(), indent=2))


# =============================================================================
# Setup
# =============================================================================


@app.command("init-db")
def init_database() -> None:
    """Create missing database tables."""
    from core.db import init_db

    result = init_db()
    typer.secho(f"✓ Database ready ({result['status']})", fg="green")
    if result["tables_created"]:
        typer.echo(f"  Created: {', '.join(result['tables_created'])}")
    for warning in result["warnings"]:
        typer.secho(f"  ! {warning}", fg="yellow")


@app.command("load-funnel")
def load_funnel(
    file_path: Path = typer.Argument(..., exists=True, readable=True, help="Funnel JSON file"),
    experience_id: str = typer.Option(..., "--experience", help="Experience the funnel serves"),
    name: Optional[str] = typer.Option(None, help="Funnel name (defaults to the file name)"),
    deploy: bool = typer.Option(False, "--deploy", help="Use this funnel for new joins"),
) -> None:
    """
    Load a funnel script from JSON.

    The file holds the flow (``blocks``, ``stages``, ``startBlockId``) and an
    optional ``resources`` map. Each load creates a new version.
    """
    from sqlalchemy import func, select, update

    from core.exceptions import ScriptError
    from core.models import Funnel
    from domain.script import FunnelScript

    data = json.loads(file_path.read_text(encoding="utf-8"))
    flow = data.get("flow", data)
    resources = data.get("resources") or {}

    try:
        script = FunnelScript.from_dict(flow, resources)
    except ScriptError as e:
        typer.secho(f"✗ Invalid funnel: {e}", fg="red")
        raise typer.Exit(1)
    for problem in script.problems():
        typer.secho(f"  ! {problem}", fg="yellow")

    with get_session() as session:
        latest = session.execute(
            select(func.max(Funnel.version)).where(Funnel.experience_id == experience_id)
        ).scalar()
        if deploy:
            session.execute(
                update(Funnel)
                .where(Funnel.experience_id == experience_id)
                .values(is_deployed=False)
            )
        funnel = Funnel(
            name=name or file_path.stem,
            version=(latest or 0) + 1,
            experience_id=experience_id,
            flow=flow,
            resources=resources,
            is_deployed=deploy,
        )
        session.add(funnel)
        session.flush()
        funnel_id = funnel.id
        version = funnel.version

    typer.secho(
        f"✓ Loaded funnel {funnel_id} v{version} ({len(script.blocks)} blocks)"
        + (" [deployed]" if deploy else ""),
        fg="green",
    )


@app.command("info")
def show_info() -> None:
    """Show application configuration info."""
    typer.echo("DM Funnel Engine Configuration:")
    typer.echo(f"  Environment: {SETTINGS.environment}")
    typer.echo(f"  Dry Run: {SETTINGS.dry_run}")
    typer.echo(f"  Log Level: {SETTINGS.log_level}")
    typer.echo(f"  Database: {SETTINGS.database_url}")
    typer.echo(f"  DM Provider Configured: {SETTINGS.is_provider_configured()}")
    typer.echo(
        f"  Poll Interval: {SETTINGS.poll_initial_interval_seconds}s for the first "
        f"{SETTINGS.poll_initial_window_seconds}s, then {SETTINGS.poll_regular_interval_seconds}s"
    )
    typer.echo(f"  Max Invalid Responses: {SETTINGS.max_invalid_responses}")
    typer.echo(f"  Conversation Timeout: {SETTINGS.conversation_timeout_hours}h")
    typer.echo(f"  Nudges PHASE1: {SETTINGS.nudge_schedule_phase1} min")
    typer.echo(f"  Nudges PHASE2: {SETTINGS.nudge_schedule_phase2} min")
    typer.echo(f"  Alerts: {', '.join(SETTINGS.get_enabled_services()) or 'none'}")


if __name__ == "__main__":
    app()
