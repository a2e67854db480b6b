"""Typer CLI for Turnout."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .errors import (
    AttendeeNotFoundError,
    CapacityExceededError,
    EventNotFoundError,
    InvalidTransitionError,
)
from .reconcile import reconcile_all_events, reconcile_event
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database
from .transitions import RSVPTransitionController

app = typer.Typer(help="Turnout command-line interface")
config_app = typer.Typer(help="View or update the persistent configuration file")
app.add_typer(config_app, name="config")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _fail(message: str) -> None:
    typer.secho(message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            _fail(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}."
            )
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "turnout.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Turnout on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("capacity")
def capacity(event_id: str = typer.Argument(..., help="Event id")) -> None:
    """Show the capacity state of an event."""
    init_db()
    try:
        state = RSVPTransitionController().capacity(event_id)
    except EventNotFoundError:
        _fail(f"Event {event_id} not found")
    typer.echo(f"State: {state.state}")
    if state.remaining != float("inf"):
        typer.echo(
            f"Remaining: {int(state.remaining)} ({state.capacity_percentage:.0%} full)"
        )
    else:
        typer.echo("Remaining: unlimited")
    typer.echo(f"Waitlisted: {state.waitlist_count}")
    if state.warning_message:
        typer.echo(state.warning_message)
    if state.slots_remaining_text:
        typer.echo(state.slots_remaining_text)


@app.command("waitlist")
def waitlist(event_id: str = typer.Argument(..., help="Event id")) -> None:
    """List the waitlist of an event in order."""
    init_db()
    try:
        ranking = RSVPTransitionController().waitlist(event_id)
    except EventNotFoundError:
        _fail(f"Event {event_id} not found")
    if not len(ranking):
        typer.echo("Waitlist is empty.")
        return
    for entry in ranking:
        label = entry.record.name or entry.user_id or entry.attendee_id
        typer.echo(f"{entry.position}. {label} ({entry.record.attendee_type})")


@app.command("rsvp")
def rsvp(
    event_id: str = typer.Argument(..., help="Event id"),
    user_id: str = typer.Argument(..., help="User id of the responding attendee"),
    status: str = typer.Argument(..., help="going or not-going"),
    name: str | None = typer.Option(None, "--name", help="Display name"),
) -> None:
    """Record a user's RSVP through the capacity checks."""
    init_db()
    try:
        result = RSVPTransitionController().respond(event_id, user_id, status, name=name)
    except CapacityExceededError as exc:
        _fail(exc.user_message())
    except (EventNotFoundError, AttendeeNotFoundError) as exc:
        _fail(f"Not found: {exc}")
    except InvalidTransitionError as exc:
        _fail(str(exc))
    typer.echo(result.message)
    if result.cascaded_ids:
        typer.echo(f"Also marked {len(result.cascaded_ids)} family member(s) not going.")
    if result.cascade_failure is not None:
        typer.secho(str(result.cascade_failure), err=True, fg=typer.colors.YELLOW)


@app.command("reconcile")
def reconcile(
    event_id: str | None = typer.Argument(
        None, help="Event id; reconciles every event when omitted"
    ),
) -> None:
    """Recount occupancy counters and repair unfinished cascades."""
    init_db()
    if event_id is None:
        stats = reconcile_all_events()
        typer.echo(f"Reconcile complete: {stats}")
        return
    try:
        result = reconcile_event(event_id)
    except EventNotFoundError:
        _fail(f"Event {event_id} not found")
    typer.echo(json.dumps(result, indent=2))


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    attendees: int = typer.Option(
        settings.seed_attendees_per_event,
        "--attendees",
        min=0,
        help="Maximum RSVP attempts per event",
    ),
    waitlist_percent: int = typer.Option(
        settings.seed_waitlist_percent,
        "--waitlist-percent",
        min=0,
        max=100,
        help="Percentage of events with a waitlist (0-100)",
    ),
):
    """Populate the database with fake events and RSVPs for testing."""
    stats = seed_fake_data(
        event_count=events,
        attendees_per_event=attendees,
        waitlist_percent=waitlist_percent,
    )
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['attendees']} attendees "
        f"({stats['waitlisted']} waitlisted, {stats['rejected']} rejected)."
    )


@config_app.command("show")
def config_show(
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to turnout.toml (default: ./turnout.toml)"
    ),
) -> None:
    """Show the current effective configuration."""
    target_path = config_path or settings.config_path
    effective = settings_as_dict(load_settings(target_path))
    effective["config_path"] = str(target_path)
    typer.echo(json.dumps(effective, indent=2))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Configuration key"),
    value: str = typer.Argument(..., help="New value"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to turnout.toml (default: ./turnout.toml)"
    ),
) -> None:
    """Persist a single configuration value."""
    target_path = config_path or settings.config_path
    try:
        update_config_file({key: value}, path=target_path)
    except KeyError as exc:
        _fail(str(exc.args[0]))
    except ValueError as exc:
        _fail(f"Invalid value for {key}: {exc}")
    typer.echo(f"Updated {key} in {target_path}")


if __name__ == "__main__":
    app()
