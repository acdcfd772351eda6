"""Typer CLI for EventBoard."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import load_settings, settings, settings_as_dict, update_config_file
from .documents import DocumentStore
from .projection import ProjectionEngine, imminent_events
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="EventBoard command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; the carousel timer starts with it."""
    init_db()
    config = uvicorn.Config(
        "eventboard.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting EventBoard on {host}:{port} (namespace {settings.namespace})")
    server.run()


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
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    banners: int = typer.Option(
        settings.seed_banners, "--banners", min=0, help="Number of banners to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
    seed: int | None = typer.Option(None, "--seed", help="Random seed"),
):
    """Populate the configured namespace with fake events and banners."""
    stats = seed_fake_data(
        DocumentStore(settings.namespace),
        event_count=events,
        banner_count=banners,
        max_rsvps_per_event=max_rsvps,
        seed=seed,
    )
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['banners']} banners, "
        f"{stats['rsvps']} RSVPs created."
    )


async def _project_once(engine: ProjectionEngine) -> list:
    await engine.start()
    try:
        await engine.settle()
        return engine.events
    finally:
        engine.stop()


@app.command("events")
def list_events(
    viewer: str | None = typer.Option(
        None, "--viewer", help="Viewer id used for the attending flag"
    ),
    imminent: bool = typer.Option(
        False, "--imminent", help="Only events starting within the imminent window"
    ),
):
    """Run one projection pass and print the board as JSON."""
    init_db()
    engine = ProjectionEngine(
        DocumentStore(settings.namespace),
        viewer_id=viewer,
        rsvp_read_timeout=settings.rsvp_read_timeout_seconds,
        live_rsvp_refresh=False,
    )
    events = asyncio.run(_project_once(engine))
    if imminent:
        events = imminent_events(events, window=settings.imminent_window)
    payload = [
        {
            "id": event.id,
            "title": event.title,
            "starts_at": event.starts_at.isoformat(),
            "attendee_count": event.attendee_count,
            "attending": event.viewer_attending,
        }
        for event in events
    ]
    typer.echo(json.dumps(payload, indent=2))


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    namespace: str | None = typer.Option(
        None, "--namespace", help="Path prefix isolating this deployment's data"
    ),
    admin_pin: str | None = typer.Option(
        None, "--admin-pin", help="PIN that unlocks owner mode (not a security control)"
    ),
    carousel_interval_seconds: int | None = typer.Option(
        None, "--carousel-interval", min=1, help="Seconds between banner rotations"
    ),
    imminent_window_hours: int | None = typer.Option(
        None, "--imminent-window-hours", min=1, help="Hours ahead for the 'soon' alert"
    ),
    rsvp_read_timeout_seconds: float | None = typer.Option(
        None, "--rsvp-read-timeout", min=0.1, help="Per-event RSVP read timeout"
    ),
    live_rsvp_refresh: bool | None = typer.Option(
        None,
        "--live-rsvp-refresh/--no-live-rsvp-refresh",
        help="Re-project when a watched event's RSVPs change",
    ),
    rsvp_watch_limit: int | None = typer.Option(
        None, "--rsvp-watch-limit", min=0, help="Maximum events with live RSVP watches"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Run the carousel timer with the web app",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventboard.toml (default: ./eventboard.toml)"
    ),
) -> None:
    """Show or update configuration stored in eventboard.toml."""
    updates = {
        "namespace": namespace,
        "admin_pin": admin_pin,
        "carousel_interval_seconds": carousel_interval_seconds,
        "imminent_window_hours": imminent_window_hours,
        "rsvp_read_timeout_seconds": rsvp_read_timeout_seconds,
        "live_rsvp_refresh": live_rsvp_refresh,
        "rsvp_watch_limit": rsvp_watch_limit,
        "enable_scheduler": enable_scheduler,
        "app_host": host,
        "app_port": port,
    }
    updates = {key: value for key, value in updates.items() if value is not None}

    if updates:
        new_settings = update_config_file(updates, path=config_path)
        typer.echo(f"Updated {new_settings.config_path}")
    else:
        new_settings = load_settings(config_path) if config_path else settings

    if show or not updates:
        typer.echo(json.dumps(settings_as_dict(new_settings), indent=2))


if __name__ == "__main__":
    app()
