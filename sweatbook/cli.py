"""Typer CLI for SweatBook."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
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
from .database import get_session
from .errors import DomainError
from .fees import calculate_fees
from .maintenance import purge_expired_sessions, run_notification_dispatch, run_waitlist_sweep
from .seed import seed_fake_data
from .storage import (
    ensure_root_token,
    fetch_root_token,
    init_db,
    issue_user_session,
    rotate_root_token,
    upgrade_database,
)

app = typer.Typer(help="SweatBook command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure the process can write to {settings.database_path} "
            "(run with sudo or adjust file ownership/permissions).",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("admin-token")
def admin_token() -> None:
    """Print the current root admin token."""
    init_db()
    token = fetch_root_token()
    typer.echo(token)


@app.command("rotate-admin-token")
def rotate_admin_token() -> None:
    """Rotate the root admin token."""
    try:
        init_db()
        token = rotate_root_token()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the root admin token")
        raise
    typer.echo(token)


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
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    ensure_root_token()
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI; the app starts APScheduler itself when enabled."""
    init_db()
    config = uvicorn.Config(
        "sweatbook.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting SweatBook on {host}:{port}")
    server.run()


@app.command("issue-session")
def issue_session(
    user_id: str = typer.Argument(..., help="Identity provider user id"),
    email: str = typer.Argument(..., help="Email address of the user"),
) -> None:
    """Issue a bearer session token for a user (development and support)."""
    init_db()
    with get_session() as session:
        user_session = issue_user_session(session, user_id=user_id, email=email)
        token = user_session.token
        expires_at = user_session.expires_at
    typer.echo(token)
    typer.echo(f"Expires at {expires_at.isoformat()} UTC", err=True)


@app.command("sweep-waitlist")
def sweep_waitlist() -> None:
    """Expire lapsed waitlist offers and notify the next people in line."""
    init_db()
    stats = run_waitlist_sweep()
    typer.echo(f"Waitlist sweep complete: {stats}")


@app.command("dispatch-notifications")
def dispatch_notifications(
    limit: int = typer.Option(100, "--limit", min=1, help="Maximum messages to send"),
    purge_sessions: bool = typer.Option(
        False, "--purge-sessions", help="Also delete expired user sessions"
    ),
) -> None:
    """Send queued notifications that are due."""
    init_db()
    stats = run_notification_dispatch(limit=limit)
    typer.echo(f"Notification dispatch complete: {stats}")
    if purge_sessions:
        removed = purge_expired_sessions()
        typer.echo(f"Removed {removed} expired sessions.")


@app.command("fee-quote")
def fee_quote(
    price: int = typer.Argument(..., min=0, help="Ticket price in minor units"),
    quantity: int = typer.Option(1, "--quantity", "-q", min=1),
    policy: str = typer.Option(
        settings.default_fee_policy, "--policy", help="ABSORB or PASS_THROUGH"
    ),
) -> None:
    """Print the fee breakdown for a ticket purchase."""
    try:
        breakdown = calculate_fees(price, quantity, policy)
    except DomainError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(breakdown.as_dict(), indent=2))


@app.command("seed-data")
def seed_data(
    hosts: int = typer.Option(2, "--hosts", min=1, help="Number of hosts to create"),
    events: int = typer.Option(
        settings.seed_events, "--events", min=1, help="Events to create per host"
    ),
    max_bookings: int = typer.Option(
        settings.seed_bookings_per_event,
        "--max-bookings",
        min=0,
        help="Maximum bookings to attach to each event",
    ),
    past_percent: int = typer.Option(
        40,
        "--past-percent",
        min=0,
        max=100,
        help="Percentage of events that already happened (0-100)",
    ),
):
    """Populate the database with fake events and bookings for testing."""
    stats = seed_fake_data(
        host_count=hosts,
        events_per_host=events,
        max_bookings_per_event=max_bookings,
        past_percentage=past_percent,
    )
    typer.echo(
        f"Seed complete: {stats['hosts']} hosts, {stats['events']} events, "
        f"{stats['bookings']} bookings created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    fee_rate: str | None = typer.Option(
        None, "--fee-rate", help="Platform fee rate as a decimal, e.g. 0.05"
    ),
    fee_fixed_per_ticket: int | None = typer.Option(
        None, "--fee-fixed-per-ticket", min=0, help="Fixed fee per ticket (minor units)"
    ),
    default_fee_policy: str | None = typer.Option(
        None, "--default-fee-policy", help="ABSORB or PASS_THROUGH for new events"
    ),
    default_currency: str | None = typer.Option(
        None, "--default-currency", help="Currency code for new events"
    ),
    refund_batch_size: int | None = typer.Option(
        None, "--refund-batch-size", min=1, help="Concurrent refunds per bulk batch"
    ),
    minimum_refund_amount: int | None = typer.Option(
        None, "--minimum-refund-amount", min=0, help="Skip smaller bulk refunds"
    ),
    waitlist_notification_hours: int | None = typer.Option(
        None,
        "--waitlist-notification-hours",
        min=1,
        help="Hours a waitlist offer stays open",
    ),
    waitlist_limit: int | None = typer.Option(
        None, "--waitlist-limit", min=0, help="Max active waitlist entries (0 = no limit)"
    ),
    reminder_lead_hours: int | None = typer.Option(
        None, "--reminder-lead-hours", min=0, help="Hours before start to send reminders"
    ),
    review_prompt_delay_hours: int | None = typer.Option(
        None,
        "--review-prompt-delay-hours",
        min=0,
        help="Hours after start to ask attendees for a review",
    ),
    session_ttl_hours: int | None = typer.Option(
        None, "--session-ttl-hours", min=1, help="Lifetime of issued user sessions"
    ),
    waitlist_sweep_minutes: int | None = typer.Option(
        None, "--waitlist-sweep-minutes", min=1, help="Minutes between waitlist sweeps"
    ),
    outbox_dispatch_minutes: int | None = typer.Option(
        None,
        "--outbox-dispatch-minutes",
        min=1,
        help="Minutes between notification dispatch runs",
    ),
    checkout_expiry_minutes: int | None = typer.Option(
        None,
        "--checkout-expiry-minutes",
        min=30,
        max=1440,
        help="Minutes an unpaid checkout holds its seats",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (waitlist sweep/notifications)",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=1, help="Default seed-data events per host"
    ),
    seed_bookings_per_event: int | None = typer.Option(
        None, "--seed-bookings-per-event", min=0, help="Default seed-data bookings"
    ),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to sweatbook.toml (default: ./sweatbook.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "fee_rate": fee_rate,
        "fee_fixed_per_ticket": fee_fixed_per_ticket,
        "default_fee_policy": default_fee_policy,
        "default_currency": default_currency,
        "refund_batch_size": refund_batch_size,
        "minimum_refund_amount": minimum_refund_amount,
        "waitlist_notification_hours": waitlist_notification_hours,
        "waitlist_limit": waitlist_limit,
        "reminder_lead_hours": reminder_lead_hours,
        "review_prompt_delay_hours": review_prompt_delay_hours,
        "session_ttl_hours": session_ttl_hours,
        "waitlist_sweep_minutes": waitlist_sweep_minutes,
        "outbox_dispatch_minutes": outbox_dispatch_minutes,
        "checkout_expiry_minutes": checkout_expiry_minutes,
        "enable_scheduler": enable_scheduler,
        "app_host": host,
        "app_port": port,
        "seed_events": seed_events,
        "seed_bookings_per_event": seed_bookings_per_event,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
