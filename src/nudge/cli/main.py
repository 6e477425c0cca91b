"""Nudge CLI: main entry point."""

import asyncio
from datetime import UTC, datetime

import click
from rich.console import Console
from rich.table import Table

from nudge.core.recurrence import InvalidRecurrenceExpression, cron_to_human, upcoming_occurrences

console = Console()

_STATUS_STYLE = {
    "fired": "green",
    "deactivated": "yellow",
    "idle": "dim",
    "skipped": "cyan",
    "failed": "bold red",
}


@click.group()
@click.version_option(package_name="nudge")
def cli():
    """Nudge: reminder scheduling and notification delivery."""


@cli.command()
def daemon():
    """Start the Nudge daemon (polling loop)."""
    from nudge.core.loop import run_daemon

    click.echo("Starting Nudge daemon...")
    asyncio.run(run_daemon())


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include idle reminders in the table")
def check(show_all: bool):
    """Run one polling cycle now and print what happened."""
    from nudge.core.orchestrator import build_scheduler

    async def _check():
        scheduler = build_scheduler()
        try:
            return await scheduler.run_cycle()
        finally:
            await scheduler.close()

    report = asyncio.run(_check())
    if report.error:
        console.print(f"[bold red]Could not load reminders:[/bold red] {report.error}")
        raise SystemExit(1)

    table = Table(title=f"Reminder cycle at {report.started_at:%Y-%m-%d %H:%M:%S} UTC")
    table.add_column("Reminder", justify="right")
    table.add_column("Status")
    table.add_column("Alert")
    table.add_column("Detail")
    for outcome in report.outcomes:
        if outcome.status == "idle" and not show_all:
            continue
        style = _STATUS_STYLE.get(outcome.status.value, "")
        detail = outcome.error or outcome.reason or ""
        if outcome.deliveries is not None:
            detail += f" ({outcome.deliveries.delivered} delivered, {outcome.deliveries.failed} failed)"
        table.add_row(
            str(outcome.reminder_id),
            f"[{style}]{outcome.status.value}[/{style}]" if style else outcome.status.value,
            outcome.alert_id or "",
            detail.strip(),
        )
    console.print(table)
    console.print(
        f"checked={len(report.outcomes)} fired={report.fired} "
        f"deactivated={report.deactivated} failed={report.failed}"
    )


@cli.command()
def cleanup():
    """Deactivate stale one-time and exhausted recurring reminders."""
    from nudge.core.orchestrator import build_scheduler

    async def _cleanup():
        scheduler = build_scheduler()
        try:
            return await scheduler.cleanup()
        finally:
            await scheduler.close()

    report = asyncio.run(_cleanup())
    console.print(
        f"Checked [bold]{report.checked}[/bold] reminders, "
        f"deactivated [bold]{report.deactivated}[/bold]."
    )
    if report.failed:
        console.print(f"[bold red]{report.failed} reminder(s) could not be checked[/bold red]")


@cli.command()
@click.argument("user_id")
def presets(user_id: str):
    """List the alert presets and contact modes saved by USER_ID."""
    from nudge.core.alerts import format_alert_name
    from nudge.db.store import PresetStore

    async def _load():
        store = PresetStore()
        return await store.list_alert_presets(user_id), await store.list_contact_modes(user_id)

    alert_presets, contact_modes = asyncio.run(_load())

    table = Table(title=f"Alert presets for {user_id}")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Offset")
    for preset in alert_presets:
        table.add_row(str(preset.id), preset.name, format_alert_name(preset.offset_ms))
    console.print(table)

    table = Table(title=f"Contact modes for {user_id}")
    table.add_column("ID", justify="right")
    table.add_column("Mode")
    table.add_column("Address")
    for mode in contact_modes:
        table.add_row(str(mode.id), str(mode.mode), mode.address)
    console.print(table)


@cli.command(name="next")
@click.argument("expression")
@click.option("-n", "--count", default=5, show_default=True, help="Number of occurrences")
@click.option("--tz", "timezone", default="UTC", show_default=True, help="Timezone for matching")
def next_(expression: str, count: int, timezone: str):
    """Show the upcoming occurrences of a cron EXPRESSION."""
    try:
        occurrences = upcoming_occurrences(expression, datetime.now(UTC), count, timezone)
    except InvalidRecurrenceExpression as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise SystemExit(1) from exc

    console.print(f"[bold]{cron_to_human(expression)}[/bold]")
    for when in occurrences:
        console.print(f"  {when:%a %Y-%m-%d %H:%M} UTC")
