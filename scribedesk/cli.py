"""Command line entry point for scribedesk.

Serve the HTTP API and run operator tasks against the marketplace store:
- Store path and tunables come from env (SCRIBEDESK_*) and can be overridden by flags
- `serve` runs uvicorn against the app factory so workers rebuild from env
"""

import logging
import os
from pathlib import Path
from typing import Optional

import click
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Settings
from .errors import MarketError
from .marketplace import Marketplace
from .store import SQLiteStore


console = Console()


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [RichHandler(console=console, show_path=False, rich_tracebacks=True)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(os.path.join(log_dir, "scribedesk.log"), encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        handlers.append(handler)
    logging.basicConfig(level=level.upper(), format="%(message)s", datefmt="[%X]", handlers=handlers, force=True)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _marketplace(ctx: click.Context) -> Marketplace:
    if "marketplace" not in ctx.obj:
        ctx.obj["marketplace"] = Marketplace.from_settings(_settings(ctx))
    return ctx.obj["marketplace"]


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite database file (env: SCRIBEDESK_DB_PATH)",
)
@click.option("--log-level", default="INFO", show_default=True, help="Logging level")
@click.pass_context
def main_cli(ctx: click.Context, db_path: Optional[Path], log_level: str):
    """Transcription marketplace: jobs, claims, settlements and weekly payouts."""
    settings = Settings.from_env()
    if db_path:
        settings.db_path = str(db_path)
        # Propagate to uvicorn factory workers
        os.environ["SCRIBEDESK_DB_PATH"] = settings.db_path
    configure_logging(log_level, settings.log_dir)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main_cli.command()
@click.option("--host", default=None, help="Server host (env: HOST)")
@click.option("--port", default=None, type=int, help="Server port (env: PORT)")
@click.option("--reload/--no-reload", default=False, show_default=True, help="Restart on code changes")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], reload: bool):
    """Serve the HTTP API."""
    settings = _settings(ctx)
    host = host or settings.host
    port = port or settings.port
    console.print(f"Starting ScribeDesk on http://{host}:{port}")
    uvicorn.run(
        "scribedesk.server:app_factory",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        timeout_keep_alive=5,
    )


@main_cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database schema if it does not exist."""
    store = SQLiteStore(_settings(ctx).db_path)
    console.print(f"Schema ready at {store.db_path}")


@main_cli.command()
@click.option("--transcriber", "transcriber_id", type=int, default=None, help="Only this transcriber's entries")
@click.pass_context
def payouts(ctx: click.Context, transcriber_id: Optional[int]):
    """Show unpaid ledger entries grouped into weekly payout batches."""
    marketplace = _marketplace(ctx)
    batches = marketplace.payout_batches(transcriber_id)
    if not batches:
        console.print("No upcoming payouts.")
        return
    table = Table(title="Upcoming payouts")
    table.add_column("Week ending")
    table.add_column("Entry", justify="right")
    table.add_column("Job")
    table.add_column("Transcriber", justify="right")
    table.add_column("State")
    table.add_column("Share", justify="right")
    table.add_column("Batch total", justify="right")
    for batch in batches:
        for i, entry in enumerate(batch.entries):
            table.add_row(
                batch.week_ending.isoformat() if i == 0 else "",
                str(entry.entry_id),
                f"{entry.job_variant.value}:{entry.job_id}",
                str(entry.transcriber_id or "-"),
                entry.payout_state.value,
                f"{entry.transcriber_share} {entry.currency}",
                str(batch.total) if i == len(batch.entries) - 1 else "",
            )
    console.print(table)
    summary = marketplace.earnings(transcriber_id)
    console.print(f"Total upcoming: {summary.upcoming}")


@main_cli.command("mark-paid")
@click.argument("entry_id", type=int)
@click.pass_context
def mark_paid(ctx: click.Context, entry_id: int):
    """Mark a pending ledger entry as paid out."""
    try:
        entry = _marketplace(ctx).mark_paid_out(entry_id)
    except MarketError as e:
        raise click.ClickException(e.message)
    console.print(f"Entry {entry.entry_id} paid out: {entry.transcriber_share} {entry.currency}")


@main_cli.command("reconcile-leases")
@click.pass_context
def reconcile_leases(ctx: click.Context):
    """Clear stale transcriber leases and advance ledger entries of completed jobs."""
    marketplace = _marketplace(ctx)
    try:
        released = marketplace.reconcile_leases()
        advanced = marketplace.reconcile_ledger()
    except MarketError as e:
        raise click.ClickException(e.message)
    console.print(f"Released {len(released)} stale lease(s); advanced {len(advanced)} ledger entries")


def main():
    """Main entry point."""
    main_cli(obj={})


if __name__ == "__main__":
    main()
