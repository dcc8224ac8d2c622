#!/usr/bin/env python3
"""
Refractory Requirement Tracker — CLI entry point.

Usage examples:
  python main.py check                        # Verify setup (database, storage, settings)
  python main.py reconcile <owner>            # Recompute supplied totals from the ledger
  python main.py sweep <owner>                # Promote requirements due soon to Urgent
  python main.py stats <owner>                # Dashboard counts for one owner
  python main.py audit <owner>                # Recent writes for one owner

  python main.py watch <owner>                # Hourly urgency sweep + periodic backup
  python main.py watch <owner> --interval 600 # Sweep every 10 minutes

  python main.py backup                       # ZIP the database, documents and config
  python main.py serve --port 8000            # Run the dashboard API
"""
import asyncio
import json
import logging
import signal
import sys
import time
from pathlib import Path

import click

from config import Config, SETTINGS_FILENAME, config_dir
from tracker import analytics
from tracker.backup import BackupService
from tracker.blob_store import LocalBlobStore
from tracker.coordinator import MutationCoordinator
from tracker.database import SqliteEntityStore
from tracker.errors import StoreError
from tracker.scheduler import UrgencySweeper

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)


def _open(config: Config, owner: str) -> MutationCoordinator:
    """Load *owner*'s coordinator from the configured SQLite store."""
    config.ensure_output_dir()
    store = SqliteEntityStore(config.db_path)
    blob_store = LocalBlobStore(config.storage_dir, config.storage_base_url, config.max_upload_bytes)
    try:
        return asyncio.run(MutationCoordinator.load(
            store, owner,
            blob_store=blob_store,
            urgency_threshold_days=config.urgency_threshold_days,
        ))
    except StoreError as exc:
        click.echo(f"Error: could not load data for {owner}: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Refractory Requirement Tracker — POs, requirements and supply reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)


# --------------------------------------------------------------------
# check command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Verify that the database, document storage and settings are ready."""
    config = Config()

    click.echo("\n=== Tracker Setup Check ===\n")

    db_exists = config.db_path.exists()
    click.echo(f"  Database:         {'✓' if db_exists else '✗'}  {config.db_path}")
    if db_exists:
        counts = SqliteEntityStore(config.db_path).get_counts()
        for table, count in counts.items():
            click.echo(f"     {table:<20} {count} row(s)")
    else:
        click.echo("     → Created on first write (or run any command with an owner)")

    storage_ok = config.storage_dir.exists()
    click.echo(f"  Document storage: {'✓' if storage_ok else '✗'}  {config.storage_dir}")

    settings_file = config_dir() / SETTINGS_FILENAME
    click.echo(
        f"  Settings file:    {'✓' if settings_file.exists() else '–'}  {settings_file}"
        f"{'' if settings_file.exists() else '  (defaults in use)'}"
    )

    click.echo()
    click.echo(f"  Urgency threshold:  {config.urgency_threshold_days} day(s)")
    click.echo(f"  Sweep interval:     {config.urgency_sweep_interval_seconds}s")
    click.echo(
        f"  Backups:            {'on' if config.backup_enabled else 'off'}"
        f" (every {config.backup_interval_hours}h, keep {config.backup_retention_count})"
    )
    click.echo()


# --------------------------------------------------------------------
# reconcile command
# --------------------------------------------------------------------

@cli.command()
@click.argument("owner")
@click.pass_context
def reconcile(ctx: click.Context, owner: str) -> None:
    """
    Recompute every requirement of OWNER from the supply ledger.

    \b
    Supplied totals and status are rebuilt from supply history and written
    back where they had drifted.  Orphaned supply entries and requirements
    pointing at missing POs are reported, not repaired.
    """
    coordinator = _open(Config(), owner)
    report = coordinator.last_load

    click.echo()
    click.echo(f"  Purchase orders:  {report.purchase_orders}")
    click.echo(f"  Requirements:     {report.requirements}")
    click.echo(f"  Supply events:    {report.supply_events}")
    if report.skipped:
        click.echo(f"  ⚠ Skipped {report.skipped} malformed record(s)")
    click.echo()

    if report.repaired:
        click.echo(f"  Repaired ({len(report.repaired)}):")
        for req_id in report.repaired:
            req = coordinator.state.get_requirement(req_id)
            click.echo(f"    ✓ {req_id}  → {req.status if req else '?'}")
    else:
        click.echo("  ✓ All requirements match their supply ledger")
    for req_id in report.repair_failures:
        click.echo(f"    ✗ {req_id}  could not be written; rerun reconcile")

    if report.orphaned:
        click.echo(f"\n  ⚠ {len(report.orphaned)} orphaned supply event(s):")
        for event_id in report.orphaned:
            click.echo(f"    {event_id}")
    if report.dangling:
        click.echo(f"\n  ⚠ {len(report.dangling)} dangling reference(s):")
        for problem in report.dangling:
            click.echo(f"    {problem}")
    if report.promoted:
        click.echo(f"\n  Promoted to Urgent: {', '.join(report.promoted)}")
    click.echo()


# --------------------------------------------------------------------
# sweep command
# --------------------------------------------------------------------

@cli.command()
@click.argument("owner")
@click.pass_context
def sweep(ctx: click.Context, owner: str) -> None:
    """Promote OWNER's open requirements due soon to Urgent."""
    coordinator = _open(Config(), owner)
    # load() already runs one sweep
    promoted = coordinator.last_load.promoted
    if promoted:
        click.echo(f"Promoted {len(promoted)} requirement(s) to Urgent:")
        for req_id in promoted:
            req = coordinator.state.get_requirement(req_id)
            click.echo(f"  {req_id}  PO {req.po_number}  due {req.delivery_date.isoformat()}")
    else:
        click.echo("No requirements needed promotion.")


# --------------------------------------------------------------------
# stats command
# --------------------------------------------------------------------

@cli.command()
@click.argument("owner")
@click.option("--json", "as_json", is_flag=True, help="Print the full analytics report as JSON")
@click.pass_context
def stats(ctx: click.Context, owner: str, as_json: bool) -> None:
    """Show dashboard counts and supply efficiency for OWNER."""
    coordinator = _open(Config(), owner)
    state = coordinator.state

    if as_json:
        report = analytics.analytics_report(state.requirements, state.purchase_orders)
        report["summary"] = analytics.dashboard_summary(state.requirements)
        click.echo(json.dumps(report, indent=2, default=str))
        return

    summary = analytics.dashboard_summary(state.requirements)
    metrics = analytics.key_metrics(state.requirements, state.purchase_orders)
    click.echo()
    click.echo(f"  Purchase orders:   {metrics['po_count']}")
    click.echo(f"  Requirements:      {summary['total']}")
    click.echo(f"    Urgent (open):   {summary['urgent']}")
    click.echo(f"    Pending:         {summary['pending']}")
    click.echo(f"    In progress:     {summary['in_progress']}")
    click.echo(f"    Completed:       {summary['completed']}  ({summary['completion_rate']}%)")
    click.echo()
    click.echo(
        f"  Supplied:          {metrics['total_supplied']} / {metrics['total_required']}"
        f"  ({metrics['efficiency']}%)"
    )

    queue = analytics.supply_queue(state.requirements)
    if queue:
        click.echo("\n  Supply queue:")
        for req in queue[:10]:
            click.echo(
                f"    [{req.priority:<6}] {req.id}  PO {req.po_number}"
                f"  due {req.delivery_date.isoformat()}  {req.total_supplied}/{req.total_required}"
            )
    click.echo()


# --------------------------------------------------------------------
# audit command
# --------------------------------------------------------------------

@cli.command()
@click.argument("owner")
@click.option("--record", default=None, help="Show the full history of one record id")
@click.option("--limit", default=50, type=int, help="Number of entries (default: 50)")
@click.pass_context
def audit(ctx: click.Context, owner: str, record: str | None, limit: int) -> None:
    """Show recent writes made by OWNER."""
    config = Config()
    if not config.db_path.exists():
        click.echo(f"Error: database not found at {config.db_path}", err=True)
        sys.exit(1)
    store = SqliteEntityStore(config.db_path)
    entries = store.get_audit_log(record) if record else store.get_recent_audit_log(owner, limit)
    if not entries:
        click.echo("No audit entries.")
        return
    for e in entries:
        detail = json.loads(e["detail"]) if e.get("detail") else {}
        fields = ", ".join(detail.get("fields") or [])
        click.echo(
            f"  {e['timestamp'][:19]}  {e['action']:<8} {e['table_name']:<16} {e['record_id']}"
            f"{'  [' + fields + ']' if fields else ''}"
        )


# --------------------------------------------------------------------
# watch command
# --------------------------------------------------------------------

@cli.command()
@click.argument("owner")
@click.option(
    "--interval", "-i", default=None, type=int,
    help="Seconds between urgency sweeps (default: URGENCY_SWEEP_INTERVAL env var or 3600)",
)
@click.pass_context
def watch(ctx: click.Context, owner: str, interval: int | None) -> None:
    """
    Keep OWNER's requirements current: run the urgency sweep on an interval
    and take periodic backups.

    \b
    Press Ctrl-C (or send SIGINT/SIGTERM) for a graceful shutdown.
    """
    config = Config()
    if interval is not None:
        config.urgency_sweep_interval_seconds = interval

    click.echo(
        f"\n  Owner:     {owner}\n"
        f"  Interval:  every {config.urgency_sweep_interval_seconds}s\n"
        f"  Threshold: {config.urgency_threshold_days} day(s)\n"
        f"  Database:  {config.db_path}\n"
    )
    click.echo("  Press Ctrl-C to stop.\n")

    coordinator = _open(config, owner)
    sweeper = UrgencySweeper(
        lambda: [coordinator], config.urgency_sweep_interval_seconds, reload_first=True,
    )
    backups = BackupService(config)

    # load() has just swept
    sweeper.mark_run()

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)

        sweep_task = asyncio.create_task(sweeper.run_forever())
        try:
            while not sweep_task.done():
                await asyncio.to_thread(backups.run_if_due)
                await asyncio.wait({sweep_task}, timeout=60)
        finally:
            sweeper.stop()
            await sweep_task

    def _request_shutdown() -> None:
        logger.info("Shutdown signal received — stopping after the current sweep.")
        sweeper.stop()

    started = time.monotonic()
    try:
        asyncio.run(_run())
    finally:
        logger.info("Watch mode stopped after %.0fs.", time.monotonic() - started)


# --------------------------------------------------------------------
# backup command
# --------------------------------------------------------------------

@cli.command()
@click.argument("destination", type=click.Path(), default=None, required=False)
@click.pass_context
def backup(ctx: click.Context, destination: str | None) -> None:
    """
    Create a timestamped backup of the database, documents and config.
    """
    config = Config()
    service = BackupService(config, Path(destination) if destination else None)
    click.echo(f"Creating backup in: {service.backup_dir}")
    try:
        zip_path = service.create_backup()
    except Exception as e:
        click.echo(f"\n✗ Backup failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"\n✓ Backup successful: {zip_path.name}")


# --------------------------------------------------------------------
# serve command
# --------------------------------------------------------------------

@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
@click.option("--port", "-p", default=8000, type=int, help="Port (default: 8000)")
@click.option("--reload", "auto_reload", is_flag=True, help="Restart on code changes")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, auto_reload: bool) -> None:
    """Run the dashboard API with uvicorn."""
    import uvicorn

    uvicorn.run("dashboard.app:app", host=host, port=port, reload=auto_reload)


if __name__ == "__main__":
    cli()
