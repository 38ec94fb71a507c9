"""Secure Entry CLI — operator commands for the verification service.

Commands:
  init-db     — create tables, add missing optional columns, backfill keys
  serve       — run the HTTP API
  sweep       — one sync-retry pass followed by one retention purge
  sync-retry  — retry unsynced entries only
  purge       — retention purge only
  schedule    — run the sweep on a timer (foreground)
  status      — sync counts and schema version
  stuck       — entries out of sync attempts or repeatedly kept by the purge
  reset-sync  — re-arm an entry for the retry sweep
  search      — resolve a key the way /search does
"""
from __future__ import annotations

import json
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="secure-entry",
    help="Visitor identity verification: records, archive sync, retention.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


def _capabilities():
    from secure_entry.database import SchemaCapabilityError, detect_schema_capabilities

    try:
        return detect_schema_capabilities()
    except SchemaCapabilityError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_cmd():
    """Create tables and bring an older entries table up to date."""
    from secure_entry.database import init_db

    try:
        with console.status("[bold]Preparing database..."):
            init_db()
    except Exception as exc:
        console.print(f"[red]Database setup failed:[/red] {exc}")
        raise typer.Exit(1)
    caps = _capabilities()
    console.print(f"[green]Database ready[/green] (entries schema v{caps.version})")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload", hidden=True),
):
    """Run the HTTP API."""
    import uvicorn

    console.print(f"Serving on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run("secure_entry.main:app", host=host, port=port, reload=reload)


@app.command("sweep")
def sweep():
    """Run one sync-retry pass and one retention purge."""
    from secure_entry.config import settings
    from secure_entry.database import SessionLocal
    from secure_entry.modules.scheduler import run_sweep, summarize

    results = run_sweep(
        settings=settings,
        session_factory=SessionLocal,
        capabilities=_capabilities(),
    )
    console.print(summarize(results))


@app.command("sync-retry")
def sync_retry():
    """Retry PENDING/FAILED entries still under the attempt cap."""
    from secure_entry.config import settings
    from secure_entry.database import SessionLocal
    from secure_entry.modules.archive_client import ArchiveClient
    from secure_entry.modules.sync_engine import run_sync_sweep

    if not settings.sync_configured:
        console.print("[yellow]Archive sync is not configured[/yellow] (set ARCHIVE_SYNC_URL and SYNC_TOKEN).")
        raise typer.Exit(0)

    report = run_sync_sweep(
        settings=settings,
        session_factory=SessionLocal,
        client=ArchiveClient(settings),
        capabilities=_capabilities(),
    )
    console.print(
        f"Attempted {report.attempted}: [green]{report.done} done[/green], "
        f"[red]{report.failed} failed[/red]"
    )
    if report.stuck:
        console.print(f"[yellow]{len(report.stuck)} stuck[/yellow]; see [cyan]secure-entry stuck[/cyan]")


@app.command("purge")
def purge():
    """Delete entries older than RETENTION_DAYS along with their photos."""
    from secure_entry.config import settings
    from secure_entry.database import SessionLocal
    from secure_entry.modules.archive_client import ArchiveClient
    from secure_entry.modules.object_archive import LocalObjectArchive
    from secure_entry.modules.record_store import RecordStore
    from secure_entry.modules.retention import purge_expired

    caps = _capabilities()
    db = SessionLocal()
    try:
        report = purge_expired(
            settings=settings,
            store=RecordStore(db, caps),
            objects=LocalObjectArchive(settings.OBJECT_STORE_DIR),
            client=ArchiveClient(settings),
        )
    finally:
        db.close()

    table = Table(title=f"Retention purge ({settings.RETENTION_DAYS} days)")
    table.add_column("Step")
    table.add_column("Count", justify="right")
    table.add_row("Expired entries examined", str(report.examined))
    table.add_row("Archive files deleted", str(report.archive_deleted))
    table.add_row("Objects deleted", str(report.objects_deleted))
    table.add_row("Rows deleted", str(report.rows_deleted))
    table.add_row("Deferred", str(report.deferred))
    table.add_row("Visit logs removed", str(report.visit_logs_purged + report.dangling_logs_swept))
    console.print(table)
    if report.stuck:
        console.print(f"[yellow]{len(report.stuck)} repeatedly deferred[/yellow]; see [cyan]secure-entry stuck[/cyan]")


@app.command("schedule")
def schedule():
    """Run the sweep every SWEEP_INTERVAL_MINUTES until interrupted."""
    from secure_entry.config import settings
    from secure_entry.database import SessionLocal
    from secure_entry.modules.scheduler import build_scheduler

    scheduler = build_scheduler(
        settings=settings,
        session_factory=SessionLocal,
        capabilities=_capabilities(),
        blocking=True,
    )
    console.print(f"Sweeping every [cyan]{settings.SWEEP_INTERVAL_MINUTES}[/cyan] min. Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        console.print("Stopped.")


@app.command("status")
def status():
    """Show sync state counts and the detected schema version."""
    from secure_entry.config import settings
    from secure_entry.database import SessionLocal
    from secure_entry.modules.record_store import RecordStore

    caps = _capabilities()
    db = SessionLocal()
    try:
        store = RecordStore(db, caps)
        counts = store.count_by_status()
        stuck_count = len(store.select_stuck(settings.SYNC_MAX_ATTEMPTS, limit=1000))
    finally:
        db.close()

    console.print("[bold]System[/bold]")
    console.print(f"  Entries schema: v{caps.version}")
    console.print(
        f"  Archive sync: {'[green]configured[/green]' if settings.sync_configured else '[yellow]not configured[/yellow]'}"
    )
    console.print(
        f"  Photo links: {'[green]configured[/green]' if settings.photo_links_configured else '[dim]off[/dim]'}"
    )
    console.print(f"  Retention: {settings.RETENTION_DAYS} days")

    console.print("\n[bold]Entries[/bold]")
    for state in ("PENDING", "DONE", "FAILED"):
        console.print(f"  {state}: {counts.get(state, 0):,}")
    if stuck_count:
        console.print(f"  [yellow]Stuck at {settings.SYNC_MAX_ATTEMPTS} attempts: {stuck_count}[/yellow]")


@app.command("stuck")
def stuck(limit: int = typer.Option(50, "--limit")):
    """List entries that need an operator.

    Covers entries that reached SYNC_MAX_ATTEMPTS without syncing and expired
    entries the purge has deferred PURGE_STUCK_AFTER times.
    """
    from secure_entry.config import settings
    from secure_entry.database import SessionLocal
    from secure_entry.modules.record_store import RecordStore

    caps = _capabilities()
    db = SessionLocal()
    try:
        store = RecordStore(db, caps)
        rows = store.select_stuck(settings.SYNC_MAX_ATTEMPTS, limit)
        purge_rows = store.select_purge_stuck(settings.PURGE_STUCK_AFTER, limit)
    finally:
        db.close()

    if not rows and not purge_rows:
        console.print("[green]No stuck entries.[/green]")
        return

    if rows:
        table = Table(title=f"Stuck entries ({len(rows)})")
        table.add_column("ID")
        table.add_column("Created")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Last error")
        for r in rows:
            table.add_row(r.id, str(r.created_at)[:19], r.sync_status, str(r.sync_attempts), (r.sync_error or "")[:60])
        console.print(table)

    if purge_rows:
        table = Table(title=f"Purge deferred ({len(purge_rows)})")
        table.add_column("ID")
        table.add_column("Created")
        table.add_column("Deferrals", justify="right")
        table.add_column("Archive file")
        for r in purge_rows:
            table.add_row(r.id, str(r.created_at)[:19], str(r.purge_attempts), getattr(r, "external_file_id", None) or "")
        console.print(table)


@app.command("reset-sync")
def reset_sync(entry_id: str = typer.Argument(..., help="Entry id to re-arm")):
    """Set an unsynced entry back to PENDING with zero attempts."""
    from secure_entry.database import SessionLocal
    from secure_entry.modules.record_store import RecordStore

    caps = _capabilities()
    db = SessionLocal()
    try:
        store = RecordStore(db, caps)
        reset = store.reset_sync(entry_id)
        current = None if reset else store.get_for_sync(entry_id)
    finally:
        db.close()

    if not reset:
        if current is None:
            console.print(f"[red]No entry with id {entry_id}[/red]")
        else:
            console.print(f"[red]Entry {entry_id} is already DONE; nothing to reset[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Entry {entry_id} reset to PENDING[/green]")


@app.command("search")
def search(
    value: str = typer.Argument(..., help="Document or registration number"),
    field: Optional[str] = typer.Option(None, "--field", help="Field hint, e.g. regNo or docNo"),
):
    """Resolve a key exactly as GET /search would (local records only)."""
    from secure_entry.database import SessionLocal
    from secure_entry.modules.record_store import RecordStore
    from secure_entry.modules.search_resolver import resolve_search

    caps = _capabilities()
    db = SessionLocal()
    try:
        outcome = resolve_search(RecordStore(db, caps), field or "", value)
    finally:
        db.close()
    console.print_json(json.dumps(outcome.body))


if __name__ == "__main__":
    app()
