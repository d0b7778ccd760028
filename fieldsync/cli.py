"""fieldsync CLI - run syncs and inspect the local mirror."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .assets.photostore import PhotoStore
from .config import settings
from .errors import MirrorError
from .remote.client import FeatureServiceClient, FeatureServiceConfig
from .services import record_svc
from .sync import store
from .sync.field_mapper import normalize_relation_key
from .sync.orchestrator import SyncOrchestrator, SyncReport, SyncRequest
from .sync.overlay import EditOverlay

app = typer.Typer(
    name="fieldsync",
    help="Field inspection mirror - sync a remote feature service into a local store",
    no_args_is_help=True,
)
console = Console()


def _database() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    from .database import async_session_factory, engine

    return engine, async_session_factory


def _remote() -> FeatureServiceClient:
    return FeatureServiceClient(FeatureServiceConfig.from_settings(settings))


def _photo_store() -> PhotoStore:
    return PhotoStore(settings.photo_dir)


async def _prepare(engine: AsyncEngine) -> None:
    if "sqlite" in str(engine.url):
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


def _run(coro) -> Any:
    logging.basicConfig(level=settings.log_level)
    try:
        return asyncio.run(coro)
    except MirrorError as e:
        console.print(f"[red]{e.kind}: {e}[/red]")
        raise typer.Exit(1)


def _output_json(result: Any) -> None:
    console.print_json(json.dumps(result, default=str))


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _print_report(report: SyncReport) -> None:
    color = {"success": "green", "partial": "yellow", "cancelled": "yellow"}.get(report.outcome, "red")
    table = Table(title=f"Sync {report.scope_key} - [{color}]{report.outcome}[/{color}]")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for label, value in [
        ("Fetched", report.fetched),
        ("New", report.new),
        ("Updated", report.updated),
        ("Unchanged", report.unchanged),
        ("Soft-deleted", report.soft_deleted),
        ("Records before/after", f"{report.records_before}/{report.records_after}"),
        ("Missing relation key", report.rows_missing_key),
        ("Orphan children", report.orphan_children),
        ("Photos downloaded", report.photos_downloaded),
        ("Photos failed", report.photos_failed),
        ("Duration (ms)", report.duration_ms),
    ]:
        table.add_row(label, str(value))
    console.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")
    for error in report.errors:
        where = f" ({error.relation_key})" if error.relation_key else ""
        console.print(f"[red]x {error.kind}{where}: {error.message}[/red]")


@app.command("sync")
def sync_cmd(
    action_code: str = typer.Option(None, "--action-code", "-c", help="Sync one action code"),
    all_records: bool = typer.Option(False, "--all", help="Sync the whole mirror"),
    filter_json: str = typer.Option(None, "--filter", help='Structured filter, e.g. {"field":"ZONA","op":"eq","value":"18S"}'),
    since: datetime = typer.Option(None, "--since", help="Incremental: only rows edited since this time"),
    force_attachments: bool = typer.Option(False, "--force-attachments", help="Re-list attachments of every row"),
    no_attachments: bool = typer.Option(False, "--no-attachments", help="Skip attachment sync"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """Run one sync now and print its report."""
    if filter_json:
        try:
            filter_payload = json.loads(filter_json)
        except ValueError:
            console.print("[red]--filter is not valid JSON[/red]")
            raise typer.Exit(2)
    else:
        filter_payload = None

    async def _sync() -> SyncReport:
        request = SyncRequest.build(
            action_code=action_code,
            filter_payload=filter_payload,
            all_records=all_records,
            mode="incremental" if since else "full",
            since=since,
            force_attachments=force_attachments,
            sync_attachments=not no_attachments,
        )
        engine, factory = _database()
        await _prepare(engine)
        remote = _remote()
        try:
            orchestrator = SyncOrchestrator.from_settings(remote, factory, settings, _photo_store())
            return await orchestrator.run(request)
        finally:
            await remote.aclose()

    report = _run(_sync())
    if json_output:
        _output_json(report.to_dict())
    else:
        _print_report(report)
    if report.outcome == "failed":
        raise typer.Exit(1)


@app.command("status")
def status_cmd(
    scope: str = typer.Argument("*", help="Action code, or * for the full mirror"),
    limit: int = typer.Option(5, "--limit", "-n", help="Sync log entries to show"),
):
    """Show scope state, freshness and recent sync runs."""

    async def _status():
        engine, factory = _database()
        await _prepare(engine)
        async with factory() as db:
            state = await record_svc.get_scope_state(db, scope)
            fresh = await record_svc.needs_sync(db, scope, settings.sync_recent_threshold_minutes)
            log = await store.list_sync_log(db, scope, limit)
        return state, fresh, log

    state, fresh, log = _run(_status())
    console.print(f"[bold]Scope:[/bold] {state.scope_key}")
    console.print(f"Records: {state.record_count}")
    console.print(f"Last sync: {_fmt(state.last_sync)}  Last success: {_fmt(state.last_success)}")
    hint = "[yellow]needs sync[/yellow]" if fresh.needs_sync else "[green]fresh[/green]"
    console.print(f"Freshness: {hint} ({fresh.reason})")

    if log:
        table = Table(title="Recent runs")
        for col in ("Started", "Mode", "Outcome", "New", "Updated", "Deleted", "Photos", "ms"):
            table.add_column(col)
        for entry in log:
            table.add_row(
                _fmt(entry.started_at),
                entry.mode,
                entry.outcome,
                str(entry.records_new),
                str(entry.records_updated),
                str(entry.records_soft_deleted),
                f"{entry.photos_downloaded}/{entry.photos_failed}",
                _fmt(entry.duration_ms),
            )
        console.print(table)


@app.command("records")
def records_cmd(
    action_code: str = typer.Argument(..., help="Action code"),
    include_deleted: bool = typer.Option(False, "--include-deleted", help="Include soft-deleted rows"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List mirrored records for an action code (local edits merged)."""

    async def _records():
        engine, factory = _database()
        await _prepare(engine)
        async with factory() as db:
            return await record_svc.get_records(db, action_code, include_deleted=include_deleted)

    records = _run(_records())
    if json_output:
        _output_json([r.model_dump(mode="json") for r in records])
        return

    table = Table(title=f"Records for {action_code} ({len(records)})")
    for col in ("Relation key", "Occurred", "Component", "Supervisor", "Edited", "Deleted"):
        table.add_column(col)
    for r in records:
        table.add_row(
            r.relation_key,
            _fmt(r.occurred_at),
            _fmt(r.component),
            _fmt(r.supervisor_name),
            ", ".join(r.edited_fields) or "-",
            "yes" if r.is_deleted else "",
        )
    console.print(table)


@app.command("photos")
def photos_cmd(relation_key: str = typer.Argument(..., help="Record relation key")):
    """List stored photos for one record."""

    async def _photos():
        engine, factory = _database()
        await _prepare(engine)
        async with factory() as db:
            return await record_svc.get_photos(db, relation_key)

    photos = _run(_photos())
    table = Table(title=f"Photos for {relation_key} ({len(photos)})")
    for col in ("File", "Layer", "Size", "Path"):
        table.add_column(col)
    for p in photos:
        table.add_row(p.file_name, str(p.source_layer), _fmt(p.size_bytes), p.local_path)
    console.print(table)


@app.command("verify-photos")
def verify_photos_cmd(
    relation_key: str = typer.Option(None, "--key", "-k", help="Limit to one record"),
):
    """Report photo rows whose file is missing on disk."""
    if relation_key:
        relation_key = normalize_relation_key(relation_key) or relation_key

    async def _verify():
        engine, factory = _database()
        await _prepare(engine)
        async with factory() as db:
            return await store.verify_photo_files(db, relation_key)

    missing = _run(_verify())
    if not missing:
        console.print("[green]All photo files present.[/green]")
        return
    for photo in missing:
        console.print(f"[red]missing[/red] {photo.relation_key}/{photo.file_name} -> {photo.local_path}")
    raise typer.Exit(1)


@app.command("purge-photos")
def purge_photos_cmd(relation_key: str = typer.Argument(..., help="Record relation key")):
    """Remove a record's photo rows and files so the next sync re-fetches them."""
    relation_key = normalize_relation_key(relation_key) or relation_key

    async def _purge():
        engine, factory = _database()
        await _prepare(engine)
        async with factory() as db:
            return await store.purge_photos(db, relation_key, _photo_store())

    removed = _run(_purge())
    console.print(f"Purged {removed} photo(s) for {relation_key}")


@app.command("edit")
def edit_cmd(
    relation_key: str = typer.Argument(..., help="Record relation key"),
    field_name: str = typer.Argument(..., help="Editable field"),
    value: str = typer.Argument(None, help="New text; omit with --clear"),
    clear: bool = typer.Option(False, "--clear", help="Remove the local edit"),
):
    """Set (or clear) a local edit on a record field."""
    if value is None and not clear:
        console.print("[red]Provide a value or --clear[/red]")
        raise typer.Exit(2)

    async def _edit():
        engine, factory = _database()
        await _prepare(engine)
        overlay = EditOverlay(factory, settings.overlay_fields)
        await overlay.set(relation_key, field_name, None if clear else value)
        return await overlay.get_all(relation_key)

    _output_json(_run(_edit()))


@app.command("action-codes")
def action_codes_cmd(
    search: str = typer.Option("", "--search", "-s", help="Case-insensitive substring"),
    remote: bool = typer.Option(False, "--remote", help="Ask the feature service instead of the local mirror"),
):
    """List action codes known locally (or remotely)."""

    async def _codes() -> list[tuple[str, int | None]]:
        if remote:
            client = _remote()
            try:
                values = await client.distinct_values(
                    settings.action_code_field, search, layer_id=settings.parent_layer_id
                )
            finally:
                await client.aclose()
            return [(v, None) for v in values]
        engine, factory = _database()
        await _prepare(engine)
        async with factory() as db:
            codes = await record_svc.local_action_codes(db)
        needle = search.strip().lower()
        return [(c, n) for c, n in codes if needle in c.lower()]

    codes = _run(_codes())
    table = Table(title=f"Action codes ({len(codes)})")
    table.add_column("Code")
    table.add_column("Records", justify="right")
    for code, count in codes:
        table.add_row(code, _fmt(count))
    console.print(table)


@app.command("serve")
def serve_cmd(
    port: int = typer.Option(8030, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
):
    """Launch the mirror's HTTP API."""
    import uvicorn

    console.print(f"[bold cyan]Starting fieldsync at http://{host}:{port}[/bold cyan]")
    uvicorn.run("fieldsync.app:app", host=host, port=port)


if __name__ == "__main__":
    app()
