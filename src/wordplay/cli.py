"""WordPlay CLI: review items, inspect progress, back up and sync."""
import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, List, Optional

import typer

from wordplay.app import WordPlayApp
from wordplay.config import ensure_directories
from wordplay.exceptions import WordPlayError
from wordplay.logging_config import setup_logging
from wordplay.models.progress_models import ConflictChoice, LearningRecord, SyncStrategy
from wordplay.services import snapshot_codec

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="wordplay: spaced repetition progress with cross-device sync.",
    no_args_is_help=True,
)


def create_app() -> WordPlayApp:
    """Build the application for one command invocation."""
    return WordPlayApp()


def _get_app(ctx: typer.Context) -> WordPlayApp:
    if ctx.obj is None:
        ctx.obj = create_app()
        ctx.call_on_close(lambda: ctx.obj.db.close())
    return ctx.obj


def _fail(error: WordPlayError) -> None:
    logger.error("%s", error)
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1)


def _describe(record: LearningRecord) -> str:
    return (
        f"{record.item_id}: mastery {record.mastery_level}, accuracy {record.accuracy:.0%}, "
        f"interval {record.interval}d, next {record.next_review_at:%Y-%m-%d %H:%M}"
    )


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log debug output.")] = False,
):
    """Global settings for wordplay."""
    ensure_directories()
    setup_logging(level="DEBUG" if verbose else None)


@app.command()
def review(
    ctx: typer.Context,
    item_id: Annotated[str, typer.Argument(help="Vocabulary item id.")],
    quality: Annotated[int, typer.Argument(help="Recall quality, 0 (forgot) to 5 (perfect).")],
    time_spent: Annotated[float, typer.Option(help="Seconds spent on the item.")] = 0.0,
):
    """Record a review of an item."""
    try:
        record = _get_app(ctx).store.review(item_id, quality, time_spent)
    except WordPlayError as e:
        _fail(e)
    typer.echo(_describe(record))


@app.command()
def due(ctx: typer.Context):
    """List items due for review."""
    records = _get_app(ctx).store.due()
    if not records:
        typer.echo("Nothing due.")
    for record in records:
        typer.echo(_describe(record))


@app.command("new")
def new_items(
    ctx: typer.Context,
    item_ids: Annotated[List[str], typer.Argument(help="All known item ids.")],
    limit: Annotated[Optional[int], typer.Option(help="Maximum number of items.")] = None,
):
    """List item ids that have never been reviewed."""
    for item_id in _get_app(ctx).store.new(item_ids, limit):
        typer.echo(item_id)


@app.command()
def weak(
    ctx: typer.Context,
    limit: Annotated[Optional[int], typer.Option(help="Maximum number of items.")] = None,
):
    """List the reviewed items with the lowest accuracy."""
    try:
        records = _get_app(ctx).store.weakest(limit)
    except WordPlayError as e:
        _fail(e)
    for record in records:
        typer.echo(_describe(record))


@app.command()
def stats(ctx: typer.Context):
    """Show overall progress statistics."""
    summary = _get_app(ctx).store.overall_stats()
    typer.echo(f"Items studied:    {summary.total_items_studied}")
    typer.echo(f"Average accuracy: {summary.average_accuracy:.0%}")
    typer.echo(f"Time spent:       {summary.total_time_spent:.0f}s")
    typer.echo(f"Current streak:   {summary.current_streak} day(s)")
    typer.echo(f"Best streak:      {summary.best_streak} day(s)")
    typer.echo(f"Mastered items:   {summary.mastered_items}")


@app.command("export")
def export_data(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="File to write the backup to.")],
):
    """Export all progress to a backup file."""
    store = _get_app(ctx).store
    snapshot = store.export_snapshot()
    path.write_text(snapshot_codec.serialize(snapshot), encoding="utf-8")
    typer.echo(f"Exported {len(snapshot.records)} records to {path}")


@app.command("import")
def import_data(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Backup file to import.", exists=True, dir_okay=False)],
):
    """Replace all local progress with a backup file."""
    try:
        snapshot = snapshot_codec.deserialize(path.read_text(encoding="utf-8"))
    except WordPlayError as e:
        _fail(e)
    _get_app(ctx).store.replace_all(snapshot)
    typer.echo(f"Imported {len(snapshot.records)} records from {path}")


@app.command()
def sync(
    ctx: typer.Context,
    strategy: Annotated[SyncStrategy, typer.Option(help="How to reconcile with remote data.")] = SyncStrategy.MERGE,
):
    """Sync with remote storage."""
    wordplay_app = _get_app(ctx)

    async def run():
        try:
            return await wordplay_app.sync_service.sync(strategy)
        finally:
            await wordplay_app.stop()

    try:
        status = asyncio.run(run())
    except WordPlayError as e:
        _fail(e)
    typer.echo(f"Synced {status.record_count or 0} records ({strategy.value}).")
    if status.conflicts:
        typer.echo(f"{len(status.conflicts)} conflict(s) need attention; see 'wordplay conflicts'.")


@app.command()
def status(ctx: typer.Context):
    """Show the sync status."""
    current = _get_app(ctx).sync_service.status
    payload = snapshot_codec.status_to_dict(current)
    payload["conflicts"] = [conflict.item_id for conflict in current.conflicts]
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def conflicts(ctx: typer.Context):
    """List outstanding sync conflicts."""
    outstanding = _get_app(ctx).sync_service.status.conflicts
    if not outstanding:
        typer.echo("No conflicts.")
    for conflict in outstanding:
        typer.echo(f"{conflict.item_id} ({conflict.conflict_type.value})")
        typer.echo(f"  local:  {_describe(conflict.local_record)}")
        typer.echo(f"  remote: {_describe(conflict.remote_record)}")


@app.command()
def resolve(
    ctx: typer.Context,
    item_id: Annotated[str, typer.Argument(help="Item id of the conflict.")],
    choice: Annotated[ConflictChoice, typer.Argument(help="Which side to keep.")],
):
    """Resolve a sync conflict by keeping the local or the remote record."""
    try:
        _get_app(ctx).sync_service.resolve_conflict(item_id, choice)
    except WordPlayError as e:
        _fail(e)
    typer.echo(f"Kept the {choice.value} record for {item_id}.")


@app.command("auto-sync")
def auto_sync(
    ctx: typer.Context,
    enabled: Annotated[Optional[bool], typer.Argument(help="true to enable, false to disable.")] = None,
):
    """Show or change whether changes are synced automatically."""
    store = _get_app(ctx).store
    if enabled is not None:
        store.set_auto_sync(enabled)
    typer.echo(f"Auto-sync is {'on' if store.auto_sync_enabled() else 'off'}.")


@app.command()
def clear(
    ctx: typer.Context,
    yes: Annotated[bool, typer.Option("--yes", help="Do not ask for confirmation.")] = False,
):
    """Delete all local progress."""
    if not yes and not typer.confirm("Delete all local progress?"):
        raise typer.Abort()
    _get_app(ctx).store.clear_all()
    typer.echo("Cleared all local progress.")
