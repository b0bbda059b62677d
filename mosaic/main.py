"""
Mosaic - CLI Entry Point
-------------------------
Exposes Typer commands for every pipeline operation.

Usage:
    python -m mosaic.main init-db                      # Create tables
    python -m mosaic.main add-item USER "text..."      # Seed a raw note
    python -m mosaic.main process ITEM_ID [--rerun]    # Run the pipeline over one item
    python -m mosaic.main process-pending USER         # Every raw item, via the worker pool
    python -m mosaic.main extract-all USER             # Entity extraction over all items
    python -m mosaic.main resolve USER                 # Merge near-duplicate entities
    python -m mosaic.main graph USER --out graph.json  # Build / export the knowledge graph
    python -m mosaic.main project USER                 # Recompute 2D positions
    python -m mosaic.main search USER "query"          # Hybrid search
    python -m mosaic.main logs USER [--failures]       # Processing log
    python -m mosaic.main stats USER                   # Processing statistics
"""
from __future__ import annotations

import asyncio
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mosaic.config import load_config
from mosaic.errors import MosaicError
from mosaic.pipeline import MosaicPipeline
from mosaic.schemas import ItemStatus, ItemType, ProcessingOutcome
from mosaic.storage.database import Database
from mosaic.storage.items import ItemRepository
from mosaic.storage.processing_logs import ProcessingLogRepository
from mosaic.utils.helpers import save_json, truncate_text
from mosaic.utils.logger import setup_logger

app = typer.Typer(
    name="mosaic",
    help="Mosaic - personal knowledge base pipeline CLI",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option("config/config.yaml", "--config", "-c", help="Path to config YAML")


# --- Helpers ------------------------------------------------------------------

def _init(config_path: str) -> dict:
    load_dotenv()
    cfg = load_config(config_path)
    setup_logger(cfg.get("logging"))
    return cfg


def _pipeline(config_path: str) -> MosaicPipeline:
    cfg = _init(config_path)
    try:
        return MosaicPipeline.build(cfg)
    except MosaicError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


def _print_outcome(outcome: ProcessingOutcome) -> None:
    colour = "green" if outcome.success else "red"
    body = (
        f"[bold]Status[/bold]    : [{colour}]{outcome.status.value}[/{colour}]\n"
        f"[bold]Chunks[/bold]    : {outcome.chunk_count}\n"
        f"[bold]Tags[/bold]      : {', '.join(outcome.tags) or '-'}\n"
        f"[bold]Tasks[/bold]     : {outcome.task_count}   "
        f"[bold]Events[/bold]: {outcome.event_count}\n"
        f"[bold]Entities[/bold]  : {'ok' if outcome.entity_extraction_ok else 'failed'}\n"
        f"[bold]Time[/bold]      : {outcome.processing_time_ms} ms"
    )
    if outcome.summary:
        body += f"\n\n{outcome.summary}"
    if not outcome.success:
        body += f"\n\n[red]{outcome.message}[/red]"
    console.print(Panel(body, title=f"[bold]{outcome.item_id}[/bold]", border_style=colour, expand=False))


# --- Commands -----------------------------------------------------------------

@app.command("init-db")
def init_db(config: str = ConfigOption) -> None:
    """Create every table in the configured database."""
    cfg = _init(config)
    Database.from_config(cfg).create_all()
    console.print("[green][OK] Database schema ready[/green]")


@app.command("add-item")
def add_item(
    user_id: str = typer.Argument(..., help="Owner of the item"),
    text: str = typer.Argument(..., help="Note body, or task / event description"),
    item_type: ItemType = typer.Option(ItemType.NOTE, "--type", "-t", help="note | task | event"),
    title: Optional[str] = typer.Option(None, "--title", help="Optional title"),
    config: str = ConfigOption,
) -> None:
    """Store a new raw item, ready for processing."""
    cfg = _init(config)
    db = Database.from_config(cfg)
    db.create_all()
    item = ItemRepository(db).create_item(user_id, item_type, title=title, raw_text=text)
    console.print(f"[green][OK][/green] {item.item_type.value} created: [bold]{item.id}[/bold]")


@app.command()
def process(
    item_id: str = typer.Argument(..., help="Item to process"),
    rerun: bool = typer.Option(False, "--rerun", help="Reprocess a processed / failed item"),
    config: str = ConfigOption,
) -> None:
    """Run chunking, embedding, extraction and entity extraction over one item."""
    pipeline = _pipeline(config)
    try:
        outcome = asyncio.run(pipeline.process_item(item_id, rerun=rerun, source="cli"))
    except MosaicError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    _print_outcome(outcome)
    if not outcome.success:
        raise typer.Exit(1)


@app.command("process-pending")
def process_pending(
    user_id: str = typer.Argument(..., help="User whose raw items are processed"),
    config: str = ConfigOption,
) -> None:
    """Submit every raw item of a user to the bounded worker pool."""
    pipeline = _pipeline(config)
    pending = pipeline.items.list_items(user_id, status=ItemStatus.RAW)
    if not pending:
        console.print("[yellow]No raw items to process.[/yellow]")
        return

    async def _run():
        pool = pipeline.worker_pool()
        for item in pending:
            pool.submit(item.id, source="cli-batch")
        outcomes = await pool.join()
        return outcomes, pool.drain_errors()

    with console.status(f"[cyan]Processing {len(pending)} item(s)...[/cyan]"):
        outcomes, failures = asyncio.run(_run())

    table = Table("Item", "Status", "Chunks", "Tags", "Tasks", "Events", "ms", box=box.SIMPLE)
    for outcome in outcomes:
        if outcome is None:
            continue
        colour = "green" if outcome.success else "red"
        table.add_row(
            outcome.item_id[:8],
            f"[{colour}]{outcome.status.value}[/{colour}]",
            str(outcome.chunk_count),
            str(len(outcome.tags)),
            str(outcome.task_count),
            str(outcome.event_count),
            str(outcome.processing_time_ms),
        )
    console.print(table)
    for failure in failures:
        console.print(f"[red]{failure.item_id}: {failure.error}[/red]")


@app.command("extract-all")
def extract_all(
    user_id: str = typer.Argument(...),
    config: str = ConfigOption,
) -> None:
    """Run entity extraction over every note, task and event of a user."""
    pipeline = _pipeline(config)
    totals = pipeline.entity_service.extract_all(user_id)
    console.print(
        f"[green][OK][/green] {totals['items']} items | {totals['entities']} entities | "
        f"{totals['relationships']} relationships | [red]{totals['failed']} failed[/red]"
    )


@app.command()
def resolve(
    user_id: str = typer.Argument(...),
    config: str = ConfigOption,
) -> None:
    """Merge near-duplicate entities of a user."""
    pipeline = _pipeline(config)
    report = pipeline.resolve_entities(user_id)
    console.print(
        f"[green][OK][/green] {report.entities_seen} entities | "
        f"{report.pairs_compared} pairs compared | {report.merged_count} merged"
    )


@app.command()
def graph(
    user_id: str = typer.Argument(...),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Write the graph as JSON to this file"),
    config: str = ConfigOption,
) -> None:
    """Build the knowledge graph and print (or export) it."""
    pipeline = _pipeline(config)
    data = pipeline.export_graph(user_id)

    table = Table("Kind", "Count", box=box.SIMPLE, header_style="bold dim")
    for kind, count in data["summary"].items():
        table.add_row(kind, str(count))
    console.print(table)

    if out:
        save_json(data, out)
        console.print(f"[green][OK][/green] Graph written -> {out}")


@app.command()
def project(
    user_id: str = typer.Argument(...),
    method: Optional[str] = typer.Option(None, "--method", "-m", help="force | random"),
    config: str = ConfigOption,
) -> None:
    """Recompute and persist 2D positions for the user's graph."""
    pipeline = _pipeline(config)
    try:
        positions = pipeline.project_graph(user_id, method)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green][OK][/green] {len(positions)} positions saved")


@app.command()
def search(
    user_id: str = typer.Argument(...),
    query: str = typer.Argument(...),
    tag: Optional[list[str]] = typer.Option(None, "--tag", help="Only items carrying this tag"),
    limit: int = typer.Option(10, "--limit", "-n"),
    mode: str = typer.Option("hybrid", "--mode", help="hybrid | dense | text"),
    config: str = ConfigOption,
) -> None:
    """Search a user's items semantically, falling back to keyword search."""
    pipeline = _pipeline(config)
    hits = pipeline.searcher.search(user_id, query, tags=tag, limit=limit, mode=mode)
    if not hits:
        console.print("[yellow]No matches.[/yellow]")
        return

    table = Table("Score", "Match", "Type", "Title", "Snippet", box=box.SIMPLE, header_style="bold dim")
    for hit in hits:
        table.add_row(
            f"{hit.score:.2f}",
            hit.match,
            hit.item_type,
            truncate_text(hit.title or "-", 40),
            truncate_text(hit.snippet, 70),
        )
    console.print(table)


@app.command()
def logs(
    user_id: str = typer.Argument(...),
    failures: bool = typer.Option(False, "--failures", help="Only failed runs"),
    limit: int = typer.Option(20, "--limit", "-n"),
    config: str = ConfigOption,
) -> None:
    """Show the processing log of a user's items, newest first."""
    cfg = _init(config)
    repo = ProcessingLogRepository(Database.from_config(cfg))
    entries = repo.recent_failures(user_id, limit) if failures else repo.list_logs(user_id, limit=limit)

    table = Table("When", "Item", "Status", "ms", "Message", box=box.SIMPLE, header_style="bold dim")
    colours = {"completed": "green", "failed": "red", "started": "yellow"}
    for entry in entries:
        colour = colours[entry.status.value]
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            truncate_text(entry.item_title or entry.item_id, 30),
            f"[{colour}]{entry.status.value}[/{colour}]",
            str(entry.processing_time_ms or "-"),
            truncate_text(entry.message or "", 60),
        )
    console.print(table)


@app.command()
def stats(
    user_id: str = typer.Argument(...),
    config: str = ConfigOption,
) -> None:
    """Aggregate processing statistics for a user."""
    cfg = _init(config)
    result = ProcessingLogRepository(Database.from_config(cfg)).stats(user_id)
    console.print()
    console.print("[bold]Processing statistics[/bold]")
    console.print(f"  Total       : {result.total}")
    console.print(f"  Completed   : [green]{result.completed}[/green]")
    console.print(f"  Failed      : [red]{result.failed}[/red]")
    console.print(f"  In progress : [yellow]{result.in_progress}[/yellow]")
    avg = f"{result.avg_processing_time_ms:.0f} ms" if result.avg_processing_time_ms is not None else "-"
    console.print(f"  Avg time    : {avg}")


if __name__ == "__main__":
    app()
