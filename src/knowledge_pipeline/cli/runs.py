import time
from typing import Dict, Optional, Tuple

import typer
from rich.table import Table

from knowledge_pipeline.cli.utils import console, run_with_services
from knowledge_pipeline.entities import CollectionRun
from knowledge_pipeline.services import PipelineServices

RunStatus = Tuple[Optional[CollectionRun], Dict[str, int], Dict[str, int]]


def _format_time(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))


def _counts_table(title: str, counts: Dict[str, int]) -> Table:
    table = Table(title=title)
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="green")
    for status, count in sorted(counts.items()):
        table.add_row(status, str(count))
    return table


def status(run_id: int = typer.Argument(..., help="Collection run ID")) -> None:
    """Show the progress of a collection run."""

    async def run(services: PipelineServices) -> RunStatus:
        collection_run = await services.queue.get_collection_run(run_id)
        if collection_run is None:
            return None, {}, {}
        jobs = await services.queue.get_job_counts(run_id)
        items = await services.queue.get_work_item_counts(run_id)
        return collection_run, jobs, items

    try:
        collection_run, job_counts, item_counts = run_with_services(run)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    if collection_run is None:
        console.print(f"[red]Collection run {run_id} not found[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"Collection Run {run_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Source", collection_run.source)
    table.add_row("Status", collection_run.status)
    table.add_row("Phase", collection_run.current_phase or "-")
    table.add_row("Progress", collection_run.progress_message or "-")
    table.add_row("Documents collected", str(collection_run.documents_collected))
    table.add_row("Documents processed", str(collection_run.documents_processed))
    table.add_row("Started", _format_time(collection_run.started_at))
    table.add_row("Completed", _format_time(collection_run.completed_at))
    if collection_run.error_message:
        table.add_row("Error", f"[red]{collection_run.error_message}[/red]")
    console.print(table)

    if job_counts:
        console.print(_counts_table("Jobs", job_counts))
    if item_counts:
        console.print(_counts_table("Work Items", item_counts))


def cancel(run_id: int = typer.Argument(..., help="Collection run ID")) -> None:
    """Cancel a running collection run and its pending work items."""

    async def run(services: PipelineServices) -> Tuple[bool, int]:
        cancelled = await services.queue.cancel_collection_run(run_id)
        items = await services.queue.cancel_pending_work_items(run_id) if cancelled else 0
        return cancelled, items

    try:
        cancelled, items = run_with_services(run)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    if not cancelled:
        console.print(f"[yellow]Collection run {run_id} is not running[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[red]Collection run {run_id} cancelled[/red]")
    console.print(f"Cancelled work items: {items}")
