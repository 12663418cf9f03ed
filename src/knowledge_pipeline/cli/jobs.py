from typing import Optional

import typer
from rich.table import Table

from knowledge_pipeline.cli.utils import console, run_with_services
from knowledge_pipeline.config.settings import settings
from knowledge_pipeline.pipeline.enqueue import enqueue_drain_job
from knowledge_pipeline.schemas.jobs import JobSummary
from knowledge_pipeline.services import PipelineServices
from knowledge_pipeline.worker import run_worker


def process_jobs(
    max_jobs: int = typer.Option(5, "--max-jobs", "-n", help="Maximum jobs to claim"),
) -> None:
    """Run one pass over the job queue."""

    async def run(services: PipelineServices) -> JobSummary:
        return await services.processor.process_next_jobs(max_jobs)

    try:
        summary = run_with_services(run)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    if not summary.processed:
        console.print("[yellow]No pending jobs[/yellow]")
        return

    table = Table(title="Job Processing Summary")
    table.add_column("Processed", style="cyan")
    table.add_column("Succeeded", style="green")
    table.add_column("Failed", style="red")
    table.add_row(str(summary.processed), str(summary.succeeded), str(summary.failed))
    console.print(table)
    for error in summary.errors:
        console.print(f"[red]{error}[/red]")


def worker(
    poll_interval: float = typer.Option(settings.worker_poll_interval, "--poll-interval", help="Seconds between polls"),
    max_jobs: int = typer.Option(settings.worker_max_jobs, "--max-jobs", "-n", help="Jobs claimed per poll"),
) -> None:
    """Poll the job queue until interrupted."""
    console.print(f"[green]Worker started[/green] (poll every {poll_interval}s, up to {max_jobs} jobs)")
    try:
        run_with_services(lambda services: run_worker(services.processor, poll_interval, max_jobs))
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped[/yellow]")


def drain(
    run_id: int = typer.Argument(..., help="Collection run ID"),
    batch_size: int = typer.Option(5, "--batch-size", min=1, help="Work items processed per job"),
) -> None:
    """Queue a job that processes the run's pending work items."""

    async def run(services: PipelineServices) -> Optional[int]:
        return await enqueue_drain_job(services.queue, run_id, batch_size)

    try:
        job_id = run_with_services(run)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    if job_id is None:
        console.print(f"[yellow]No pending work items for collection run {run_id}[/yellow]")
        return
    console.print(f"[green]Queued drain job {job_id} for collection run {run_id}[/green]")
