from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.table import Table

from knowledge_pipeline.cli.utils import console, parse_repositories, run_with_services
from knowledge_pipeline.errors import CollectionCancelledError
from knowledge_pipeline.pipeline.enqueue import enqueue_collection_run
from knowledge_pipeline.pipeline.orchestrator import CollectionResult, DataCollectionOptions
from knowledge_pipeline.services import PipelineServices


def _options(
    sources: List[str],
    repos: Optional[List[str]],
    categories: Optional[List[str]],
    batch_size: int,
    max_pages: int,
) -> DataCollectionOptions:
    try:
        return DataCollectionOptions(
            sources=sources,
            github_repos=parse_repositories(repos),
            forum_categories=categories or None,
            batch_size=batch_size,
            max_pages=max_pages,
        )
    except ValidationError as e:
        raise typer.BadParameter(str(e)) from e


def collect(
    sources: List[str] = typer.Option(["github", "forum"], "--source", "-s", help="Source to collect (github, forum)"),
    repos: Optional[List[str]] = typer.Option(None, "--repo", "-r", help="GitHub repository as OWNER/REPO"),
    categories: Optional[List[str]] = typer.Option(None, "--category", "-c", help="Forum category slug"),
    batch_size: int = typer.Option(20, "--batch-size", help="Documents stored per batch"),
    max_pages: int = typer.Option(5, "--max-pages", help="Issue pages fetched per repository"),
) -> None:
    """Run a full collection synchronously: collect, summarize, embed and store."""
    options = _options(sources, repos, categories, batch_size, max_pages)

    async def run(services: PipelineServices) -> CollectionResult:
        return await services.orchestrator().run_data_collection(options)

    try:
        result = run_with_services(run)
    except CollectionCancelledError as e:
        console.print(f"[yellow]Collection run {e.collection_run_id} was cancelled[/yellow]")
        raise typer.Exit(code=1) from e
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    table = Table(title=f"Collection Run {result.collection_run_id}")
    table.add_column("Documents Collected", style="cyan")
    table.add_column("Chunks Stored", style="green")
    table.add_row(str(result.documents_collected), str(result.documents_processed))
    console.print(table)


def enqueue(
    sources: List[str] = typer.Option(["github", "forum"], "--source", "-s", help="Source to collect (github, forum)"),
    repos: Optional[List[str]] = typer.Option(None, "--repo", "-r", help="GitHub repository as OWNER/REPO"),
    categories: Optional[List[str]] = typer.Option(None, "--category", "-c", help="Forum category slug"),
    max_pages: int = typer.Option(2, "--max-pages", help="Issue pages fetched per repository"),
) -> None:
    """Queue a collection run for the worker."""
    options = _options(sources, repos, categories, 20, max_pages)

    async def run(services: PipelineServices) -> int:
        return await enqueue_collection_run(services.queue, options)

    try:
        run_id = run_with_services(run)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[green]Queued collection run {run_id}[/green]")
    console.print(f"Track it with: knowledge-pipeline status {run_id}")
