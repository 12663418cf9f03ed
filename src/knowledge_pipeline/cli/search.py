from typing import List

import typer
from rich.table import Table

from knowledge_pipeline.cli.utils import console, run_with_services
from knowledge_pipeline.schemas.documents import SearchResult
from knowledge_pipeline.services import PipelineServices


def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(5, "--limit", "-l", help="Maximum number of results"),
    show_content: bool = typer.Option(False, "--content", "-c", help="Show full content"),
) -> None:
    """Search the indexed knowledge for similar content."""

    async def run(services: PipelineServices) -> List[SearchResult]:
        return await services.vector_store.search(query, limit)

    try:
        results = run_with_services(run)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from e

    if not results:
        console.print(f"[yellow]No results found for query: '{query}'[/yellow]")
        return

    console.print(f"[green]Found {len(results)} results for:[/green] '{query}'")
    table = Table(title="Search Results")
    table.add_column("Rank", style="cyan", width=4)
    table.add_column("Document", style="green")
    table.add_column("Score", style="yellow", width=8)
    table.add_column("Content" if show_content else "Preview", style="white", max_width=80 if show_content else 60)

    for rank, result in enumerate(results, 1):
        text = result.content
        if not show_content and len(text) > 120:
            text = text[:120] + "..."
        table.add_row(str(rank), result.id, f"{result.score:.3f}", text)

    console.print(table)
