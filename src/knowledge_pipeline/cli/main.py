"""knowledge-pipeline CLI - Main entry point."""

import logging

import typer

from knowledge_pipeline.cli.collect import collect, enqueue
from knowledge_pipeline.cli.database import init_db
from knowledge_pipeline.cli.jobs import drain, process_jobs, worker
from knowledge_pipeline.cli.runs import cancel, status
from knowledge_pipeline.cli.search import search
from knowledge_pipeline.config.settings import settings

logging.basicConfig(level=settings.log_level, format=settings.log_format)

app = typer.Typer(
    help="Collect, embed and search SDK knowledge",
    no_args_is_help=True,
)

app.command(name="init-db")(init_db)
app.command(name="collect")(collect)
app.command(name="enqueue")(enqueue)
app.command(name="process")(process_jobs)
app.command(name="worker")(worker)
app.command(name="drain")(drain)
app.command(name="status")(status)
app.command(name="cancel")(cancel)
app.command(name="search")(search)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
