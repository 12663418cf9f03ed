import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console

from knowledge_pipeline.config.settings import settings
from knowledge_pipeline.pipeline.orchestrator import RepositoryRef
from knowledge_pipeline.services import PipelineServices, build_services

console = Console()

T = TypeVar("T")


async def _with_services(fn: Callable[[PipelineServices], Awaitable[T]]) -> T:
    services = await build_services(settings)
    try:
        return await fn(services)
    finally:
        await services.aclose()


def run_with_services(fn: Callable[[PipelineServices], Awaitable[T]]) -> T:
    """Build the services, run ``fn`` on a fresh event loop and release everything afterwards."""
    return asyncio.run(_with_services(fn))


def parse_repositories(values: Optional[List[str]]) -> Optional[List[RepositoryRef]]:
    if not values:
        return None
    repos = []
    for value in values:
        owner, _, repo = value.partition("/")
        if not owner or not repo or "/" in repo:
            raise typer.BadParameter(f"Expected OWNER/REPO, got '{value}'")
        repos.append(RepositoryRef(owner=owner, repo=repo))
    return repos
