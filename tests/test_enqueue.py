import pytest
import typer
from pydantic import ValidationError

from knowledge_pipeline.cli.utils import parse_repositories
from knowledge_pipeline.pipeline.enqueue import PRIORITY_COLLECT, enqueue_collection_run
from knowledge_pipeline.pipeline.orchestrator import DataCollectionOptions, RepositoryRef
from knowledge_pipeline.queues.store import JobQueue
from knowledge_pipeline.schemas.jobs import ForumCollectPayload, GitHubCollectPayload


@pytest.mark.asyncio
async def test_enqueue_creates_one_collect_job_per_repository(queue: JobQueue) -> None:
    options = DataCollectionOptions(
        sources=["github", "forum"],
        github_repos=[
            RepositoryRef(owner="openai", repo="openai-python"),
            RepositoryRef(owner="openai", repo="openai-node"),
        ],
        forum_categories=["api"],
        max_pages=3,
    )

    run_id = await enqueue_collection_run(queue, options)

    jobs = await queue.get_next_jobs(limit=10)
    assert [job.job_type for job in jobs] == ["github_collect", "github_collect", "forum_collect"]
    assert all(job.priority == PRIORITY_COLLECT and job.collection_run_id == run_id for job in jobs)
    first = GitHubCollectPayload.model_validate_json(jobs[0].payload)
    assert (first.owner, first.repo, first.max_pages) == ("openai", "openai-python", 3)
    assert ForumCollectPayload.model_validate_json(jobs[2].payload).categories == ["api"]

    run = await queue.get_collection_run(run_id)
    assert run is not None
    assert run.source == "github,forum"
    assert run.current_phase == "queued"


@pytest.mark.asyncio
async def test_enqueue_uses_default_repositories(queue: JobQueue) -> None:
    await enqueue_collection_run(queue, DataCollectionOptions(sources=["github"]))

    jobs = await queue.get_next_jobs(limit=10)
    repos = [GitHubCollectPayload.model_validate_json(job.payload).repo for job in jobs]
    assert repos == ["openai-python", "openai-node"]


def test_collection_options_validation() -> None:
    with pytest.raises(ValidationError):
        DataCollectionOptions(sources=[])
    with pytest.raises(ValidationError):
        DataCollectionOptions(sources=["slack"])
    with pytest.raises(ValidationError):
        DataCollectionOptions(sources=["github"], batch_size=0)


def test_parse_repositories() -> None:
    assert parse_repositories(None) is None
    (ref,) = parse_repositories(["openai/openai-python"]) or []
    assert str(ref) == "openai/openai-python"
    for bad in ("openai", "openai/", "/openai-python", "a/b/c"):
        with pytest.raises(typer.BadParameter):
            parse_repositories([bad])
