import json
from typing import Any, List, Optional, Tuple

import pytest
from conftest import FakeEmbeddingProvider, FakeSummarizer, FakeVectorStore, RecordingSleep, issue_data
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.database import current_timestamp, get_session
from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.entities import Job, WorkItem
from knowledge_pipeline.pipeline.documents import DocumentBuilder, file_document_id, file_item_id
from knowledge_pipeline.pipeline.enqueue import enqueue_drain_job
from knowledge_pipeline.pipeline.processor import PRIORITY_BATCH, PRIORITY_DRAIN, PRIORITY_ITEM, JobProcessor
from knowledge_pipeline.queues.store import JobQueue, NewWorkItem
from knowledge_pipeline.rate_limiter import RateLimitConfig, RateLimiter
from knowledge_pipeline.schemas.jobs import JobKind, ProcessBatchPayload
from knowledge_pipeline.schemas.sources import ForumCategory, ForumPost, ForumPostItem, GitHubContent, GitHubIssue


class BrokenSummarizer(FakeSummarizer):
    async def summarize_issue(self, issue: GitHubIssue) -> None:
        raise RuntimeError("summarizer offline")


class FakeGitHubCollector:
    def __init__(self, issues: List[GitHubIssue], files: List[GitHubContent]) -> None:
        self.issues = issues
        self.files = files

    async def fetch_issues(
        self, owner: str, repo: str, state: str = "all", since: Optional[str] = None, max_pages: int = 5
    ) -> List[GitHubIssue]:
        return self.issues

    async def fetch_repository_content(self, owner: str, repo: str, path: str = "") -> List[GitHubContent]:
        return self.files


class FakeQueue:
    """Keeps jobs in memory so concurrent handlers never share a database connection."""

    def __init__(self, jobs: List[Job]) -> None:
        self.jobs = jobs
        self.created: List[Tuple[str, Any, Optional[int], int]] = []
        self.completed: List[int] = []
        self.failed: List[Tuple[int, str, bool]] = []

    async def get_next_jobs(self, limit: int = 5) -> List[Job]:
        return self.jobs[:limit]

    async def mark_job_running(self, job_id: int) -> bool:
        return True

    async def mark_job_completed(self, job_id: int) -> None:
        self.completed.append(job_id)

    async def mark_job_failed(self, job_id: int, error_message: str, requeue: bool = False) -> None:
        self.failed.append((job_id, error_message, requeue))

    async def create_job(
        self, job_type: JobKind, payload: Any, collection_run_id: Optional[int] = None, priority: int = 0
    ) -> int:
        self.created.append((job_type.value, payload, collection_run_id, priority))
        return len(self.created)


def make_processor(
    queue: Any,
    sleep: RecordingSleep,
    summarizer: Optional[FakeSummarizer] = None,
    vector_store: Optional[FakeVectorStore] = None,
    github_collector: Optional[FakeGitHubCollector] = None,
) -> JobProcessor:
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=1000, retry_attempts=1, base_delay_ms=10), sleep=sleep)
    return JobProcessor(
        queue=queue,
        documents=DocumentBuilder(summarizer or FakeSummarizer()),
        embedder=EmbeddingBatcher(FakeEmbeddingProvider(), limiter, sleep=sleep),
        vector_store=vector_store or FakeVectorStore(),
        github_collector=github_collector,
        sleep=sleep,
    )


def collect_job(job_id: int, repo: str) -> Job:
    return Job(
        id=job_id,
        job_type=JobKind.GITHUB_COLLECT.value,
        payload=json.dumps({"owner": "openai", "repo": repo}),
        collection_run_id=1,
        created_at=0,
    )


def issue_item(run_id: int, number: int, title: str = "Streaming responses hang") -> NewWorkItem:
    return NewWorkItem(
        collection_run_id=run_id,
        item_type="github_issue",
        item_id=f"openai_openai-python_{number}",
        source_data=issue_data(number, title),
    )


def forum_item(run_id: int, post_id: int, title: str) -> NewWorkItem:
    post = ForumPost(id=post_id, title=title, content="Lower the request rate until the 429 responses stop")
    return NewWorkItem(
        collection_run_id=run_id,
        item_type="forum_post",
        item_id=str(post_id),
        source_data=ForumPostItem(post=post, category=ForumCategory(id=5, name="API", slug="api")).model_dump(),
    )


async def queue_work_items(queue: JobQueue, run_id: int, items: List[NewWorkItem]) -> List[int]:
    work_item_ids = await queue.create_work_items(items)
    for work_item_id in work_item_ids:
        await queue.create_job(JobKind.PROCESS_ITEM, {"work_item_id": work_item_id}, run_id, priority=PRIORITY_ITEM)
    return work_item_ids


async def queue_issue_items(queue: JobQueue, run_id: int, titles: List[str]) -> List[int]:
    items = [issue_item(run_id, number, title) for number, title in enumerate(titles, start=1)]
    return await queue_work_items(queue, run_id, items)


@pytest.mark.asyncio
async def test_item_jobs_run_to_a_completed_collection(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    store = FakeVectorStore()
    processor = make_processor(queue, no_sleep, vector_store=store)
    run_id = await queue.start_collection_run("github,forum")
    items = [
        issue_item(run_id, 1, "skip: duplicate report"),
        issue_item(run_id, 2, "Streaming hangs"),
        forum_item(run_id, 77, "Batch API returns 429"),
    ]
    ids = await queue_work_items(queue, run_id, items)

    summaries = [await processor.process_next_jobs(max_jobs=1) for _ in range(3)]

    assert all(summary.processed == 1 and summary.succeeded == 1 for summary in summaries)
    statuses = [(await queue.get_work_item(work_item_id)).status for work_item_id in ids]
    assert statuses == ["skipped", "completed", "completed"]
    assert sorted(store.documents) == ["forum_77", "github_issue_openai_openai-python_2"]
    assert store.store_calls == 2
    forum_document = store.documents["forum_77"]
    assert forum_document.source == "forum"
    assert forum_document.metadata.category == "API"
    run = await queue.get_collection_run(run_id)
    assert run is not None
    assert run.status == "completed"
    assert run.documents_collected == 2
    assert (await processor.process_next_jobs()).processed == 0


@pytest.mark.asyncio
async def test_item_abandoned_by_a_crashed_worker_is_processed_on_retry(
    queue: JobQueue, session_maker: async_sessionmaker[AsyncSession], no_sleep: RecordingSleep
) -> None:
    store = FakeVectorStore()
    processor = make_processor(queue, no_sleep, vector_store=store)
    run_id = await queue.start_collection_run("github")
    (work_item_id,) = await queue_issue_items(queue, run_id, ["Streaming hangs"])
    (job,) = await queue.get_next_jobs()
    assert await queue.mark_job_running(job.id)
    assert await queue.mark_work_item_processing(work_item_id)
    an_hour_ago = current_timestamp() - 3600
    async with get_session(session_maker) as session:
        await session.execute(update(Job).where(Job.id == job.id).values(started_at=an_hour_ago))
        await session.execute(update(WorkItem).where(WorkItem.id == work_item_id).values(started_at=an_hour_ago))

    summary = await processor.process_next_jobs()

    assert (summary.processed, summary.succeeded) == (1, 1)
    work_item = await queue.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == "completed"
    assert list(store.documents) == ["github_issue_openai_openai-python_1"]
    run = await queue.get_collection_run(run_id)
    assert run is not None
    assert run.status == "completed"
    assert run.documents_collected == 1


@pytest.mark.asyncio
async def test_completed_work_item_is_not_processed_twice(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    summarizer = FakeSummarizer()
    processor = make_processor(queue, no_sleep, summarizer=summarizer)
    run_id = await queue.start_collection_run("github")
    (work_item_id,) = await queue_issue_items(queue, run_id, ["Streaming hangs"])
    await processor.process_next_jobs(max_jobs=1)

    work_item = await queue.get_work_item(work_item_id)
    assert work_item is not None
    assert await processor.process_work_item(work_item) is None
    assert summarizer.seen == ["issue:1"]


@pytest.mark.asyncio
async def test_item_failure_requeues_the_job(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    processor = make_processor(queue, no_sleep, summarizer=BrokenSummarizer())
    run_id = await queue.start_collection_run("github")
    (work_item_id,) = await queue_issue_items(queue, run_id, ["Streaming hangs"])

    summary = await processor.process_next_jobs(max_jobs=1)

    assert summary.failed == 1
    assert "summarizer offline" in summary.errors[0]
    work_item = await queue.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == "failed"
    (job,) = await queue.get_next_jobs()
    assert job.retry_count == 1


@pytest.mark.asyncio
async def test_unknown_job_type_fails_permanently(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    processor = make_processor(queue, no_sleep)
    job_id = await queue.create_job("reindex", {})

    summary = await processor.process_next_jobs()

    assert summary.failed == 1
    job = await queue.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.error_message == "Unknown job type: reindex"


@pytest.mark.asyncio
async def test_invalid_payload_fails_permanently(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    processor = make_processor(queue, no_sleep)
    job_id = await queue.create_job(JobKind.PROCESS_ITEM, {"item": "missing id"})

    assert await processor.process_job(job_id) is False

    job = await queue.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.retry_count == 1
    assert "Invalid payload for process_item job" in (job.error_message or "")


@pytest.mark.asyncio
async def test_batch_job_fans_out_item_jobs(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    processor = make_processor(queue, no_sleep)
    run_id = await queue.start_collection_run("github")
    payload = ProcessBatchPayload(
        collection_run_id=run_id,
        items=[
            {"item_type": "github_issue", "item_id": f"openai_openai-python_{n}", "data": issue_data(n)}
            for n in range(1, 4)
        ],
    )
    await queue.create_job(JobKind.PROCESS_BATCH, payload, run_id, priority=PRIORITY_BATCH)

    summary = await processor.process_next_jobs(max_jobs=1)

    assert summary.succeeded == 1
    assert await queue.get_pending_work_items_count(run_id) == 3
    jobs = await queue.get_next_jobs(limit=10)
    assert [job.job_type for job in jobs] == ["process_item"] * 3
    assert all(job.priority == PRIORITY_ITEM for job in jobs)


@pytest.mark.asyncio
async def test_drain_job_reenqueues_until_nothing_is_pending(queue: JobQueue, no_sleep: RecordingSleep) -> None:
    store = FakeVectorStore()
    processor = make_processor(queue, no_sleep, vector_store=store)
    run_id = await queue.start_collection_run("github")
    assert await enqueue_drain_job(queue, run_id) is None
    await queue.create_work_items([issue_item(run_id, n) for n in (1, 2)])

    job_id = await enqueue_drain_job(queue, run_id, batch_size=1)

    (job,) = await queue.get_next_jobs()
    assert job.id == job_id
    assert job.priority == PRIORITY_DRAIN

    await processor.process_next_jobs(max_jobs=1)

    assert len(store.documents) == 1
    (follow_up,) = await queue.get_next_jobs()
    assert follow_up.job_type == "process_pending_work_items"
    assert follow_up.priority == PRIORITY_DRAIN

    await processor.process_next_jobs(max_jobs=1)

    assert len(store.documents) == 2
    assert await queue.get_next_jobs() == []
    assert await enqueue_drain_job(queue, run_id) is None
    run = await queue.get_collection_run(run_id)
    assert run is not None and run.status == "completed"


@pytest.mark.asyncio
async def test_github_collection_enqueues_batches_of_new_items(no_sleep: RecordingSleep) -> None:
    issues = [GitHubIssue.model_validate(issue_data(n)) for n in range(1, 7)]
    files = [
        GitHubContent(name="new.py", url="u", path="examples/new.py", type="file", content="x" * 300),
        GitHubContent(name="old.py", url="u", path="examples/old.py", type="file", content="x" * 300),
        GitHubContent(name="tiny.py", url="u", path="examples/tiny.py", type="file", content="x" * 50),
    ]
    stored = {file_document_id(file_item_id("openai", "openai-python", "examples/old.py"))}
    queue = FakeQueue([collect_job(1, "openai-python")])
    processor = make_processor(
        queue,
        no_sleep,
        vector_store=FakeVectorStore(existing=stored),
        github_collector=FakeGitHubCollector(issues, files),
    )

    summary = await processor.process_next_jobs()

    assert summary.succeeded == 1
    assert queue.completed == [1]
    assert [(kind, run, priority) for kind, _, run, priority in queue.created] == [
        ("process_batch", 1, PRIORITY_BATCH),
        ("process_batch", 1, PRIORITY_BATCH),
    ]
    first, second = (payload for _, payload, _, _ in queue.created)
    assert [item.item_id for item in first.items] == [f"openai_openai-python_{n}" for n in range(1, 6)]
    assert [item.item_id for item in second.items] == ["openai_openai-python_6", "openai/openai-python/examples/new.py"]
    assert second.metadata["total_batches"] == 2


@pytest.mark.asyncio
async def test_only_later_github_jobs_are_staggered(no_sleep: RecordingSleep) -> None:
    queue = FakeQueue([collect_job(1, "openai-python"), collect_job(2, "openai-node")])
    processor = make_processor(queue, no_sleep, github_collector=FakeGitHubCollector([], []))

    summary = await processor.process_next_jobs()

    assert summary.succeeded == 2
    assert sorted(queue.completed) == [1, 2]
    assert len(no_sleep.delays) == 1
    assert 0.5 <= no_sleep.delays[0] <= 1.5


@pytest.mark.asyncio
async def test_one_failing_job_does_not_affect_its_siblings(no_sleep: RecordingSleep) -> None:
    broken = Job(id=3, job_type="github_collect", payload="{}", collection_run_id=1, retry_count=2, created_at=0)
    queue = FakeQueue([collect_job(1, "openai-python"), broken])
    processor = make_processor(queue, no_sleep, github_collector=FakeGitHubCollector([], []))

    summary = await processor.process_next_jobs()

    assert (summary.succeeded, summary.failed) == (1, 1)
    assert queue.completed == [1]
    ((job_id, _, requeue),) = queue.failed
    assert job_id == 3
    assert requeue is False
