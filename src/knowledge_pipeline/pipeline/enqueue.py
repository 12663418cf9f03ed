import logging
from typing import Optional

from knowledge_pipeline.pipeline.orchestrator import DEFAULT_REPOSITORIES, DataCollectionOptions
from knowledge_pipeline.pipeline.processor import PRIORITY_DRAIN
from knowledge_pipeline.queues.store import JobQueue
from knowledge_pipeline.schemas.jobs import (
    ForumCollectPayload,
    GitHubCollectPayload,
    JobKind,
    ProcessPendingWorkItemsPayload,
)

logger = logging.getLogger(__name__)

PRIORITY_COLLECT = 10


async def enqueue_collection_run(queue: JobQueue, options: DataCollectionOptions) -> int:
    """Start a queued collection run with one collect job per repository and one for the forum."""
    run_id = await queue.start_collection_run(",".join(options.sources))

    jobs = 0
    if "github" in options.sources:
        for ref in options.github_repos or DEFAULT_REPOSITORIES:
            payload = GitHubCollectPayload(
                collection_run_id=run_id, owner=ref.owner, repo=ref.repo, max_pages=options.max_pages
            )
            await queue.create_job(JobKind.GITHUB_COLLECT, payload, run_id, priority=PRIORITY_COLLECT)
            jobs += 1
    if "forum" in options.sources:
        payload = ForumCollectPayload(collection_run_id=run_id, categories=options.forum_categories)
        await queue.create_job(JobKind.FORUM_COLLECT, payload, run_id, priority=PRIORITY_COLLECT)
        jobs += 1

    await queue.update_progress(run_id, "queued", f"Queued {jobs} collection jobs")
    logger.info(f"Queued collection run {run_id} with {jobs} collection jobs")
    return run_id


async def enqueue_drain_job(queue: JobQueue, collection_run_id: int, batch_size: int = 5) -> Optional[int]:
    """Queue a job that works through a run's pending items, such as those left behind by a crashed worker.

    The job re-enqueues itself until nothing is pending. Returns None when there is nothing to drain.
    """
    pending = await queue.get_pending_work_items_count(collection_run_id)
    if not pending:
        logger.info(f"No pending work items for collection run {collection_run_id}")
        return None

    payload = ProcessPendingWorkItemsPayload(collection_run_id=collection_run_id, batch_size=batch_size)
    job_id = await queue.create_job(
        JobKind.PROCESS_PENDING_WORK_ITEMS, payload, collection_run_id, priority=PRIORITY_DRAIN
    )
    logger.info(f"Queued drain job {job_id} for {pending} pending work items in collection run {collection_run_id}")
    return job_id
