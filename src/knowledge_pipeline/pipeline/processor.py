"""Dequeues jobs and dispatches them to collection, fan-out and item processing handlers."""

import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from knowledge_pipeline.collectors.forum import ForumCollector
from knowledge_pipeline.collectors.github import GitHubCollector
from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.entities import Job, WorkItem
from knowledge_pipeline.errors import InvalidJobPayloadError, PipelineError, UnknownJobTypeError
from knowledge_pipeline.pipeline.documents import DocumentBuilder, file_document_id, file_item_id, issue_item_id
from knowledge_pipeline.queues.store import JobQueue, NewWorkItem
from knowledge_pipeline.rate_limiter import RateLimitConfig, SleepFn
from knowledge_pipeline.schemas.jobs import (
    BatchItem,
    ForumCollectPayload,
    GitHubCollectPayload,
    ItemType,
    JobKind,
    JobSummary,
    ProcessBatchPayload,
    ProcessItemPayload,
    ProcessPendingWorkItemsPayload,
    WorkItemStatus,
    parse_job_payload,
)
from knowledge_pipeline.schemas.sources import ForumPostItem, GitHubContent
from knowledge_pipeline.tokens.counter import SAFE_CONTENT_SIZE, SAFE_JSON_SIZE
from knowledge_pipeline.vector_stores.base import VectorStore

logger = logging.getLogger(__name__)

Handler = Callable[[Job, Any], Awaitable[None]]

COLLECT_BATCH_SIZE = 5
BATCH_CHUNK_SIZE = 10
EXISTENCE_CHECK_BATCH_SIZE = 100
MIN_FILE_CONTENT_LENGTH = 200

FORUM_DEFAULT_CATEGORY_LIMIT = 50
FORUM_PAGES_PER_CATEGORY = 3
FORUM_POSTS_PER_CATEGORY = 100
FORUM_KEPT_POSTS_PER_CATEGORY = 150

PRIORITY_DRAIN = 1
PRIORITY_ITEM = 3
PRIORITY_BATCH = 5

PROCESSOR_RATE_LIMIT = RateLimitConfig(requests_per_minute=500, retry_attempts=2, base_delay_ms=500)

SKIPPED_REASON = "Item filtered out during processing - no useful content found"

# Substrings of storage errors that mean a statement or row outgrew a backend ceiling.
CAPACITY_ERRORS: List[Tuple[Tuple[str, ...], Dict[str, Any]]] = [
    (
        ("too many SQL variables", "SQLITE_ERROR"),
        {
            "error_type": "SQL_VARIABLE_LIMIT_EXCEEDED",
            "suggestion": "A statement bound more parameters than SQLite allows. Lower "
            "work_item_insert_chunk_size or the existence-check batch size.",
        },
    ),
    (
        ("SQLITE_TOOBIG", "string or blob too big"),
        {
            "error_type": "CONTENT_SIZE_EXCEEDED",
            "suggestion": "A row exceeded the storage size limit. Content must pass through "
            "validate_and_truncate_content before it is stored.",
            "max_content_size": SAFE_CONTENT_SIZE,
            "max_json_size": SAFE_JSON_SIZE,
        },
    ),
]


def diagnose_capacity_error(message: str) -> Optional[Dict[str, Any]]:
    for markers, diagnostic in CAPACITY_ERRORS:
        if any(marker in message for marker in markers):
            return diagnostic
    return None


class JobProcessor:
    """Runs queued jobs.

    Each job kind has exactly one handler; a batch of claimed jobs runs concurrently and
    one job's failure never affects its siblings.
    """

    def __init__(
        self,
        queue: JobQueue,
        documents: DocumentBuilder,
        embedder: EmbeddingBatcher,
        vector_store: VectorStore,
        github_collector: Optional[GitHubCollector] = None,
        forum_collector: Optional[ForumCollector] = None,
        stagger_ms: Tuple[int, int] = (500, 1500),
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.documents = documents
        self.embedder = embedder
        self.vector_store = vector_store
        self.github_collector = github_collector
        self.forum_collector = forum_collector
        self.stagger_ms = stagger_ms
        self._sleep = sleep

        self._handlers: Dict[JobKind, Handler] = {
            JobKind.GITHUB_COLLECT: self._collect_github,
            JobKind.FORUM_COLLECT: self._collect_forum,
            JobKind.PROCESS_BATCH: self._process_batch,
            JobKind.PROCESS_ITEM: self._process_item,
            JobKind.PROCESS_PENDING_WORK_ITEMS: self._process_pending_work_items,
        }
        missing = [kind.value for kind in JobKind if kind not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for job kinds: {', '.join(missing)}")

    async def process_next_jobs(self, max_jobs: int = 5) -> JobSummary:
        jobs = await self.queue.get_next_jobs(max_jobs)
        if not jobs:
            logger.debug("No pending jobs to process")
            return JobSummary()

        claimed: List[Job] = []
        for job in jobs:
            if await self.queue.mark_job_running(job.id):
                claimed.append(job)
            else:
                logger.debug(f"Job {job.id} was claimed by another consumer")

        logger.info(f"Processing {len(claimed)} jobs concurrently")
        results = await asyncio.gather(
            *(self._run_job(job, index) for index, job in enumerate(claimed)),
            return_exceptions=True,
        )

        summary = JobSummary(processed=len(claimed))
        for job, result in zip(claimed, results):
            if isinstance(result, BaseException):
                summary.failed += 1
                summary.errors.append(f"Job {job.id} failed with exception: {result}")
            elif result is not None:
                summary.failed += 1
                summary.errors.append(f"Job {job.id} failed: {result}")
            else:
                summary.succeeded += 1

        logger.info(
            f"Job processing summary: {summary.succeeded} succeeded, {summary.failed} failed "
            f"out of {summary.processed} total"
        )
        return summary

    async def process_job(self, job_id: int) -> bool:
        """Claim and run a single job by id. Returns True when it completed."""
        job = await self.queue.get_job(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found")
            return False
        if not await self.queue.mark_job_running(job.id):
            logger.warning(f"Job {job_id} is not pending, skipping")
            return False
        return await self._run_job(job, 0) is None

    async def _run_job(self, job: Job, index: int) -> Optional[str]:
        """Execute one claimed job and record its outcome. Returns the error message on failure."""
        try:
            if job.job_type == JobKind.GITHUB_COLLECT.value and index > 0:
                delay_ms = random.uniform(*self.stagger_ms)
                logger.debug(f"Staggering GitHub collection job {job.id} by {delay_ms:.0f}ms")
                await self._sleep(delay_ms / 1000)

            kind, payload = parse_job_payload(job.job_type, job.payload)
            logger.info(f"Executing job {job.id} ({kind.value})")
            await self._handlers[kind](job, payload)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            await self._record_failure(job, e, message)
            return message

        await self.queue.mark_job_completed(job.id)
        return None

    async def _record_failure(self, job: Job, error: Exception, message: str) -> None:
        diagnostic = diagnose_capacity_error(message)
        if diagnostic is not None:
            logger.error(f"Capacity error in job {job.id} ({job.job_type}): {message} {diagnostic}")
        else:
            logger.error(f"Error executing job {job.id} ({job.job_type}): {message}")

        permanent = isinstance(error, (UnknownJobTypeError, InvalidJobPayloadError))
        requeue = not permanent and job.retry_count + 1 < job.max_retries
        await self.queue.mark_job_failed(job.id, message, requeue=requeue)
        if requeue:
            logger.warning(f"Job {job.id} failed, will retry: {message}")
        else:
            logger.error(f"Job {job.id} failed permanently after {job.retry_count + 1} attempts: {message}")

    # Collection

    async def _collect_github(self, job: Job, payload: GitHubCollectPayload) -> None:
        if self.github_collector is None:
            raise PipelineError("No GitHub collector configured")
        run_id = self._require_run(job, payload.collection_run_id)
        owner, repo = payload.owner, payload.repo
        logger.info(f"Collecting GitHub data for {owner}/{repo} with max_pages={payload.max_pages}")

        try:
            issues = await self.github_collector.fetch_issues(owner, repo, "all", None, payload.max_pages)
        except PipelineError as e:
            logger.error(f"Failed to fetch issues for {owner}/{repo}: {e}")
            issues = []

        try:
            content = await self.github_collector.fetch_repository_content(owner, repo)
        except PipelineError as e:
            logger.error(f"Failed to fetch repository content for {owner}/{repo}: {e}")
            content = []

        eligible = [
            file
            for file in content
            if file.type == "file" and file.content and len(file.content) > MIN_FILE_CONTENT_LENGTH
        ]
        new_files = await self.filter_existing_files(owner, repo, eligible)

        items = [
            BatchItem(
                item_type=ItemType.GITHUB_ISSUE,
                item_id=issue_item_id(owner, repo, issue.number),
                data=issue.model_dump(),
            )
            for issue in issues
        ] + [
            BatchItem(
                item_type=ItemType.GITHUB_FILE,
                item_id=file_item_id(owner, repo, file.path),
                data=file.model_dump(),
            )
            for file in new_files
        ]

        if not items:
            logger.info(f"No items to process for {owner}/{repo}")
            return

        batches = await self._enqueue_batches(run_id, items, {"owner": owner, "repo": repo})
        logger.info(
            f"Created {batches} batch jobs for {owner}/{repo} ({len(issues)} issues, {len(new_files)} new files, "
            f"{len(eligible) - len(new_files)} files already stored)"
        )

    async def _collect_forum(self, job: Job, payload: ForumCollectPayload) -> None:
        if self.forum_collector is None:
            raise PipelineError("No forum collector configured")
        forum = self.forum_collector
        run_id = self._require_run(job, payload.collection_run_id)

        categories = await forum.fetch_categories()
        if payload.categories:
            targets = [category for category in categories if category.slug in payload.categories]
        else:
            targets = categories[:FORUM_DEFAULT_CATEGORY_LIMIT]

        items: List[BatchItem] = []
        for category in targets:
            posts = await forum.fetch_multiple_pages(
                lambda page, category=category: forum.fetch_category_posts_with_id(category.slug, category.id, page),
                max_pages=FORUM_PAGES_PER_CATEGORY,
                max_items=FORUM_POSTS_PER_CATEGORY,
            )
            quality_posts = forum.filter_high_quality_posts(posts)
            logger.info(f"Kept {len(quality_posts)} of {len(posts)} posts in category {category.slug}")
            items.extend(
                BatchItem(
                    item_type=ItemType.FORUM_POST,
                    item_id=str(post.id),
                    data=ForumPostItem(post=post, category=category).model_dump(),
                )
                for post in quality_posts[:FORUM_KEPT_POSTS_PER_CATEGORY]
            )

        if not items:
            logger.info("No forum posts to process")
            return

        categories_label = ", ".join(payload.categories) if payload.categories else "default"
        batches = await self._enqueue_batches(run_id, items, {"categories": categories_label})
        logger.info(f"Created {batches} forum batch jobs with {len(items)} posts")

    async def filter_existing_files(self, owner: str, repo: str, files: Sequence[GitHubContent]) -> List[GitHubContent]:
        """Drop files whose document is already in the vector store."""
        if not files:
            return []
        ids = [file_document_id(file_item_id(owner, repo, file.path)) for file in files]
        existing = set()
        for start in range(0, len(ids), EXISTENCE_CHECK_BATCH_SIZE):
            existing |= await self.vector_store.existing_ids(ids[start : start + EXISTENCE_CHECK_BATCH_SIZE])

        new_files = [file for file, document_id in zip(files, ids) if document_id not in existing]
        logger.info(
            f"File existence check: {len(files)} total, {len(files) - len(new_files)} already stored, "
            f"{len(new_files)} new"
        )
        return new_files

    def _require_run(self, job: Job, collection_run_id: Optional[int]) -> int:
        run_id = collection_run_id if collection_run_id is not None else job.collection_run_id
        if run_id is None:
            raise InvalidJobPayloadError(f"Job {job.id} ({job.job_type}) has no collection run")
        return run_id

    async def _enqueue_batches(self, run_id: int, items: List[BatchItem], metadata: Dict[str, Any]) -> int:
        total_batches = (len(items) + COLLECT_BATCH_SIZE - 1) // COLLECT_BATCH_SIZE
        for number, start in enumerate(range(0, len(items), COLLECT_BATCH_SIZE), start=1):
            batch = items[start : start + COLLECT_BATCH_SIZE]
            payload = ProcessBatchPayload(
                collection_run_id=run_id,
                items=batch,
                chunk_size=BATCH_CHUNK_SIZE,
                metadata={**metadata, "batch_number": number, "total_batches": total_batches},
            )
            await self.queue.create_job(JobKind.PROCESS_BATCH, payload, run_id, priority=PRIORITY_BATCH)
        return total_batches

    # Fan-out

    async def _process_batch(self, job: Job, payload: ProcessBatchPayload) -> None:
        run_id = payload.collection_run_id
        work_item_ids = await self.queue.create_work_items(
            [
                NewWorkItem(
                    collection_run_id=run_id,
                    item_type=item.item_type.value,
                    item_id=item.item_id,
                    source_data=item.data,
                )
                for item in payload.items
            ]
        )

        chunk_size = payload.chunk_size
        total_chunks = (len(work_item_ids) + chunk_size - 1) // chunk_size
        for number, start in enumerate(range(0, len(work_item_ids), chunk_size), start=1):
            chunk = work_item_ids[start : start + chunk_size]
            for work_item_id in chunk:
                await self.queue.create_job(
                    JobKind.PROCESS_ITEM,
                    ProcessItemPayload(work_item_id=work_item_id),
                    run_id,
                    priority=PRIORITY_ITEM,
                )
            logger.debug(f"Created {len(chunk)} item jobs for chunk {number}/{total_chunks}")

        logger.info(f"Created {len(work_item_ids)} item jobs from batch job {job.id}")

    # Item processing

    async def _process_item(self, job: Job, payload: ProcessItemPayload) -> None:
        work_item = await self.queue.get_work_item(payload.work_item_id)
        if work_item is None:
            logger.debug(f"Work item {payload.work_item_id} not found")
            return
        await self.process_work_item(work_item)

    async def process_work_item(self, work_item: WorkItem) -> Optional[WorkItemStatus]:
        """Summarize, embed and store one work item.

        Returns the final status, or None when the item was not claimable. Failures mark
        the item failed and are re-raised so the owning job can be retried.
        """
        if not await self.queue.mark_work_item_processing(work_item.id):
            logger.info(f"Work item {work_item.id} is {work_item.status}, not processing it again")
            return None

        logger.info(f"Processing work item {work_item.id} ({work_item.item_type})")
        try:
            document = await self.documents.build(
                ItemType(work_item.item_type), work_item.item_id, json.loads(work_item.source_data)
            )
            if document is None:
                await self.queue.mark_work_item_skipped(work_item.id, SKIPPED_REASON)
                logger.info(f"Skipped work item {work_item.id} ({work_item.item_type})")
                return WorkItemStatus.SKIPPED

            embedded = await self.embedder.batch_process([document])
            if not embedded:
                raise PipelineError(f"No embeddings generated for work item {work_item.id}")
            await self.vector_store.store(embedded)
            await self.queue.mark_work_item_completed(work_item.id, document)
        except Exception as e:
            logger.error(f"Work item {work_item.id} ({work_item.item_type}) processing failed: {e}")
            await self.queue.mark_work_item_failed(work_item.id, str(e) or e.__class__.__name__)
            raise

        logger.info(f"Completed work item {work_item.id} ({work_item.item_type})")
        return WorkItemStatus.COMPLETED

    async def _process_pending_work_items(self, job: Job, payload: ProcessPendingWorkItemsPayload) -> None:
        run_id = payload.collection_run_id
        work_items = await self.queue.get_pending_work_items(run_id, payload.batch_size)
        if not work_items:
            logger.debug(f"No pending work items for collection run {run_id}")
            return

        results = await asyncio.gather(*(self.process_work_item(item) for item in work_items), return_exceptions=True)
        succeeded = sum(1 for result in results if result == WorkItemStatus.COMPLETED)
        skipped = sum(1 for result in results if result == WorkItemStatus.SKIPPED)
        failed = sum(1 for result in results if isinstance(result, BaseException))
        logger.info(
            f"Work item batch for collection run {run_id}: {succeeded} succeeded, {skipped} skipped, "
            f"{failed} failed out of {len(work_items)}"
        )

        remaining = await self.queue.get_pending_work_items_count(run_id)
        if remaining:
            logger.info(f"{remaining} work items still pending for collection run {run_id}, re-enqueueing")
            await self.queue.create_job(JobKind.PROCESS_PENDING_WORK_ITEMS, payload, run_id, priority=PRIORITY_DRAIN)
