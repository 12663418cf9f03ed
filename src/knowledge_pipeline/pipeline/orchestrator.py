"""Synchronous end-to-end collection run: collect, summarize, chunk, embed and store."""

import asyncio
import inspect
import logging
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from knowledge_pipeline.collectors.forum import ForumCollector
from knowledge_pipeline.collectors.github import GitHubCollector
from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.errors import CollectionCancelledError, PipelineError
from knowledge_pipeline.pipeline.documents import DocumentBuilder, file_item_id, issue_item_id
from knowledge_pipeline.processors.text import TextProcessor
from knowledge_pipeline.queues.store import JobQueue
from knowledge_pipeline.rate_limiter import RateLimitConfig, SleepFn
from knowledge_pipeline.schemas.documents import Document
from knowledge_pipeline.schemas.sources import ForumCategory, ForumPost, ForumPostItem, GitHubIssue
from knowledge_pipeline.vector_stores.base import VectorStore

logger = logging.getLogger(__name__)

CancellationCheck = Callable[[], Union[bool, Awaitable[bool]]]

MIN_ISSUE_BODY_LENGTH = 100
MIN_FILE_CONTENT_LENGTH = 200
LATEST_POST_PAGES = 10
LATEST_POST_LIMIT = 300
CATEGORY_POST_PAGES = 5
CATEGORY_POST_LIMIT = 150
DEFAULT_CATEGORY_LIMIT = 10
MAX_FORUM_POSTS = 500
PHASE = "in-progress"

ORCHESTRATOR_RATE_LIMIT = RateLimitConfig(requests_per_minute=200, retry_attempts=3, base_delay_ms=1000)


class RepositoryRef(BaseModel):
    owner: str
    repo: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}"


DEFAULT_REPOSITORIES = [
    RepositoryRef(owner="openai", repo="openai-python"),
    RepositoryRef(owner="openai", repo="openai-node"),
]


class DataCollectionOptions(BaseModel):
    sources: List[Literal["github", "forum"]] = Field(min_length=1)
    github_repos: Optional[List[RepositoryRef]] = None
    forum_categories: Optional[List[str]] = None
    batch_size: int = Field(default=20, ge=1)
    max_pages: int = Field(default=5, ge=1)


class CollectionResult(BaseModel):
    collection_run_id: int
    documents_collected: int
    documents_processed: int


def _iso(timestamp: Optional[int]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class DataPipelineOrchestrator:
    """Drives one interactive collection run outside the job queue.

    Cancellation is cooperative: ``check_cancellation`` runs before every phase and
    between items, and ends the run as cancelled rather than failed.
    """

    def __init__(
        self,
        queue: JobQueue,
        documents: DocumentBuilder,
        text_processor: TextProcessor,
        embedder: EmbeddingBatcher,
        vector_store: VectorStore,
        github_collector: Optional[GitHubCollector] = None,
        forum_collector: Optional[ForumCollector] = None,
        is_cancelled: Optional[CancellationCheck] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.documents = documents
        self.text_processor = text_processor
        self.embedder = embedder
        self.vector_store = vector_store
        self.github_collector = github_collector
        self.forum_collector = forum_collector
        self.is_cancelled = is_cancelled
        self._sleep = sleep
        self._validators: Dict[str, Tuple[Optional[str], Optional[str]]] = {}

    async def check_cancellation(self, collection_run_id: int) -> None:
        """Raise CollectionCancelledError if the predicate or the stored run says so."""
        cancelled = False
        if self.is_cancelled is not None:
            result = self.is_cancelled()
            cancelled = await result if inspect.isawaitable(result) else bool(result)
        if not cancelled:
            cancelled = await self.queue.is_collection_run_cancelled(collection_run_id)
        if cancelled:
            raise CollectionCancelledError(collection_run_id)

    async def run_data_collection(self, options: DataCollectionOptions) -> CollectionResult:
        logger.info(f"Starting data collection run for sources: {', '.join(options.sources)}")
        run_id = await self.queue.start_collection_run(",".join(options.sources))
        self._validators = {}

        try:
            await self.check_cancellation(run_id)
            documents: List[Document] = []

            if "forum" in options.sources:
                await self.check_cancellation(run_id)
                await self.queue.update_progress(run_id, PHASE, "Starting forum data collection...")
                forum_documents = await self.collect_forum_data(run_id, options.forum_categories)
                documents.extend(forum_documents)
                await self.queue.update_progress(
                    run_id,
                    PHASE,
                    f"Forum collection complete: {len(forum_documents)} documents collected",
                    documents_collected=len(documents),
                )

            if "github" in options.sources:
                await self.check_cancellation(run_id)
                await self.queue.update_progress(run_id, PHASE, "Starting GitHub data collection...")
                github_documents = await self.collect_github_data(run_id, options.github_repos, options.max_pages)
                documents.extend(github_documents)
                await self.queue.update_progress(
                    run_id,
                    PHASE,
                    f"GitHub collection complete: {len(github_documents)} documents collected",
                    documents_collected=len(documents),
                )

            await self.check_cancellation(run_id)
            stored = await self.process_and_store_documents(run_id, documents, options.batch_size)

            # Validators only advance once the content they describe is stored.
            for source, (etag, last_modified) in self._validators.items():
                await self.queue.update_collection_headers(source, etag, last_modified)
            await self.queue.complete_collection_run(run_id, len(documents), stored)
            await self.queue.update_last_collection_time(options.sources)
        except CollectionCancelledError:
            logger.info(f"Data collection run {run_id} was cancelled")
            await self.queue.cancel_collection_run(run_id)
            raise
        except Exception as e:
            logger.error(f"Data collection run {run_id} failed: {e}")
            await self.queue.fail_collection_run(run_id, str(e) or e.__class__.__name__)
            raise

        logger.info(f"Data collection run {run_id} completed with {len(documents)} documents")
        return CollectionResult(
            collection_run_id=run_id, documents_collected=len(documents), documents_processed=stored
        )

    # Forum

    async def collect_forum_data(self, run_id: int, categories: Optional[List[str]] = None) -> List[Document]:
        if self.forum_collector is None:
            logger.warning("No forum collector configured, skipping forum collection")
            return []
        forum = self.forum_collector
        documents: List[Document] = []

        try:
            posts: List[ForumPost] = await forum.fetch_multiple_pages(
                forum.fetch_latest_posts, max_pages=LATEST_POST_PAGES, max_items=LATEST_POST_LIMIT
            )
            logger.info(f"Found {len(posts)} latest posts")

            all_categories = await forum.fetch_categories()
            category_by_id: Dict[int, ForumCategory] = {category.id: category for category in all_categories}
            if categories:
                targets = [category for category in all_categories if category.slug in categories]
            else:
                targets = all_categories[:DEFAULT_CATEGORY_LIMIT]

            for category in targets:
                await self.check_cancellation(run_id)
                await self.queue.update_progress(run_id, PHASE, f"Processing forum category: {category.name}")
                category_posts = await forum.fetch_multiple_pages(
                    lambda page, category=category: forum.fetch_category_posts_with_id(
                        category.slug, category.id, page
                    ),
                    max_pages=CATEGORY_POST_PAGES,
                    max_items=CATEGORY_POST_LIMIT,
                )
                posts.extend(category_posts)
                logger.info(f"Found {len(category_posts)} posts in category {category.slug}")

            unique_posts = list({post.id: post for post in posts}.values())
            quality_posts = forum.filter_high_quality_posts(unique_posts)
            logger.info(f"{len(posts)} posts, {len(unique_posts)} unique, {len(quality_posts)} high quality")

            for post in quality_posts[:MAX_FORUM_POSTS]:
                await self.check_cancellation(run_id)
                item = ForumPostItem(post=post, category=category_by_id.get(post.category_id or 0))
                document = await self.documents.build_forum_post(item, str(post.id))
                if document is not None:
                    documents.append(document)
        except CollectionCancelledError:
            raise
        except PipelineError as e:
            logger.error(f"Error collecting forum data: {e}")

        logger.info(f"Forum collection summary: {len(documents)} documents")
        return documents

    # GitHub

    async def collect_github_data(
        self, run_id: int, repos: Optional[List[RepositoryRef]] = None, max_pages: int = 2
    ) -> List[Document]:
        if self.github_collector is None:
            logger.warning("No GitHub collector configured, skipping GitHub collection")
            return []

        documents: List[Document] = []
        last_run = await self.queue.get_collection_timestamp("github")
        since = _iso(last_run.last_successful_collection) if last_run else None

        for ref in repos or DEFAULT_REPOSITORIES:
            await self.check_cancellation(run_id)
            await self.queue.update_progress(run_id, PHASE, f"Processing GitHub repository: {ref}")
            issue_documents = await self._collect_issues(run_id, ref, since, max_pages)
            file_documents = await self._collect_files(run_id, ref)
            documents.extend(issue_documents + file_documents)
            logger.info(f"Completed {ref}: {len(issue_documents)} issues, {len(file_documents)} files")

        logger.info(f"GitHub collection summary: {len(documents)} documents")
        return documents

    async def _collect_issues(
        self, run_id: int, ref: RepositoryRef, since: Optional[str], max_pages: int
    ) -> List[Document]:
        assert self.github_collector is not None
        source = f"github:{ref}:issues"
        validators = await self.queue.get_collection_timestamp(source)
        try:
            response = await self.github_collector.fetch_issues_conditional(
                ref.owner,
                ref.repo,
                "all",
                since,
                max_pages,
                etag=validators.etag if validators else None,
                last_modified=validators.last_modified if validators else None,
            )
        except PipelineError as e:
            logger.error(f"Failed to fetch issues for {ref}: {e}")
            return []

        if response.not_modified:
            logger.info(f"Issues for {ref} not modified, skipping")
            return []
        if response.etag or response.last_modified:
            self._validators[source] = (response.etag, response.last_modified)

        issues = [issue for issue in response.data or [] if len(issue.body) > MIN_ISSUE_BODY_LENGTH]
        documents: List[Document] = []
        for index, issue in enumerate(issues):
            await self.check_cancellation(run_id)
            document = await self._issue_document(ref, issue)
            if document is not None:
                documents.append(document)
            if index < len(issues) - 1:
                await self._sleep(random.uniform(0.5, 1.5))
        return documents

    async def _issue_document(self, ref: RepositoryRef, issue: GitHubIssue) -> Optional[Document]:
        assert self.github_collector is not None
        try:
            comments = await self.github_collector.fetch_issue_comments(ref.owner, ref.repo, issue.number)
        except PipelineError as e:
            logger.warning(f"Failed to fetch comments for issue #{issue.number}: {e}")
            comments = []
        issue = issue.model_copy(update={"comments": comments})
        return await self.documents.build_issue(issue, issue_item_id(ref.owner, ref.repo, issue.number))

    async def _collect_files(self, run_id: int, ref: RepositoryRef) -> List[Document]:
        assert self.github_collector is not None
        source = f"github:{ref}:contents"
        validators = await self.queue.get_collection_timestamp(source)
        try:
            response = await self.github_collector.fetch_repository_content_conditional(
                ref.owner,
                ref.repo,
                etag=validators.etag if validators else None,
                last_modified=validators.last_modified if validators else None,
            )
        except PipelineError as e:
            logger.error(f"Failed to fetch repository content for {ref}: {e}")
            return []

        if response.not_modified:
            logger.info(f"Repository content for {ref} not modified, skipping")
            return []
        if response.etag or response.last_modified:
            self._validators[source] = (response.etag, response.last_modified)

        files = [
            file
            for file in response.data or []
            if file.type == "file" and file.content and len(file.content) > MIN_FILE_CONTENT_LENGTH
        ]
        documents: List[Document] = []
        for index, file in enumerate(files):
            await self.check_cancellation(run_id)
            document = await self.documents.build_file(file, file_item_id(ref.owner, ref.repo, file.path))
            if document is not None:
                documents.append(document)
            if index < len(files) - 1:
                await self._sleep(random.uniform(0.5, 1.5))
        return documents

    # Processing

    async def process_and_store_documents(self, run_id: int, documents: List[Document], batch_size: int) -> int:
        """Chunk, embed and store documents. Returns the number of stored chunks."""
        await self.queue.update_progress(
            run_id, PHASE, f"Processing {len(documents)} documents", total_estimated=len(documents)
        )
        sources = {document.id: document.source for document in documents}
        chunks = [
            Document(
                id=chunk.id,
                content=chunk.content,
                metadata=chunk.metadata,
                source=sources[chunk.parent_document_id],
            )
            for chunk in self.text_processor.chunk_documents(documents)
        ]
        await self.queue.update_progress(
            run_id, PHASE, f"Created {len(chunks)} text chunks from {len(documents)} documents"
        )

        await self.check_cancellation(run_id)
        await self.queue.update_progress(run_id, PHASE, f"Generating embeddings for {len(chunks)} chunks...")
        embedded = await self.embedder.batch_process(chunks)
        logger.info(f"Generated embeddings for {len(embedded)} of {len(chunks)} chunks")

        stored = 0
        total_batches = (len(embedded) + batch_size - 1) // batch_size
        for number, start in enumerate(range(0, len(embedded), batch_size), start=1):
            await self.check_cancellation(run_id)
            batch = embedded[start : start + batch_size]
            await self.queue.update_progress(
                run_id,
                PHASE,
                f"Storing batch {number}/{total_batches} ({len(batch)} documents)",
                documents_processed=stored,
            )
            await self.vector_store.store(batch)
            stored += len(batch)

        logger.info(f"Stored {stored} chunks from {len(documents)} documents")
        return stored
