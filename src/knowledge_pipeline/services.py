"""Composition root: builds every port once from settings."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from knowledge_pipeline.collectors import ForumCollector, GitHubCollector
from knowledge_pipeline.config.settings import Settings
from knowledge_pipeline.database import create_session_maker
from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.embeddings.provider import OpenAIEmbeddingProvider
from knowledge_pipeline.pipeline.documents import DocumentBuilder
from knowledge_pipeline.pipeline.orchestrator import (
    ORCHESTRATOR_RATE_LIMIT,
    CancellationCheck,
    DataPipelineOrchestrator,
)
from knowledge_pipeline.pipeline.processor import PROCESSOR_RATE_LIMIT, JobProcessor
from knowledge_pipeline.processors.text import TextProcessor
from knowledge_pipeline.queues.publisher import WebhookJobPublisher
from knowledge_pipeline.queues.store import JobQueue
from knowledge_pipeline.rate_limiter import RateLimiter
from knowledge_pipeline.summarizers.llm import OpenAISummarizer
from knowledge_pipeline.tokens.counter import TokenCounter
from knowledge_pipeline.vector_stores import ChromaVectorStore
from knowledge_pipeline.vector_stores.chroma import connect

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    openai_client: AsyncOpenAI
    queue: JobQueue
    counter: TokenCounter
    text_processor: TextProcessor
    embedder: EmbeddingBatcher
    vector_store: ChromaVectorStore
    github_collector: GitHubCollector
    forum_collector: ForumCollector
    documents: DocumentBuilder
    processor: JobProcessor

    def orchestrator(self, is_cancelled: Optional[CancellationCheck] = None) -> DataPipelineOrchestrator:
        """A fresh orchestrator with its own embedding limiter."""
        embedder = EmbeddingBatcher(
            self.embedder.provider,
            RateLimiter(ORCHESTRATOR_RATE_LIMIT),
            text_processor=self.text_processor,
            counter=self.counter,
        )
        return DataPipelineOrchestrator(
            self.queue,
            self.documents,
            self.text_processor,
            embedder,
            self.vector_store,
            github_collector=self.github_collector,
            forum_collector=self.forum_collector,
            is_cancelled=is_cancelled,
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.openai_client.close()
        await self.engine.dispose()
        logger.info("Pipeline services closed")


async def build_services(settings: Settings) -> PipelineServices:
    engine, session_maker = create_session_maker(settings.database_url)
    http_client = httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)

    publisher = None
    if settings.job_notify_url:
        publisher = WebhookJobPublisher(settings.job_notify_url, http_client)
        logger.info(f"Job notifications enabled: {settings.job_notify_url}")

    queue = JobQueue(
        session_maker,
        publisher=publisher,
        stale_job_timeout=settings.stale_job_timeout_seconds,
        work_item_chunk_size=settings.work_item_insert_chunk_size,
        max_retries=settings.job_max_retries,
    )

    openai_client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    counter = TokenCounter(
        max_tokens_per_request=settings.max_tokens_per_request,
        safety_margin=settings.token_safety_margin,
    )
    text_processor = TextProcessor(counter=counter)
    embedder = EmbeddingBatcher(
        OpenAIEmbeddingProvider(openai_client, settings.embedding_model),
        RateLimiter(PROCESSOR_RATE_LIMIT),
        text_processor=text_processor,
        counter=counter,
    )

    # Chroma clients are synchronous, so connecting happens off the event loop.
    chroma_client = await asyncio.to_thread(
        connect, settings.chroma_host, settings.chroma_port, settings.chroma_persist_dir
    )
    vector_store = ChromaVectorStore(chroma_client, embedder, collection_name=settings.chroma_collection)

    github_collector = GitHubCollector(http_client, token=settings.github_token, base_url=settings.github_base_url)
    forum_collector = ForumCollector(http_client, base_url=settings.forum_base_url)
    summarizer = OpenAISummarizer(
        openai_client, model=settings.summarizer_model, rate_limiter=RateLimiter(PROCESSOR_RATE_LIMIT)
    )
    documents = DocumentBuilder(
        summarizer,
        forum_collector=forum_collector,
        counter=counter,
        forum_base_url=settings.forum_base_url,
        max_content_bytes=settings.max_content_bytes,
    )

    processor = JobProcessor(
        queue,
        documents,
        embedder,
        vector_store,
        github_collector=github_collector,
        forum_collector=forum_collector,
        stagger_ms=(settings.job_stagger_min_ms, settings.job_stagger_max_ms),
    )

    return PipelineServices(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        http_client=http_client,
        openai_client=openai_client,
        queue=queue,
        counter=counter,
        text_processor=text_processor,
        embedder=embedder,
        vector_store=vector_store,
        github_collector=github_collector,
        forum_collector=forum_collector,
        documents=documents,
        processor=processor,
    )
