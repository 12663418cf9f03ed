"""Token-aware batching of documents through an embedding provider."""

import asyncio
import logging
import random
from typing import List, Optional, Sequence

import numpy as np

from knowledge_pipeline.embeddings.provider import EmbeddingProvider
from knowledge_pipeline.errors import EmbeddingTokenLimitError, PipelineError
from knowledge_pipeline.processors.ids import ensure_safe_id
from knowledge_pipeline.processors.text import TextProcessor
from knowledge_pipeline.rate_limiter import RateLimiter, SleepFn, is_retryable_error
from knowledge_pipeline.schemas.documents import Document, EmbeddedDocument
from knowledge_pipeline.tokens.counter import TokenCounter, token_counter

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
MAX_BATCH_RETRIES = 3
# Texts over budget are cut to this many characters per safe token before sending.
SAFE_CHARS_PER_TOKEN = 3.5


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError("Vectors must have the same length")
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0:
        return 0.0
    return float(np.dot(va, vb) / magnitude)


class EmbeddingBatcher:
    def __init__(
        self,
        provider: EmbeddingProvider,
        rate_limiter: RateLimiter,
        text_processor: Optional[TextProcessor] = None,
        counter: Optional[TokenCounter] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.counter = counter or token_counter
        self.text_processor = text_processor or TextProcessor(counter=self.counter)
        self._sleep = sleep

    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        validated = [self._fit_to_budget(text) for text in texts]
        embeddings = await self.rate_limiter.execute(lambda: self.provider.embed(validated))
        if len(embeddings) != len(validated):
            raise PipelineError(f"Embedding provider returned {len(embeddings)} vectors for {len(validated)} texts")
        return embeddings

    def _fit_to_budget(self, text: str) -> str:
        tokens = self.counter.estimate_tokens(text)
        if tokens <= self.counter.safe_token_limit:
            return text
        logger.info(f"Text exceeds token limit (~{tokens} tokens), truncating")
        return text[: int(self.counter.safe_token_limit * SAFE_CHARS_PER_TOKEN)]

    def split_oversized_document(self, document: Document, max_tokens: Optional[int] = None) -> List[Document]:
        """Break a document over the token budget into chunk documents.

        Each chunk keeps the parent's metadata plus ``original_document_id``, ``chunk_index``
        and ``is_chunk``, and is named ``{id}_chunk_{n}``.
        """
        limit = max_tokens if max_tokens is not None else self.counter.safe_token_limit
        tokens = self.counter.estimate_tokens(document.content)
        if tokens <= limit:
            return [document]

        logger.debug(f"Document {document.id} has ~{tokens} tokens, splitting into chunks")
        chunks = self.text_processor.chunk_documents([document])
        return [
            Document(
                id=ensure_safe_id(f"{document.id}_chunk_{index}"),
                content=chunk.content,
                metadata=document.metadata.model_copy(
                    update={"original_document_id": document.id, "chunk_index": index, "is_chunk": True}
                ),
                source=document.source,
            )
            for index, chunk in enumerate(chunks)
        ]

    def preprocess_documents(self, documents: List[Document]) -> List[Document]:
        processed: List[Document] = []
        for document in documents:
            processed.extend(self.split_oversized_document(document))
        return processed

    async def batch_process(self, documents: List[Document]) -> List[EmbeddedDocument]:
        """Embed ``documents`` in the largest batches the token budget allows.

        A batch that keeps failing is logged and skipped; the rest of the run continues.
        """
        pending = self.preprocess_documents(documents)
        logger.info(
            f"Starting token-aware batch processing of {len(pending)} documents ({len(documents)} original)"
        )

        results: List[EmbeddedDocument] = []
        index = 0
        batch_number = 0
        while index < len(pending):
            remaining = pending[index:]
            batch_size = self.counter.find_max_batch_size([d.content for d in remaining], MAX_BATCH_SIZE)
            batch = remaining[:batch_size]
            batch_number += 1

            embedded = await self._embed_batch(batch, batch_number)
            if embedded:
                results.extend(embedded)
                logger.debug(f"Completed batch {batch_number}, processed: {len(results)}/{len(pending)}")
                await self._sleep(min(100 + len(batch) * 2, 300) / 1000)
            index += batch_size

        logger.info(f"Completed token-aware batch processing: {len(results)} documents embedded")
        return results

    async def _embed(self, batch: List[Document]) -> List[EmbeddedDocument]:
        embeddings = await self.generate_embeddings([d.content for d in batch])
        return [
            EmbeddedDocument(
                id=document.id,
                content=document.content,
                embedding=embedding,
                metadata=document.metadata,
                source=document.source,
            )
            for document, embedding in zip(batch, embeddings)
        ]

    async def _embed_batch(self, batch: List[Document], batch_number: int) -> List[EmbeddedDocument]:
        for attempt in range(MAX_BATCH_RETRIES):
            try:
                return await self._embed(batch)
            except EmbeddingTokenLimitError as e:
                logger.warning(f"Token limit error in batch {batch_number}, retrying at half size: {e}")
                return await self._embed_narrowed(batch, batch_number)
            except Exception as e:
                if not is_retryable_error(e) or attempt == MAX_BATCH_RETRIES - 1:
                    logger.error(f"Failed to process batch {batch_number} after {attempt + 1} attempts, skipping: {e}")
                    return []
                backoff_ms = 1000 * 2 ** (attempt + 1) + random.random() * 1000
                logger.warning(f"Batch {batch_number} failed, retrying in {backoff_ms:.0f}ms: {e}")
                await self._sleep(backoff_ms / 1000)
        return []

    async def _embed_narrowed(self, batch: List[Document], batch_number: int) -> List[EmbeddedDocument]:
        if len(batch) == 1:
            document = batch[0]
            half_tokens = max(1, self.counter.estimate_tokens(document.content) // 2)
            shortened = self.counter.truncate_text(document.content, half_tokens)
            parts = [[document.model_copy(update={"content": shortened})]]
        else:
            half = len(batch) // 2
            parts = [batch[:half], batch[half:]]

        results: List[EmbeddedDocument] = []
        for part in parts:
            try:
                results.extend(await self._embed(part))
            except Exception as e:
                logger.error(f"Failed even with smaller batch {batch_number}, skipping {len(part)} documents: {e}")
        return results

    def calculate_similarity(self, query: Sequence[float], candidates: Sequence[Sequence[float]]) -> List[float]:
        return [cosine_similarity(query, candidate) for candidate in candidates]
