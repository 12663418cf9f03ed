import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import chromadb
from chromadb.api.models.Collection import Collection

from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.rate_limiter import RateLimitConfig, RateLimiter, SleepFn
from knowledge_pipeline.schemas.documents import EmbeddedDocument, SearchResult

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100
EXISTENCE_CHECK_BATCH_SIZE = 100
METADATA_CONTENT_LIMIT = 2000
BATCH_PAUSE_SECONDS = 0.5

VECTOR_STORE_RATE_LIMIT = RateLimitConfig(requests_per_minute=100, retry_attempts=5, base_delay_ms=2000)

MetadataValue = Union[str, int, float, bool]


def connect(host: str, port: int, persist_dir: str) -> Any:
    """Connect to a ChromaDB server, falling back to a local persistent client."""
    try:
        client = chromadb.HttpClient(host=host, port=port)
        client.heartbeat()
        logger.info(f"Connected to ChromaDB at {host}:{port}")
        return client
    except Exception as e:
        logger.warning(f"Failed to connect to ChromaDB server at {host}:{port}: {e}")
        logger.info(f"Falling back to persistent client at {persist_dir}")
        os.makedirs(persist_dir, exist_ok=True)
        return chromadb.PersistentClient(path=persist_dir)


def flatten_metadata(document: EmbeddedDocument) -> Dict[str, MetadataValue]:
    """Chroma only stores scalar metadata, so lists are joined and empty fields dropped."""
    flat: Dict[str, MetadataValue] = {"content": document.content[:METADATA_CONTENT_LIMIT]}
    if document.source:
        flat["source"] = document.source
    for key, value in document.metadata.model_dump(exclude_none=True).items():
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        elif isinstance(value, dict):
            value = json.dumps(value, default=str)
        flat[key] = value
    return flat


class ChromaVectorStore:
    def __init__(
        self,
        client: Any,
        embedder: EmbeddingBatcher,
        collection_name: str = "sdk_knowledge",
        rate_limiter: Optional[RateLimiter] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Vector storage port backed by a ChromaDB collection.

        Args:
            client: ChromaDB client (HTTP, persistent or ephemeral)
            embedder: Used to embed search queries with the same model as the documents
            collection_name: Collection holding the documents
            rate_limiter: Limiter for upserts, defaults to 100 requests per minute
            sleep: Pause function between upsert batches
        """
        self.client = client
        self.embedder = embedder
        self.collection_name = collection_name
        self.rate_limiter = rate_limiter or RateLimiter(VECTOR_STORE_RATE_LIMIT, sleep=sleep)
        self._sleep = sleep
        self._collection: Optional[Collection] = None

    @property
    def collection(self) -> Collection:
        if self._collection is None:
            self._collection = self.client.get_or_create_collection(
                name=self.collection_name, metadata={"hnsw:space": "cosine"}
            )
        return self._collection

    async def store(self, documents: List[EmbeddedDocument]) -> None:
        if not documents:
            logger.debug("No documents to store, skipping")
            return

        total_batches = (len(documents) + UPSERT_BATCH_SIZE - 1) // UPSERT_BATCH_SIZE
        for number, start in enumerate(range(0, len(documents), UPSERT_BATCH_SIZE), start=1):
            batch = documents[start : start + UPSERT_BATCH_SIZE]
            logger.debug(f"Upserting batch {number}/{total_batches} with {len(batch)} vectors")
            await self.rate_limiter.execute(lambda batch=batch: asyncio.to_thread(self._upsert, batch))
            if number < total_batches:
                await self._sleep(BATCH_PAUSE_SECONDS)

        logger.info(f"Stored {len(documents)} documents in {self.collection_name}")

    def _upsert(self, batch: List[EmbeddedDocument]) -> None:
        self.collection.upsert(
            ids=[d.id for d in batch],
            embeddings=[d.embedding for d in batch],
            documents=[d.content for d in batch],
            metadatas=[flatten_metadata(d) for d in batch],
        )

    async def search(self, query: str, limit: int = 10) -> List[SearchResult]:
        """Nearest documents to ``query``. Errors are logged and yield no results."""
        try:
            embeddings = await self.embedder.generate_embeddings([query])
            results = await asyncio.to_thread(
                self.collection.query,
                query_embeddings=embeddings,
                n_results=limit,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as e:
            logger.error(f"Vector search failed for query {query[:100]!r}: {e}")
            return []

        ids = results.get("ids", [[]])[0]
        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        return [
            SearchResult(
                id=doc_id,
                content=documents[i] if i < len(documents) and documents[i] else "",
                score=1.0 - distances[i] if i < len(distances) else 0.0,
                metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
            )
            for i, doc_id in enumerate(ids)
        ]

    async def existing_ids(self, ids: Sequence[str]) -> Set[str]:
        found: Set[str] = set()
        for start in range(0, len(ids), EXISTENCE_CHECK_BATCH_SIZE):
            batch = list(ids[start : start + EXISTENCE_CHECK_BATCH_SIZE])
            result = await asyncio.to_thread(self.collection.get, ids=batch, include=[])
            found.update(result.get("ids", []))
        return found
