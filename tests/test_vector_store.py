from typing import Any, Dict, List, Tuple

import pytest
from conftest import FakeEmbeddingProvider, RecordingSleep

from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.rate_limiter import RateLimitConfig, RateLimiter
from knowledge_pipeline.schemas.documents import ContentMetadata, EmbeddedDocument
from knowledge_pipeline.vector_stores.chroma import METADATA_CONTENT_LIMIT, ChromaVectorStore, flatten_metadata


class FakeCollection:
    def __init__(self, stored_ids: List[str], fail_queries: bool = False) -> None:
        self.stored_ids = stored_ids
        self.fail_queries = fail_queries
        self.upserts: List[Dict[str, Any]] = []
        self.gets: List[List[str]] = []
        self.queries: List[Dict[str, Any]] = []

    def upsert(self, **kwargs: Any) -> None:
        self.upserts.append(kwargs)

    def get(self, ids: List[str], include: List[str]) -> Dict[str, Any]:
        self.gets.append(ids)
        return {"ids": [doc_id for doc_id in ids if doc_id in self.stored_ids]}

    def query(self, **kwargs: Any) -> Dict[str, Any]:
        self.queries.append(kwargs)
        if self.fail_queries:
            raise RuntimeError("collection unavailable")
        return {
            "ids": [["github_issue_1_chunk_0", "forum_9_chunk_0"]],
            "documents": [["Set stream=True", None]],
            "metadatas": [[{"source": "github"}, None]],
            "distances": [[0.1, 0.4]],
        }


class FakeChromaClient:
    def __init__(self, collection: FakeCollection) -> None:
        self.collection = collection
        self.requested: List[Dict[str, Any]] = []

    def get_or_create_collection(self, name: str, metadata: Dict[str, Any]) -> FakeCollection:
        self.requested.append({"name": name, "metadata": metadata})
        return self.collection


def make_store(collection: FakeCollection, sleep: RecordingSleep) -> Tuple[ChromaVectorStore, FakeChromaClient]:
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=1000, retry_attempts=1, base_delay_ms=10), sleep=sleep)
    client = FakeChromaClient(collection)
    embedder = EmbeddingBatcher(FakeEmbeddingProvider(), limiter, sleep=sleep)
    return ChromaVectorStore(client, embedder, rate_limiter=limiter, sleep=sleep), client


def embedded(doc_id: str, **metadata: Any) -> EmbeddedDocument:
    return EmbeddedDocument(
        id=doc_id, content=f"content of {doc_id}", embedding=[0.1, 0.2], metadata=ContentMetadata(**metadata)
    )


@pytest.mark.asyncio
async def test_store_upserts_in_batches_of_one_hundred(no_sleep: RecordingSleep) -> None:
    collection = FakeCollection([])
    store, client = make_store(collection, no_sleep)

    await store.store([embedded(f"doc{i}") for i in range(250)])

    assert [len(upsert["ids"]) for upsert in collection.upserts] == [100, 100, 50]
    assert collection.upserts[0]["metadatas"][0]["content"] == "content of doc0"
    assert no_sleep.delays.count(0.5) == 2
    assert client.requested == [{"name": "sdk_knowledge", "metadata": {"hnsw:space": "cosine"}}]


@pytest.mark.asyncio
async def test_store_ignores_empty_input(no_sleep: RecordingSleep) -> None:
    collection = FakeCollection([])
    store, client = make_store(collection, no_sleep)

    await store.store([])

    assert collection.upserts == []
    assert client.requested == []


@pytest.mark.asyncio
async def test_search_converts_distance_to_score(no_sleep: RecordingSleep) -> None:
    collection = FakeCollection([])
    store, _ = make_store(collection, no_sleep)

    results = await store.search("how to stream", limit=2)

    assert [r.id for r in results] == ["github_issue_1_chunk_0", "forum_9_chunk_0"]
    assert [r.score for r in results] == pytest.approx([0.9, 0.6])
    assert results[0].metadata == {"source": "github"}
    assert results[1].content == ""
    assert results[1].metadata == {}
    assert collection.queries[0]["n_results"] == 2
    assert collection.queries[0]["query_embeddings"] == [[13.0, 1.0, 1.0]]


@pytest.mark.asyncio
async def test_search_errors_yield_no_results(no_sleep: RecordingSleep) -> None:
    store, _ = make_store(FakeCollection([], fail_queries=True), no_sleep)
    assert await store.search("anything") == []


@pytest.mark.asyncio
async def test_existing_ids_checks_in_batches(no_sleep: RecordingSleep) -> None:
    collection = FakeCollection(["doc3", "doc120"])
    store, _ = make_store(collection, no_sleep)

    found = await store.existing_ids([f"doc{i}" for i in range(150)])

    assert found == {"doc3", "doc120"}
    assert [len(ids) for ids in collection.gets] == [100, 50]


def test_flatten_metadata_keeps_only_scalars() -> None:
    document = EmbeddedDocument(
        id="doc",
        content="x" * (METADATA_CONTENT_LIMIT + 10),
        embedding=[0.0],
        metadata=ContentMetadata(title="Streaming", tags=["bug", "api"], chunk_index=0, extra_info={"k": 1}),
        source="github",
    )

    flat = flatten_metadata(document)

    assert flat["tags"] == "bug, api"
    assert flat["chunk_index"] == 0
    assert flat["source"] == "github"
    assert flat["extra_info"] == '{"k": 1}'
    assert len(str(flat["content"])) == METADATA_CONTENT_LIMIT
    assert "author" not in flat
