from typing import List

import pytest
from conftest import FakeEmbeddingProvider, RecordingSleep

from knowledge_pipeline.embeddings.batcher import EmbeddingBatcher
from knowledge_pipeline.embeddings.provider import is_token_limit_message
from knowledge_pipeline.errors import EmbeddingTokenLimitError, ExternalServiceError
from knowledge_pipeline.rate_limiter import RateLimitConfig, RateLimiter
from knowledge_pipeline.schemas.documents import ContentMetadata, Document


class SingleTextOnlyProvider(FakeEmbeddingProvider):
    """Rejects any request with more than one text as too long."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if len(texts) > 1:
            raise EmbeddingTokenLimitError("This model's maximum context length is 8192 tokens")
        return [[1.0, 0.0] for _ in texts]


class BrokenProvider(FakeEmbeddingProvider):
    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        raise ExternalServiceError("HTTP 503: Service Unavailable", status_code=503)


def make_batcher(provider: FakeEmbeddingProvider, sleep: RecordingSleep) -> EmbeddingBatcher:
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=1000, retry_attempts=1, base_delay_ms=10), sleep=sleep)
    return EmbeddingBatcher(provider, limiter, sleep=sleep)


def make_document(doc_id: str, content: str) -> Document:
    return Document(id=doc_id, content=content, metadata=ContentMetadata(title=doc_id), source="github")


def test_oversized_document_is_split_into_chunk_documents(no_sleep: RecordingSleep) -> None:
    batcher = make_batcher(FakeEmbeddingProvider(), no_sleep)
    document = make_document("big", "lorem ipsum " * 2500)  # 30,000 chars, ~7,500 tokens

    parts = batcher.split_oversized_document(document)

    assert len(parts) > 1
    assert [part.id for part in parts[:2]] == ["big_chunk_0", "big_chunk_1"]
    assert all(part.metadata.is_chunk for part in parts)
    assert all(part.metadata.original_document_id == "big" for part in parts)
    assert parts[1].metadata.chunk_index == 1
    assert parts[0].source == "github"


def test_document_within_budget_is_kept_whole(no_sleep: RecordingSleep) -> None:
    batcher = make_batcher(FakeEmbeddingProvider(), no_sleep)
    document = make_document("small", "short text")
    assert batcher.split_oversized_document(document) == [document]


@pytest.mark.asyncio
async def test_batch_process_embeds_everything_in_one_request(no_sleep: RecordingSleep) -> None:
    provider = FakeEmbeddingProvider()
    batcher = make_batcher(provider, no_sleep)
    documents = [make_document(f"doc{i}", f"content {i}") for i in range(3)]

    embedded = await batcher.batch_process(documents)

    assert [d.id for d in embedded] == ["doc0", "doc1", "doc2"]
    assert len(provider.calls) == 1
    assert embedded[0].metadata.title == "doc0"
    assert embedded[0].source == "github"


@pytest.mark.asyncio
async def test_token_limit_error_halves_the_batch(no_sleep: RecordingSleep) -> None:
    provider = SingleTextOnlyProvider()
    batcher = make_batcher(provider, no_sleep)

    embedded = await batcher.batch_process([make_document("a", "first"), make_document("b", "second")])

    assert sorted(d.id for d in embedded) == ["a", "b"]
    assert [len(call) for call in provider.calls] == [2, 1, 1]


@pytest.mark.asyncio
async def test_failing_batch_is_skipped_not_raised(no_sleep: RecordingSleep) -> None:
    provider = BrokenProvider()
    batcher = make_batcher(provider, no_sleep)

    embedded = await batcher.batch_process([make_document("a", "first")])

    assert embedded == []
    assert len(provider.calls) == 3


def test_calculate_similarity(no_sleep: RecordingSleep) -> None:
    batcher = make_batcher(FakeEmbeddingProvider(), no_sleep)
    scores = batcher.calculate_similarity([1.0, 0.0], [[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
    assert scores == pytest.approx([1.0, 0.0, 0.0])


def test_token_limit_messages_are_recognized() -> None:
    assert is_token_limit_message("This model's maximum context length is 8192 tokens")
    assert not is_token_limit_message("Invalid API key provided")
