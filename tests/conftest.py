import uuid
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Set

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from alembic import command
from alembic.config import Config
from knowledge_pipeline.queues.store import JobQueue
from knowledge_pipeline.schemas.documents import EmbeddedDocument, SearchResult, Summary
from knowledge_pipeline.schemas.sources import GitHubContent, GitHubIssue, TopicDetails


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeEmbeddingProvider:
    def __init__(self, dimensions: int = 3) -> None:
        self.dimensions = dimensions
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [[float(len(text))] + [1.0] * (self.dimensions - 1) for text in texts]


class FakeVectorStore:
    def __init__(self, existing: Optional[Set[str]] = None) -> None:
        self.documents: Dict[str, EmbeddedDocument] = {}
        self.store_calls = 0
        self.existing = set(existing or ())

    async def store(self, documents: List[EmbeddedDocument]) -> None:
        self.store_calls += 1
        for document in documents:
            self.documents[document.id] = document

    async def search(self, query: str, limit: int = 10) -> List[SearchResult]:
        return [
            SearchResult(id=document.id, content=document.content, score=1.0)
            for document in list(self.documents.values())[:limit]
            if query.lower() in document.content.lower()
        ]

    async def existing_ids(self, ids: Sequence[str]) -> Set[str]:
        return {doc_id for doc_id in ids if doc_id in self.existing or doc_id in self.documents}


class FakeSummarizer:
    """Keeps everything except items whose title contains ``skip``."""

    def __init__(self) -> None:
        self.seen: List[str] = []

    async def summarize_issue(self, issue: GitHubIssue) -> Optional[Summary]:
        self.seen.append(f"issue:{issue.number}")
        if "skip" in issue.title:
            return None
        return Summary(title=issue.title, summary=f"Summary of {issue.body}")

    async def summarize_forum_topic(self, topic: TopicDetails) -> Optional[Summary]:
        self.seen.append(f"topic:{topic.id}")
        if "skip" in topic.title:
            return None
        return Summary(title=topic.title, summary=" ".join(post.content for post in topic.posts))

    async def generate_snippet(self, file: GitHubContent) -> Optional[Summary]:
        self.seen.append(f"file:{file.path}")
        if "skip" in file.name:
            return None
        return Summary(title=file.name, summary=file.content or "", language="python", category="source-code")


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    db_name = f"knowledge_test_{uuid.uuid4().hex}"
    shared_memory_uri = f"file:{db_name}?mode=memory&cache=shared&uri=true"
    sync_engine = create_engine(f"sqlite+pysqlite:///{shared_memory_uri}", poolclass=StaticPool)

    alembic_cfg = Config("alembic.ini")
    with sync_engine.begin() as connection:
        alembic_cfg.attributes["connection"] = connection
        command.upgrade(alembic_cfg, "head")

    engine = create_async_engine(f"sqlite+aiosqlite:///{shared_memory_uri}", echo=False, poolclass=StaticPool)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
    sync_engine.dispose()


@pytest.fixture
def queue(session_maker: async_sessionmaker[AsyncSession]) -> JobQueue:
    return JobQueue(session_maker, work_item_chunk_size=2)


def issue_data(number: int, title: str = "Streaming responses hang", body: str = "x" * 150, **extra: Any) -> dict:
    return {
        "id": number * 10,
        "url": f"https://github.com/openai/openai-python/issues/{number}",
        "number": number,
        "title": title,
        "body": body,
        "state": "closed",
        **extra,
    }
