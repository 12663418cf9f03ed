from typing import List, Protocol, Sequence, Set

from knowledge_pipeline.schemas.documents import EmbeddedDocument, SearchResult


class VectorStore(Protocol):
    async def store(self, documents: List[EmbeddedDocument]) -> None: ...

    async def search(self, query: str, limit: int = 10) -> List[SearchResult]: ...

    async def existing_ids(self, ids: Sequence[str]) -> Set[str]: ...
