"""Document schemas passed between chunking, embedding and storage."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContentMetadata(BaseModel):
    """Descriptive fields attached to a document and inherited by its chunks."""

    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    author: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    source_url: Optional[str] = None
    tags: Optional[List[str]] = None
    category: Optional[str] = None
    language: Optional[str] = None
    api_endpoints: Optional[List[str]] = None
    parameters: Optional[List[str]] = None
    chunk_index: Optional[int] = None
    notebook_kernel: Optional[str] = None
    cell_types: Optional[List[str]] = None
    total_cells: Optional[int] = None
    code_cells: Optional[int] = None
    markdown_cells: Optional[int] = None
    original_document_id: Optional[str] = None
    is_chunk: Optional[bool] = None


class Document(BaseModel):
    id: str
    content: str
    metadata: ContentMetadata = Field(default_factory=ContentMetadata)
    source: str


class DocumentChunk(BaseModel):
    id: str
    content: str
    metadata: ContentMetadata
    chunk_index: int
    parent_document_id: str


class EmbeddedDocument(BaseModel):
    id: str
    content: str
    embedding: List[float]
    metadata: ContentMetadata = Field(default_factory=ContentMetadata)
    source: Optional[str] = None


class SearchResult(BaseModel):
    id: str
    content: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Summary(BaseModel):
    """Output of a summarizer. ``None`` in its place means the item was filtered out."""

    title: str
    summary: str
    language: Optional[str] = None
    category: Optional[str] = None
    original_length: int = 0
    summary_length: int = 0
