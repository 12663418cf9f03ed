"""Collection run bookkeeping entities."""

from typing import Optional

from sqlalchemy import Text
from sqlmodel import Field, SQLModel


class CollectionRun(SQLModel, table=True):
    __tablename__ = "collection_runs"
    id: Optional[int] = Field(default=None, primary_key=True)
    source: str
    status: str = Field(default="running", index=True)
    current_phase: Optional[str] = None
    progress_message: Optional[str] = Field(default=None, sa_type=Text)
    documents_collected: int = Field(default=0)
    documents_processed: int = Field(default=0)
    total_estimated: int = Field(default=0)
    started_at: int
    completed_at: Optional[int] = None
    error_message: Optional[str] = Field(default=None, sa_type=Text)


class CollectionTimestamp(SQLModel, table=True):
    """Last successful collection and conditional request headers per source."""

    __tablename__ = "collection_timestamps"
    source: str = Field(primary_key=True)
    last_successful_collection: Optional[int] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    updated_at: int
