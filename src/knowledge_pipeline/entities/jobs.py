"""Job queue entities."""

from typing import Optional

from sqlalchemy import Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    """Queued unit of pipeline work. ``payload`` holds the serialized JSON arguments."""

    __tablename__ = "jobs"
    id: Optional[int] = Field(default=None, primary_key=True)
    job_type: str
    status: str = Field(default="pending")
    priority: int = Field(default=0)
    payload: str = Field(default="{}", sa_type=Text)
    collection_run_id: Optional[int] = Field(default=None, foreign_key="collection_runs.id")
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    created_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    error_message: Optional[str] = Field(default=None, sa_type=Text)
    __table_args__ = (
        Index("idx_jobs_status_priority", "status", "priority", "created_at"),
        Index("idx_jobs_collection_run_status", "collection_run_id", "status"),
    )


class WorkItem(SQLModel, table=True):
    """One issue, file or forum post waiting to become an embedded document."""

    __tablename__ = "work_items"
    id: Optional[int] = Field(default=None, primary_key=True)
    collection_run_id: int = Field(foreign_key="collection_runs.id")
    item_type: str
    item_id: str
    status: str = Field(default="pending")
    source_data: str = Field(sa_type=Text)
    processed_data: Optional[str] = Field(default=None, sa_type=Text)
    retry_count: int = Field(default=0)
    created_at: int
    started_at: Optional[int] = None
    processed_at: Optional[int] = None
    error_message: Optional[str] = Field(default=None, sa_type=Text)
    __table_args__ = (Index("idx_work_items_collection_run_status", "collection_run_id", "status"),)
