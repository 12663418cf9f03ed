"""Job queue schemas and typed payloads per job kind."""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from knowledge_pipeline.errors import InvalidJobPayloadError, UnknownJobTypeError


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class CollectionRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemType(str, Enum):
    GITHUB_ISSUE = "github_issue"
    GITHUB_FILE = "github_file"
    FORUM_POST = "forum_post"


class JobKind(str, Enum):
    """Closed set of job types the processor knows how to run."""

    GITHUB_COLLECT = "github_collect"
    FORUM_COLLECT = "forum_collect"
    PROCESS_BATCH = "process_batch"
    PROCESS_ITEM = "process_item"
    PROCESS_PENDING_WORK_ITEMS = "process_pending_work_items"


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GitHubCollectPayload(JobPayload):
    collection_run_id: Optional[int] = None
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    max_pages: int = 2


class ForumCollectPayload(JobPayload):
    collection_run_id: Optional[int] = None
    categories: Optional[List[str]] = None


class BatchItem(BaseModel):
    item_type: ItemType
    item_id: str
    data: Dict[str, Any]


class ProcessBatchPayload(JobPayload):
    collection_run_id: int
    items: List[BatchItem]
    chunk_size: int = Field(default=10, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessItemPayload(JobPayload):
    work_item_id: int


class ProcessPendingWorkItemsPayload(JobPayload):
    collection_run_id: int
    batch_size: int = Field(default=5, ge=1)


PAYLOAD_MODELS: Dict[JobKind, Type[JobPayload]] = {
    JobKind.GITHUB_COLLECT: GitHubCollectPayload,
    JobKind.FORUM_COLLECT: ForumCollectPayload,
    JobKind.PROCESS_BATCH: ProcessBatchPayload,
    JobKind.PROCESS_ITEM: ProcessItemPayload,
    JobKind.PROCESS_PENDING_WORK_ITEMS: ProcessPendingWorkItemsPayload,
}


def parse_job_payload(job_type: str, payload: str) -> Tuple[JobKind, JobPayload]:
    """Resolve the job kind and validate its serialized payload."""
    try:
        kind = JobKind(job_type)
    except ValueError:
        raise UnknownJobTypeError(job_type) from None
    try:
        return kind, PAYLOAD_MODELS[kind].model_validate_json(payload)
    except ValidationError as e:
        raise InvalidJobPayloadError(f"Invalid payload for {kind.value} job: {e}") from e


class JobSummary(BaseModel):
    """Outcome counters for one ``process_next_jobs`` pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
