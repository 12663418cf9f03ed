"""Durable job, work item and collection run state backed by the relational store."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.database import current_timestamp, get_session
from knowledge_pipeline.entities import CollectionRun, CollectionTimestamp, Job, WorkItem
from knowledge_pipeline.queues.publisher import JobPublisher
from knowledge_pipeline.schemas.jobs import CollectionRunStatus, JobKind, JobStatus, WorkItemStatus

logger = logging.getLogger(__name__)

DEFAULT_STALE_JOB_TIMEOUT = 300
# Rows per INSERT when creating work items, keeping bound parameters well under SQLite's ceiling.
WORK_ITEM_CHUNK_SIZE = 50


class NewWorkItem(BaseModel):
    collection_run_id: int
    item_type: str
    item_id: str
    source_data: Any


def _serialize(data: Any) -> str:
    if isinstance(data, BaseModel):
        return data.model_dump_json()
    if isinstance(data, str):
        return data
    return json.dumps(data, default=str)


class JobQueue:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        publisher: Optional[JobPublisher] = None,
        stale_job_timeout: int = DEFAULT_STALE_JOB_TIMEOUT,
        work_item_chunk_size: int = WORK_ITEM_CHUNK_SIZE,
        max_retries: int = 3,
    ) -> None:
        self.session_maker = session_maker
        self.publisher = publisher
        self.stale_job_timeout = stale_job_timeout
        self.work_item_chunk_size = work_item_chunk_size
        self.max_retries = max_retries

    # Jobs

    async def create_job(
        self,
        job_type: Union[JobKind, str],
        payload: Union[BaseModel, Dict[str, Any]],
        collection_run_id: Optional[int] = None,
        priority: int = 0,
    ) -> int:
        """Insert a pending job and announce it to the publisher, if one is configured."""
        kind = job_type.value if isinstance(job_type, JobKind) else job_type
        job = Job(
            job_type=kind,
            status=JobStatus.PENDING.value,
            priority=priority,
            payload=_serialize(payload),
            collection_run_id=collection_run_id,
            max_retries=self.max_retries,
            created_at=current_timestamp(),
        )
        async with get_session(self.session_maker) as session:
            session.add(job)
            await session.flush()
            job_id = job.id

        logger.info(f"Job {job_id} of type {kind} queued with priority {priority}")
        await self._notify(job_id)
        return job_id

    async def _notify(self, job_id: int) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.publish({"job_id": job_id})
        except Exception as e:
            logger.warning(f"Failed to publish job {job_id}, it will be picked up by polling: {e}")

    async def get_job(self, job_id: int) -> Optional[Job]:
        async with get_session(self.session_maker, read_only=True) as session:
            return await session.get(Job, job_id)

    async def list_jobs(
        self,
        collection_run_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 20,
    ) -> List[Job]:
        async with get_session(self.session_maker, read_only=True) as session:
            query = select(Job)
            if collection_run_id is not None:
                query = query.where(Job.collection_run_id == collection_run_id)
            if status:
                query = query.where(Job.status == status)
            query = query.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def reset_stale_jobs(self) -> int:
        """Return jobs stuck in ``running`` past the timeout to ``pending``.

        Work items left in ``processing`` by a crashed worker are returned to ``pending``
        too, so the retried job can claim them again.
        """
        cutoff = current_timestamp() - self.stale_job_timeout
        async with get_session(self.session_maker) as session:
            result = await session.execute(
                update(Job)
                .where(Job.status == JobStatus.RUNNING.value, Job.started_at < cutoff)
                .values(status=JobStatus.PENDING.value, started_at=None)
            )
            reset = result.rowcount or 0
            items = await session.execute(
                update(WorkItem)
                .where(WorkItem.status == WorkItemStatus.PROCESSING.value, WorkItem.started_at < cutoff)
                .values(status=WorkItemStatus.PENDING.value, started_at=None)
            )
            recovered = items.rowcount or 0
        if reset:
            logger.warning(f"Reset {reset} stale running jobs to pending")
        if recovered:
            logger.warning(f"Reset {recovered} stale processing work items to pending")
        return reset

    async def get_next_jobs(self, limit: int = 5) -> List[Job]:
        await self.reset_stale_jobs()
        async with get_session(self.session_maker, read_only=True) as session:
            result = await session.execute(
                select(Job)
                .where(Job.status == JobStatus.PENDING.value)
                .order_by(Job.priority, Job.created_at, Job.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_running_jobs(self) -> List[Job]:
        async with get_session(self.session_maker, read_only=True) as session:
            result = await session.execute(select(Job).where(Job.status == JobStatus.RUNNING.value))
            return list(result.scalars().all())

    async def mark_job_running(self, job_id: int) -> bool:
        """Claim a pending job. Returns False if another consumer got there first."""
        async with get_session(self.session_maker) as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                .values(status=JobStatus.RUNNING.value, started_at=current_timestamp())
            )
            return result.rowcount == 1

    async def mark_job_completed(self, job_id: int) -> None:
        async with get_session(self.session_maker) as session:
            job = await session.get(Job, job_id)
            if not job:
                return
            job.status = JobStatus.COMPLETED.value
            job.completed_at = current_timestamp()
            collection_run_id = job.collection_run_id

        if collection_run_id is not None:
            await self.check_and_complete_collection_run(collection_run_id)

    async def mark_job_failed(self, job_id: int, error_message: str, requeue: bool = False) -> None:
        """Record a failed attempt.

        With ``requeue`` the job goes back to ``pending`` for another attempt; otherwise the
        failure is final and the owning run is checked for completion.
        """
        async with get_session(self.session_maker) as session:
            job = await session.get(Job, job_id)
            if not job:
                return
            job.retry_count += 1
            job.error_message = error_message
            if requeue:
                job.status = JobStatus.PENDING.value
                job.started_at = None
            else:
                job.status = JobStatus.FAILED.value
                job.completed_at = current_timestamp()
            collection_run_id = job.collection_run_id

        if not requeue and collection_run_id is not None:
            await self.check_and_complete_collection_run(collection_run_id)

    async def get_job_counts(self, collection_run_id: int) -> Dict[str, int]:
        async with get_session(self.session_maker, read_only=True) as session:
            result = await session.execute(
                select(Job.status, func.count())
                .where(Job.collection_run_id == collection_run_id)
                .group_by(Job.status)
            )
            return {status: count for status, count in result.all()}

    # Work items

    async def create_work_items(self, items: Sequence[NewWorkItem]) -> List[int]:
        ids: List[int] = []
        now = current_timestamp()
        for start in range(0, len(items), self.work_item_chunk_size):
            chunk = [
                WorkItem(
                    collection_run_id=item.collection_run_id,
                    item_type=item.item_type,
                    item_id=item.item_id,
                    status=WorkItemStatus.PENDING.value,
                    source_data=_serialize(item.source_data),
                    created_at=now,
                )
                for item in items[start : start + self.work_item_chunk_size]
            ]
            async with get_session(self.session_maker) as session:
                session.add_all(chunk)
                await session.flush()
                ids.extend(work_item.id for work_item in chunk)
        logger.info(f"Created {len(ids)} work items")
        return ids

    async def get_work_item(self, work_item_id: int) -> Optional[WorkItem]:
        async with get_session(self.session_maker, read_only=True) as session:
            return await session.get(WorkItem, work_item_id)

    async def get_pending_work_items(self, collection_run_id: int, limit: int = 10) -> List[WorkItem]:
        async with get_session(self.session_maker, read_only=True) as session:
            result = await session.execute(
                select(WorkItem)
                .where(
                    WorkItem.collection_run_id == collection_run_id,
                    WorkItem.status == WorkItemStatus.PENDING.value,
                )
                .order_by(WorkItem.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_pending_work_items_count(self, collection_run_id: int) -> int:
        counts = await self.get_work_item_counts(collection_run_id)
        return counts.get(WorkItemStatus.PENDING.value, 0)

    async def get_work_item_counts(self, collection_run_id: int) -> Dict[str, int]:
        async with get_session(self.session_maker, read_only=True) as session:
            result = await session.execute(
                select(WorkItem.status, func.count())
                .where(WorkItem.collection_run_id == collection_run_id)
                .group_by(WorkItem.status)
            )
            return {status: count for status, count in result.all()}

    async def mark_work_item_processing(self, work_item_id: int) -> bool:
        """Claim a work item that is pending or awaiting a retry after failure."""
        async with get_session(self.session_maker) as session:
            result = await session.execute(
                update(WorkItem)
                .where(
                    WorkItem.id == work_item_id,
                    WorkItem.status.in_([WorkItemStatus.PENDING.value, WorkItemStatus.FAILED.value]),
                )
                .values(status=WorkItemStatus.PROCESSING.value, started_at=current_timestamp())
            )
            return result.rowcount == 1

    async def _finish_work_item(self, work_item_id: int, status: WorkItemStatus, **values: Any) -> None:
        async with get_session(self.session_maker) as session:
            work_item = await session.get(WorkItem, work_item_id)
            if not work_item:
                return
            work_item.status = status.value
            work_item.processed_at = current_timestamp()
            for key, value in values.items():
                setattr(work_item, key, value)

    async def mark_work_item_completed(self, work_item_id: int, processed_data: Any) -> None:
        await self._finish_work_item(
            work_item_id,
            WorkItemStatus.COMPLETED,
            processed_data=_serialize(processed_data),
            error_message=None,
        )

    async def mark_work_item_failed(self, work_item_id: int, error_message: str) -> None:
        async with get_session(self.session_maker) as session:
            work_item = await session.get(WorkItem, work_item_id)
            if not work_item:
                return
            work_item.status = WorkItemStatus.FAILED.value
            work_item.retry_count += 1
            work_item.error_message = error_message
            work_item.processed_at = current_timestamp()

    async def mark_work_item_skipped(
        self, work_item_id: int, reason: str = "Item was skipped during processing"
    ) -> None:
        await self._finish_work_item(work_item_id, WorkItemStatus.SKIPPED, error_message=reason)

    async def mark_work_item_cancelled(self, work_item_id: int, reason: str = "Item was cancelled") -> None:
        await self._finish_work_item(work_item_id, WorkItemStatus.CANCELLED, error_message=reason)

    async def cancel_pending_work_items(self, collection_run_id: int, reason: str = "Item was cancelled") -> int:
        async with get_session(self.session_maker) as session:
            result = await session.execute(
                update(WorkItem)
                .where(
                    WorkItem.collection_run_id == collection_run_id,
                    WorkItem.status == WorkItemStatus.PENDING.value,
                )
                .values(
                    status=WorkItemStatus.CANCELLED.value,
                    error_message=reason,
                    processed_at=current_timestamp(),
                )
            )
            return result.rowcount or 0

    # Collection runs

    async def start_collection_run(self, source: str) -> int:
        run = CollectionRun(
            source=source,
            status=CollectionRunStatus.RUNNING.value,
            current_phase="initializing",
            progress_message="Starting data collection...",
            started_at=current_timestamp(),
        )
        async with get_session(self.session_maker) as session:
            session.add(run)
            await session.flush()
            run_id = run.id
        logger.info(f"Started collection run {run_id} for {source}")
        return run_id

    async def get_collection_run(self, collection_run_id: int) -> Optional[CollectionRun]:
        async with get_session(self.session_maker, read_only=True) as session:
            return await session.get(CollectionRun, collection_run_id)

    async def is_collection_run_cancelled(self, collection_run_id: int) -> bool:
        run = await self.get_collection_run(collection_run_id)
        return run is not None and run.status == CollectionRunStatus.CANCELLED.value

    async def update_progress(
        self,
        collection_run_id: int,
        phase: str,
        message: str,
        documents_collected: Optional[int] = None,
        documents_processed: Optional[int] = None,
        total_estimated: Optional[int] = None,
    ) -> None:
        """Record progress on a run. Progress is advisory, so storage errors are only logged."""
        try:
            async with get_session(self.session_maker) as session:
                run = await session.get(CollectionRun, collection_run_id)
                if not run:
                    return
                run.current_phase = phase
                run.progress_message = message
                if documents_collected is not None:
                    run.documents_collected = documents_collected
                if documents_processed is not None:
                    run.documents_processed = documents_processed
                if total_estimated is not None:
                    run.total_estimated = total_estimated
        except SQLAlchemyError as e:
            logger.error(f"Failed to update progress for collection run {collection_run_id}: {e}")

    async def _finish_collection_run(
        self,
        collection_run_id: int,
        status: CollectionRunStatus,
        phase: str,
        message: str,
        **values: Any,
    ) -> bool:
        async with get_session(self.session_maker) as session:
            run = await session.get(CollectionRun, collection_run_id)
            if not run or run.status != CollectionRunStatus.RUNNING.value:
                return False
            run.status = status.value
            run.current_phase = phase
            run.progress_message = message
            run.completed_at = current_timestamp()
            for key, value in values.items():
                setattr(run, key, value)
        logger.info(f"Collection run {collection_run_id} {status.value}: {message}")
        return True

    async def complete_collection_run(
        self,
        collection_run_id: int,
        documents_collected: int,
        documents_processed: Optional[int] = None,
    ) -> bool:
        return await self._finish_collection_run(
            collection_run_id,
            CollectionRunStatus.COMPLETED,
            "completed",
            f"Collection completed with {documents_collected} documents",
            documents_collected=documents_collected,
            documents_processed=documents_collected if documents_processed is None else documents_processed,
        )

    async def fail_collection_run(self, collection_run_id: int, error_message: str) -> bool:
        return await self._finish_collection_run(
            collection_run_id,
            CollectionRunStatus.FAILED,
            "failed",
            f"Collection failed: {error_message}",
            error_message=error_message,
        )

    async def cancel_collection_run(self, collection_run_id: int) -> bool:
        return await self._finish_collection_run(
            collection_run_id,
            CollectionRunStatus.CANCELLED,
            "cancelled",
            "Collection was cancelled",
        )

    async def check_and_complete_collection_run(self, collection_run_id: int) -> None:
        """Settle a run once none of its jobs are pending or running.

        The run fails only when no job completed and at least one failed; any success
        makes the whole run a success.
        """
        try:
            job_counts = await self.get_job_counts(collection_run_id)
            outstanding = job_counts.get(JobStatus.PENDING.value, 0) + job_counts.get(JobStatus.RUNNING.value, 0)
            if outstanding:
                logger.debug(f"Collection run {collection_run_id} has {outstanding} outstanding jobs")
                return

            completed_jobs = job_counts.get(JobStatus.COMPLETED.value, 0)
            failed_jobs = job_counts.get(JobStatus.FAILED.value, 0)
            if failed_jobs > 0 and completed_jobs == 0:
                await self.fail_collection_run(collection_run_id, "All jobs failed")
                return

            item_counts = await self.get_work_item_counts(collection_run_id)
            await self.complete_collection_run(
                collection_run_id, item_counts.get(WorkItemStatus.COMPLETED.value, 0)
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to check completion of collection run {collection_run_id}: {e}")

    # Collection timestamps

    async def get_collection_timestamp(self, source: str) -> Optional[CollectionTimestamp]:
        async with get_session(self.session_maker, read_only=True) as session:
            return await session.get(CollectionTimestamp, source)

    async def _upsert_timestamp(self, session: AsyncSession, source: str) -> CollectionTimestamp:
        record = await session.get(CollectionTimestamp, source)
        if record is None:
            record = CollectionTimestamp(source=source, updated_at=current_timestamp())
            session.add(record)
        return record

    async def update_last_collection_time(self, sources: Iterable[str]) -> None:
        now = current_timestamp()
        async with get_session(self.session_maker) as session:
            for source in sources:
                record = await self._upsert_timestamp(session, source)
                record.last_successful_collection = now
                record.updated_at = now

    async def update_collection_headers(
        self, source: str, etag: Optional[str] = None, last_modified: Optional[str] = None
    ) -> None:
        async with get_session(self.session_maker) as session:
            record = await self._upsert_timestamp(session, source)
            if etag is not None:
                record.etag = etag
            if last_modified is not None:
                record.last_modified = last_modified
            record.updated_at = current_timestamp()
