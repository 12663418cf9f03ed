from knowledge_pipeline.entities.collection_runs import CollectionRun, CollectionTimestamp
from knowledge_pipeline.entities.jobs import Job, WorkItem

__all__ = ["CollectionRun", "CollectionTimestamp", "Job", "WorkItem"]
