from knowledge_pipeline.queues.publisher import JobPublisher, WebhookJobPublisher
from knowledge_pipeline.queues.store import JobQueue, NewWorkItem

__all__ = ["JobPublisher", "JobQueue", "NewWorkItem", "WebhookJobPublisher"]
