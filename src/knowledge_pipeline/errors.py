from typing import Optional


class PipelineError(Exception):
    pass


class ExternalServiceError(PipelineError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class EmbeddingTokenLimitError(PipelineError):
    """The embedding provider rejected a request for exceeding its context length."""

    status_code = 400


class CollectionCancelledError(PipelineError):
    """Raised at a checkpoint when a collection run has been cancelled."""

    def __init__(self, collection_run_id: Optional[int] = None) -> None:
        super().__init__("Collection run was cancelled")
        self.collection_run_id = collection_run_id


class InvalidJobPayloadError(PipelineError, ValueError):
    pass


class UnknownJobTypeError(PipelineError, ValueError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type
