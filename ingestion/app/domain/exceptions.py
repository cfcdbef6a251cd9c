"""Domain exceptions."""
from __future__ import annotations

from ingestion.app.constants import JobStatus
from ingestion.app.domain.models import ProcessingError


class InvalidTransitionError(Exception):
    """Raised when a job status change is not allowed by the state machine."""

    def __init__(self, current: JobStatus, target: JobStatus, job_id: str | None = None) -> None:
        self.current = current
        self.target = target
        self.job_id = job_id
        suffix = f" (job {job_id})" if job_id else ""
        super().__init__(f"invalid transition {current.value} -> {target.value}{suffix}")


class JobNotFoundError(KeyError):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self) -> str:
        return f"job not found: {self.job_id}"


class DocumentProcessingError(Exception):
    """Raised by the metadata utility path; carries the structured error."""

    def __init__(self, error: ProcessingError) -> None:
        self.error = error
        super().__init__(f"{error.code}: {error.message}")
