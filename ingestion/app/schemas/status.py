from datetime import datetime
from typing import Any

from pydantic import BaseModel

from ingestion.app.constants import JobPriority, JobStatus
from ingestion.app.domain.models import ProcessingJob
from ingestion.app.domain.progress import ProgressUpdate


class JobErrorPayload(BaseModel):
    code: str
    message: str
    recoverable: bool
    details: dict[str, Any] = {}


class JobStatusResponse(BaseModel):
    job_id: str
    file_id: str
    file_name: str
    status: JobStatus
    progress: int
    stage: str | None = None
    priority: JobPriority
    format: str | None = None
    retry_count: int = 0
    max_retries: int = 0
    next_retry_at: datetime | None = None
    extracted_text: str | None = None
    metadata: dict[str, Any] | None = None
    fallback_source: str | None = None
    warnings: list[str] = []
    error: JobErrorPayload | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: float | None = None
    actual_duration: float | None = None

    @staticmethod
    def from_job(job: ProcessingJob, live: ProgressUpdate | None = None) -> "JobStatusResponse":
        progress = job.progress
        stage = None
        if live is not None and job.status == JobStatus.PROCESSING:
            progress = max(progress, live.percentage)
            stage = live.stage.value
        return JobStatusResponse(
            job_id=job.job_id,
            file_id=job.file_id,
            file_name=job.file_name,
            status=job.status,
            progress=progress,
            stage=stage,
            priority=job.priority,
            format=job.format.value if job.format else None,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            next_retry_at=job.next_retry_at,
            extracted_text=job.extracted_text,
            metadata=job.metadata,
            fallback_source=job.fallback_source,
            warnings=list(job.warnings),
            error=JobErrorPayload(**job.error.to_dict()) if job.error else None,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            estimated_duration=job.estimated_duration,
            actual_duration=job.actual_duration,
        )
