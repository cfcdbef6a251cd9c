"""Port: durable job store. Implementations live in infrastructure.

Every state change is a single conditional write: the adapter applies it only
when the stored job still matches the expected state (and, for writes made by
a worker, the claim token it was handed). A write that does not match returns
None / False instead of raising.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ingestion.app.constants import FileFormat, JobStatus
from ingestion.app.domain.models import ProcessingError, ProcessingJob


class JobRepository(Protocol):
    async def ensure_indexes(self) -> None: ...

    async def insert(self, job: ProcessingJob) -> None: ...

    async def get(self, job_id: str) -> ProcessingJob | None: ...

    async def claim_next(self, now: datetime) -> ProcessingJob | None:
        """PENDING -> PROCESSING for the highest-priority, oldest job whose retry time has come."""
        ...

    async def claim(self, job_id: str, now: datetime) -> ProcessingJob | None:
        """PENDING -> PROCESSING for one specific job."""
        ...

    async def update_progress(
        self, job_id: str, claim_token: str, progress: int, now: datetime
    ) -> bool: ...

    async def complete(
        self,
        job_id: str,
        claim_token: str,
        *,
        text: str,
        metadata: dict[str, Any] | None,
        fallback_source: str | None,
        warnings: list[str],
        actual_duration: float,
        now: datetime,
    ) -> ProcessingJob | None: ...

    async def fail(
        self,
        job_id: str,
        claim_token: str,
        *,
        error: ProcessingError,
        warnings: list[str],
        actual_duration: float | None,
        now: datetime,
    ) -> ProcessingJob | None: ...

    async def requeue_for_retry(
        self,
        job_id: str,
        *,
        expected_retry_count: int,
        next_retry_at: datetime,
        now: datetime,
    ) -> ProcessingJob | None:
        """FAILED (recoverable, budget left) -> PENDING, retry_count + 1."""
        ...

    async def cancel(self, job_id: str, now: datetime) -> ProcessingJob | None:
        """PENDING or PROCESSING -> CANCELLED."""
        ...

    async def find_stalled(self, started_before: datetime) -> list[ProcessingJob]: ...

    async def reset_stalled(
        self, job_id: str, started_before: datetime, now: datetime
    ) -> ProcessingJob | None:
        """PROCESSING (started before cutoff) -> PENDING with progress 0 and no start time."""
        ...

    async def list_jobs(
        self, status: JobStatus | None = None, limit: int = 100
    ) -> list[ProcessingJob]: ...

    async def count_by(self, field: str) -> dict[str, int]:
        """Job counts grouped by `status`, `format` or `priority`."""
        ...

    async def count_completed_since(self, since: datetime) -> int: ...

    async def oldest_pending_created_at(self) -> datetime | None: ...

    async def average_duration_seconds(self, fmt: FileFormat | None = None) -> float | None:
        """Mean actual duration of COMPLETED jobs, optionally for one format."""
        ...

    async def average_queue_seconds(self, sample: int = 1000) -> float | None:
        """Mean created -> started wait over the most recently started jobs."""
        ...

    async def error_summary(self) -> dict[str, Any]:
        """{"by_code": {code: n}, "recoverable": n, "non_recoverable": n} over FAILED jobs."""
        ...

    async def delete_terminal_before(
        self, *, completed_before: datetime, failed_before: datetime
    ) -> list[str]:
        """Delete expired terminal jobs; returns their ids."""
        ...

    async def close(self) -> None: ...
