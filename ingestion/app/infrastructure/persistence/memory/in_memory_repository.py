"""In-memory JobRepository for tests and local mode.

Every operation runs under one asyncio.Lock, which gives the same
check-and-set atomicity the Mongo adapter gets from find_one_and_update.
Jobs are copied in and out so callers never alias stored state.
"""
from __future__ import annotations

import asyncio
import copy
import uuid
from collections import Counter
from datetime import datetime
from typing import Any

from ingestion.app.constants import FileFormat, JobStatus
from ingestion.app.domain.models import ProcessingError, ProcessingJob
from ingestion.app.domain.state_machine import ensure_transition

GROUPABLE_FIELDS = ("status", "format", "priority")


def _group_key(job: ProcessingJob, field: str) -> str:
    value = getattr(job, field)
    if value is None:
        return "unknown"
    return getattr(value, "value", str(value))


class InMemoryJobRepository:
    def __init__(self) -> None:
        self._jobs: dict[str, ProcessingJob] = {}
        self._lock = asyncio.Lock()

    async def ensure_indexes(self) -> None:
        return

    async def insert(self, job: ProcessingJob) -> None:
        async with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"duplicate job id: {job.job_id}")
            self._jobs[job.job_id] = copy.deepcopy(job)

    async def get(self, job_id: str) -> ProcessingJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def claim_next(self, now: datetime) -> ProcessingJob | None:
        async with self._lock:
            ready = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                and (job.next_retry_at is None or job.next_retry_at <= now)
            ]
            if not ready:
                return None
            ready.sort(key=lambda j: (-j.priority.rank, j.created_at))
            return self._claim(ready[0], now)

    async def claim(self, job_id: str, now: datetime) -> ProcessingJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            return self._claim(job, now)

    def _claim(self, job: ProcessingJob, now: datetime) -> ProcessingJob:
        ensure_transition(job.status, JobStatus.PROCESSING, job_id=job.job_id)
        job.status = JobStatus.PROCESSING
        job.started_at = now
        job.updated_at = now
        job.claim_token = uuid.uuid4().hex
        return copy.deepcopy(job)

    def _owned(self, job_id: str, claim_token: str) -> ProcessingJob | None:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING or job.claim_token != claim_token:
            return None
        return job

    async def update_progress(
        self, job_id: str, claim_token: str, progress: int, now: datetime
    ) -> bool:
        async with self._lock:
            job = self._owned(job_id, claim_token)
            if job is None:
                return False
            job.progress = max(0, min(100, int(progress)))
            job.updated_at = now
            return True

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
    ) -> ProcessingJob | None:
        async with self._lock:
            job = self._owned(job_id, claim_token)
            if job is None:
                return None
            ensure_transition(job.status, JobStatus.COMPLETED, job_id=job_id)
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.extracted_text = text
            job.metadata = copy.deepcopy(metadata)
            job.fallback_source = fallback_source
            job.warnings = list(warnings)
            job.error = None
            job.claim_token = None
            job.completed_at = now
            job.updated_at = now
            job.actual_duration = actual_duration
            return copy.deepcopy(job)

    async def fail(
        self,
        job_id: str,
        claim_token: str,
        *,
        error: ProcessingError,
        warnings: list[str],
        actual_duration: float | None,
        now: datetime,
    ) -> ProcessingJob | None:
        async with self._lock:
            job = self._owned(job_id, claim_token)
            if job is None:
                return None
            ensure_transition(job.status, JobStatus.FAILED, job_id=job_id)
            job.status = JobStatus.FAILED
            job.error = error
            job.warnings = list(warnings)
            job.claim_token = None
            job.completed_at = now
            job.updated_at = now
            job.actual_duration = actual_duration
            return copy.deepcopy(job)

    async def requeue_for_retry(
        self,
        job_id: str,
        *,
        expected_retry_count: int,
        next_retry_at: datetime,
        now: datetime,
    ) -> ProcessingJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or not job.can_retry
                or job.retry_count != expected_retry_count
            ):
                return None
            ensure_transition(job.status, JobStatus.PENDING, job_id=job_id)
            job.status = JobStatus.PENDING
            job.retry_count += 1
            job.last_retry_at = now
            job.next_retry_at = next_retry_at
            job.progress = 0
            job.completed_at = None
            job.updated_at = now
            return copy.deepcopy(job)

    async def cancel(self, job_id: str, now: datetime) -> ProcessingJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
                return None
            ensure_transition(job.status, JobStatus.CANCELLED, job_id=job_id)
            job.status = JobStatus.CANCELLED
            job.claim_token = None
            job.completed_at = now
            job.updated_at = now
            return copy.deepcopy(job)

    async def find_stalled(self, started_before: datetime) -> list[ProcessingJob]:
        async with self._lock:
            return [
                copy.deepcopy(job)
                for job in self._jobs.values()
                if job.status == JobStatus.PROCESSING
                and job.started_at is not None
                and job.started_at < started_before
            ]

    async def reset_stalled(
        self, job_id: str, started_before: datetime, now: datetime
    ) -> ProcessingJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.status != JobStatus.PROCESSING
                or job.started_at is None
                or job.started_at >= started_before
            ):
                return None
            ensure_transition(job.status, JobStatus.PENDING, job_id=job_id)
            job.status = JobStatus.PENDING
            job.progress = 0
            job.started_at = None
            job.claim_token = None
            job.next_retry_at = None
            job.recovery_count += 1
            job.updated_at = now
            return copy.deepcopy(job)

    async def list_jobs(
        self, status: JobStatus | None = None, limit: int = 100
    ) -> list[ProcessingJob]:
        async with self._lock:
            jobs = [j for j in self._jobs.values() if status is None or j.status == status]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [copy.deepcopy(j) for j in jobs[:limit]]

    async def count_by(self, field: str) -> dict[str, int]:
        if field not in GROUPABLE_FIELDS:
            raise ValueError(f"cannot group jobs by {field!r}")
        async with self._lock:
            return dict(Counter(_group_key(job, field) for job in self._jobs.values()))

    async def count_completed_since(self, since: datetime) -> int:
        async with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status == JobStatus.COMPLETED
                and job.completed_at is not None
                and job.completed_at >= since
            )

    async def oldest_pending_created_at(self) -> datetime | None:
        async with self._lock:
            pending = [j.created_at for j in self._jobs.values() if j.status == JobStatus.PENDING]
            return min(pending) if pending else None

    async def average_duration_seconds(self, fmt: FileFormat | None = None) -> float | None:
        async with self._lock:
            durations = [
                job.actual_duration
                for job in self._jobs.values()
                if job.status == JobStatus.COMPLETED
                and job.actual_duration is not None
                and (fmt is None or job.format == fmt)
            ]
        return sum(durations) / len(durations) if durations else None

    async def average_queue_seconds(self, sample: int = 1000) -> float | None:
        async with self._lock:
            started = [j for j in self._jobs.values() if j.started_at is not None]
        started.sort(key=lambda j: j.started_at, reverse=True)
        waits = [(j.started_at - j.created_at).total_seconds() for j in started[:sample]]
        return sum(waits) / len(waits) if waits else None

    async def error_summary(self) -> dict[str, Any]:
        async with self._lock:
            errors = [
                job.error
                for job in self._jobs.values()
                if job.status == JobStatus.FAILED and job.error is not None
            ]
        recoverable = sum(1 for e in errors if e.recoverable)
        return {
            "by_code": dict(Counter(e.code for e in errors)),
            "recoverable": recoverable,
            "non_recoverable": len(errors) - recoverable,
        }

    async def delete_terminal_before(
        self, *, completed_before: datetime, failed_before: datetime
    ) -> list[str]:
        async with self._lock:
            expired: list[str] = []
            for job in self._jobs.values():
                finished = job.completed_at or job.updated_at or job.created_at
                if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
                    if finished < completed_before:
                        expired.append(job.job_id)
                elif job.status == JobStatus.FAILED and not job.can_retry:
                    if finished < failed_before:
                        expired.append(job.job_id)
            for job_id in expired:
                del self._jobs[job_id]
            return expired

    async def close(self) -> None:
        return
