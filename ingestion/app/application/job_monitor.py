from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger

from ingestion.app.constants import (
    DEGRADED_SUCCESS_RATE,
    MAX_PENDING_AGE_SECONDS,
    MAX_PENDING_BACKLOG,
    UNHEALTHY_STALLED_JOBS,
    UNHEALTHY_SUCCESS_RATE,
    ErrorCode,
    EventType,
    HealthStatus,
    JobStatus,
)
from ingestion.app.core import SERVICE_NAME
from ingestion.app.domain.models import ProcessingError, ProcessingEvent, ProcessingJob
from ingestion.app.domain.progress import ProgressTracker
from ingestion.app.ports.document_store import DocumentStore
from ingestion.app.ports.event_publisher import EventPublisher
from ingestion.app.ports.job_repository import JobRepository


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def success_rate(completed: int, failed: int) -> float:
    finished = completed + failed
    if finished == 0:
        return 100.0
    return completed / finished * 100


@dataclass
class QueueStatistics:
    total_jobs: int
    by_status: dict[str, int]
    by_format: dict[str, int]
    by_priority: dict[str, int]
    success_rate: float
    average_processing_seconds: float | None
    average_queue_seconds: float | None
    throughput: dict[str, int]
    errors: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HealthReport:
    status: HealthStatus
    issues: list[str]
    checked_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def degrade(self, issue: str) -> None:
        self.issues.append(issue)
        if self.status == HealthStatus.HEALTHY:
            self.status = HealthStatus.DEGRADED

    def fail(self, issue: str) -> None:
        self.issues.append(issue)
        self.status = HealthStatus.UNHEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "issues": list(self.issues),
            "checked_at": self.checked_at.isoformat(),
            "details": dict(self.details),
        }


class JobMonitor:
    """
    Audits the job store: statistics, health classification, stalled-job
    detection and recovery, and retention cleanup.

    Stalled recovery resets a job to PENDING without touching retry_count, so
    a crashing worker cannot burn a job's retry budget. Each recovery bumps
    recovery_count; past max_stalled_recoveries the job is failed for good.
    """

    def __init__(
        self,
        repository: JobRepository,
        documents: DocumentStore,
        *,
        stalled_threshold_seconds: float = 300.0,
        max_stalled_recoveries: int = 3,
        completed_retention_seconds: float = 86_400.0,
        failed_retention_seconds: float = 604_800.0,
        health_check_interval_seconds: float = 60.0,
        progress: ProgressTracker | None = None,
        publisher: EventPublisher | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._documents = documents
        self._stalled_threshold = timedelta(seconds=stalled_threshold_seconds)
        self._max_stalled_recoveries = int(max_stalled_recoveries)
        self._completed_retention = timedelta(seconds=completed_retention_seconds)
        self._failed_retention = timedelta(seconds=failed_retention_seconds)
        self._interval = float(health_check_interval_seconds)
        self._progress = progress
        self._publisher = publisher
        self._now = now
        self.last_report: HealthReport | None = None

    async def get_statistics(self) -> QueueStatistics:
        now = self._now()
        by_status = await self._repository.count_by("status")
        completed = by_status.get(JobStatus.COMPLETED.value, 0)
        failed = by_status.get(JobStatus.FAILED.value, 0)
        return QueueStatistics(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_format=await self._repository.count_by("format"),
            by_priority=await self._repository.count_by("priority"),
            success_rate=round(success_rate(completed, failed), 2),
            average_processing_seconds=await self._repository.average_duration_seconds(),
            average_queue_seconds=await self._repository.average_queue_seconds(),
            throughput={
                "last_hour": await self._repository.count_completed_since(now - timedelta(hours=1)),
                "last_day": await self._repository.count_completed_since(now - timedelta(days=1)),
                "last_week": await self._repository.count_completed_since(now - timedelta(days=7)),
            },
            errors=await self._repository.error_summary(),
        )

    async def detect_stalled_jobs(self) -> list[ProcessingJob]:
        return await self._repository.find_stalled(self._now() - self._stalled_threshold)

    async def check_health(self) -> HealthReport:
        now = self._now()
        report = HealthReport(status=HealthStatus.HEALTHY, issues=[], checked_at=now)
        try:
            stats = await self.get_statistics()
            stalled = await self.detect_stalled_jobs()
            oldest_pending = await self._repository.oldest_pending_created_at()
        except Exception as exc:
            logger.warning("health check failed: {}", exc)
            report.fail(f"Health check failed: {exc}")
            self.last_report = report
            return report

        if stats.success_rate < UNHEALTHY_SUCCESS_RATE:
            report.fail(f"Success rate {stats.success_rate:.1f}% is below {UNHEALTHY_SUCCESS_RATE:.0f}%")
        elif stats.success_rate < DEGRADED_SUCCESS_RATE:
            report.degrade(f"Success rate {stats.success_rate:.1f}% is below {DEGRADED_SUCCESS_RATE:.0f}%")

        if len(stalled) > UNHEALTHY_STALLED_JOBS:
            report.fail(f"{len(stalled)} stalled jobs detected")
        elif stalled:
            report.degrade(f"{len(stalled)} stalled job(s) detected")

        pending_age = None
        if oldest_pending is not None:
            pending_age = (now - oldest_pending).total_seconds()
            if pending_age > MAX_PENDING_AGE_SECONDS:
                report.degrade(f"Oldest pending job has waited {int(pending_age)} seconds")

        pending = stats.by_status.get(JobStatus.PENDING.value, 0)
        if pending > MAX_PENDING_BACKLOG:
            report.degrade(f"Pending backlog of {pending} jobs exceeds {MAX_PENDING_BACKLOG}")

        report.details = {
            "statistics": stats.to_dict(),
            "stalled_jobs": [job.job_id for job in stalled],
            "oldest_pending_age_seconds": pending_age,
        }
        if report.status != HealthStatus.HEALTHY:
            _log("health_degraded", status=report.status.value, issues=list(report.issues))
        self.last_report = report
        return report

    async def recover_stalled_jobs(self) -> int:
        now = self._now()
        cutoff = now - self._stalled_threshold
        recovered = 0
        for job in await self._repository.find_stalled(cutoff):
            if job.recovery_count >= self._max_stalled_recoveries:
                await self._give_up(job, now)
                continue
            reset = await self._repository.reset_stalled(job.job_id, cutoff, now)
            if reset is None:
                continue
            recovered += 1
            if self._progress is not None:
                self._progress.clear_progress(job.job_id)
            _log(
                "stalled_job_recovered",
                job_id=job.job_id,
                recovery_count=reset.recovery_count,
                stalled_since=job.started_at.isoformat() if job.started_at else None,
            )
        return recovered

    async def _give_up(self, job: ProcessingJob, now: datetime) -> None:
        error = ProcessingError(
            code=ErrorCode.STALLED_RECOVERY_EXHAUSTED,
            message=f"Job stalled {job.recovery_count + 1} times; giving up",
            recoverable=False,
            details={"recovery_count": job.recovery_count},
        )
        failed = await self._repository.fail(
            job.job_id,
            job.claim_token,
            error=error,
            warnings=list(job.warnings),
            actual_duration=None,
            now=now,
        )
        if failed is None:
            return
        _log("stalled_job_abandoned", job_id=job.job_id, recovery_count=job.recovery_count)
        if self._publisher is not None:
            event = ProcessingEvent(
                type=EventType.JOB_FAILED,
                job_id=job.job_id,
                timestamp=now,
                data={"error": error.to_dict(), "retry_scheduled": False},
            )
            try:
                await self._publisher.publish(event)
            except Exception as exc:
                logger.warning("event publish failed for job {}: {}", job.job_id, exc)

    async def cleanup(self) -> int:
        now = self._now()
        removed = await self._repository.delete_terminal_before(
            completed_before=now - self._completed_retention,
            failed_before=now - self._failed_retention,
        )
        for job_id in removed:
            await self._documents.delete(job_id)
        if removed:
            _log("jobs_cleaned_up", count=len(removed))
        return len(removed)

    async def run_once(self) -> HealthReport:
        report = await self.check_health()
        if report.status == HealthStatus.UNHEALTHY and report.details.get("stalled_jobs"):
            recovered = await self.recover_stalled_jobs()
            _log("auto_recovery", recovered=recovered)
        await self.cleanup()
        return report

    async def run(self, stop: asyncio.Event) -> None:
        """Run checks every interval until `stop` is set."""
        _log("monitor_started", interval_seconds=self._interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("monitor iteration failed: {}", exc)
            try:
                await asyncio.wait_for(stop.wait(), self._interval)
            except asyncio.TimeoutError:
                pass
        _log("monitor_stopped")
