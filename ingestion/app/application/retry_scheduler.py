from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger

from ingestion.app.core import SERVICE_NAME
from ingestion.app.core.backoff import RetryPolicy, compute_retry_delay
from ingestion.app.domain.models import ProcessingJob
from ingestion.app.ports.job_repository import JobRepository


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryScheduler:
    """
    Re-queues failed jobs with exponential backoff and jitter.

    A job is eligible when its last error is recoverable and retry_count is
    below max_retries. Scheduling flips FAILED -> PENDING, increments
    retry_count and sets next_retry_at; claim queries skip the job until then.
    """

    def __init__(
        self,
        repository: JobRepository,
        policy: RetryPolicy | None = None,
        *,
        now: Callable[[], datetime] = _utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._repository = repository
        self._policy = policy or RetryPolicy()
        self._now = now
        self._rng = rng

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def compute_delay(self, retry_count: int) -> float:
        return compute_retry_delay(retry_count, self._policy, rng=self._rng)

    def ineligibility_reason(self, job: ProcessingJob) -> str | None:
        if job.error is None:
            return "no_error_recorded"
        if not job.error.recoverable:
            return "error_not_recoverable"
        if job.retry_count >= job.max_retries:
            return "retries_exhausted"
        if not job.can_retry:
            return "not_failed"
        return None

    async def schedule_retry(self, job_id: str) -> bool:
        job = await self._repository.get(job_id)
        if job is None:
            _log("retry_skipped", job_id=job_id, reason="job_not_found")
            return False

        reason = self.ineligibility_reason(job)
        if reason is not None:
            _log("retry_skipped", job_id=job_id, reason=reason, retry_count=job.retry_count)
            return False

        now = self._now()
        delay = self.compute_delay(job.retry_count)
        next_retry_at = now + timedelta(seconds=delay)
        updated = await self._repository.requeue_for_retry(
            job_id,
            expected_retry_count=job.retry_count,
            next_retry_at=next_retry_at,
            now=now,
        )
        if updated is None:
            # Another actor changed the job between read and write.
            _log("retry_skipped", job_id=job_id, reason="concurrent_update")
            return False

        _log(
            "retry_scheduled",
            job_id=job_id,
            retry_count=updated.retry_count,
            max_retries=updated.max_retries,
            delay_seconds=round(delay, 3),
            next_retry_at=next_retry_at.isoformat(),
        )
        return True
