"""Unit tests for InMemoryJobRepository: claim exclusivity, ordering, conditional writes."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ingestion.app.constants import JobPriority, JobStatus
from ingestion.app.domain.models import ProcessingError
from tests.conftest import FakeClock, make_job, recoverable_error


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(repository):
    clock = FakeClock()
    await repository.insert(make_job("only"))

    results = await asyncio.gather(*(repository.claim_next(clock()) for _ in range(10)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].status == JobStatus.PROCESSING
    assert winners[0].claim_token
    assert winners[0].started_at == clock()


@pytest.mark.asyncio
async def test_claim_order_is_priority_then_age(repository):
    clock = FakeClock()
    base = clock() - timedelta(hours=1)
    await repository.insert(make_job("old-normal", created_at=base))
    await repository.insert(make_job("new-high", created_at=base + timedelta(minutes=5), priority=JobPriority.HIGH))
    await repository.insert(make_job("oldest-low", created_at=base - timedelta(minutes=5), priority=JobPriority.LOW))

    order = [(await repository.claim_next(clock())).job_id for _ in range(3)]

    assert order == ["new-high", "old-normal", "oldest-low"]
    assert await repository.claim_next(clock()) is None


@pytest.mark.asyncio
async def test_jobs_waiting_for_retry_are_not_claimable(repository):
    clock = FakeClock()
    await repository.insert(make_job(next_retry_at=clock() + timedelta(seconds=5)))

    assert await repository.claim_next(clock()) is None
    clock.advance(5)
    assert (await repository.claim_next(clock())).job_id == "job-1"


@pytest.mark.asyncio
async def test_writes_require_matching_claim_token(repository):
    clock = FakeClock()
    await repository.insert(make_job())
    claimed = await repository.claim("job-1", clock())

    assert await repository.update_progress("job-1", "stale-token", 40, clock()) is False
    assert await repository.update_progress("job-1", claimed.claim_token, 40, clock()) is True
    assert await repository.fail("job-1", "stale-token", error=recoverable_error(), warnings=[], actual_duration=1.0, now=clock()) is None

    done = await repository.complete(
        "job-1",
        claimed.claim_token,
        text="hello",
        metadata={"word_count": 1},
        fallback_source=None,
        warnings=["w"],
        actual_duration=0.5,
        now=clock(),
    )
    assert done.status == JobStatus.COMPLETED
    assert done.progress == 100
    assert done.claim_token is None
    assert done.completed_at == clock()


@pytest.mark.asyncio
async def test_cancelled_job_rejects_late_completion(repository):
    clock = FakeClock()
    await repository.insert(make_job())
    claimed = await repository.claim("job-1", clock())

    cancelled = await repository.cancel("job-1", clock())
    late = await repository.complete(
        "job-1",
        claimed.claim_token,
        text="late",
        metadata=None,
        fallback_source=None,
        warnings=[],
        actual_duration=1.0,
        now=clock(),
    )

    assert cancelled.status == JobStatus.CANCELLED
    assert late is None
    assert (await repository.get("job-1")).status == JobStatus.CANCELLED
    assert await repository.cancel("job-1", clock()) is None


@pytest.mark.asyncio
async def test_requeue_checks_expected_retry_count(repository):
    clock = FakeClock()
    await repository.insert(make_job(status=JobStatus.FAILED, error=recoverable_error(), retry_count=1))

    stale = await repository.requeue_for_retry("job-1", expected_retry_count=0, next_retry_at=clock(), now=clock())
    fresh = await repository.requeue_for_retry("job-1", expected_retry_count=1, next_retry_at=clock(), now=clock())

    assert stale is None
    assert fresh.retry_count == 2
    assert fresh.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_reset_stalled_keeps_retry_budget(repository):
    clock = FakeClock()
    started = clock() - timedelta(minutes=10)
    await repository.insert(make_job(status=JobStatus.PROCESSING, started_at=started, claim_token="t", progress=50, retry_count=1))

    stalled = await repository.find_stalled(clock() - timedelta(minutes=5))
    reset = await repository.reset_stalled("job-1", clock() - timedelta(minutes=5), clock())

    assert [j.job_id for j in stalled] == ["job-1"]
    assert reset.status == JobStatus.PENDING
    assert reset.progress == 0
    assert reset.started_at is None
    assert reset.retry_count == 1
    assert reset.recovery_count == 1


@pytest.mark.asyncio
async def test_statistics_queries(repository):
    clock = FakeClock()
    fatal = ProcessingError(code="FILE_ENCRYPTED", message="locked", recoverable=False)
    await repository.insert(make_job("a", status=JobStatus.COMPLETED, completed_at=clock(), actual_duration=2.0))
    await repository.insert(make_job("b", status=JobStatus.COMPLETED, completed_at=clock() - timedelta(days=2), actual_duration=4.0))
    await repository.insert(make_job("c", status=JobStatus.FAILED, error=fatal))
    await repository.insert(make_job("d", status=JobStatus.FAILED, error=recoverable_error()))
    await repository.insert(make_job("e", format=None))

    assert await repository.count_by("status") == {"COMPLETED": 2, "FAILED": 2, "PENDING": 1}
    assert (await repository.count_by("format"))["unknown"] == 1
    assert await repository.count_completed_since(clock() - timedelta(hours=1)) == 1
    assert await repository.average_duration_seconds() == 3.0
    assert await repository.oldest_pending_created_at() is not None
    summary = await repository.error_summary()
    assert summary == {
        "by_code": {"FILE_ENCRYPTED": 1, "PDF_PROCESSING_ERROR": 1},
        "recoverable": 1,
        "non_recoverable": 1,
    }
    with pytest.raises(ValueError):
        await repository.count_by("file_name")


@pytest.mark.asyncio
async def test_delete_terminal_before_spares_retryable_failures(repository):
    clock = FakeClock()
    old = clock() - timedelta(days=30)
    fatal = ProcessingError(code="FILE_ENCRYPTED", message="locked", recoverable=False)
    await repository.insert(make_job("done", status=JobStatus.COMPLETED, completed_at=old))
    await repository.insert(make_job("dead", status=JobStatus.FAILED, error=fatal, completed_at=old))
    await repository.insert(make_job("retryable", status=JobStatus.FAILED, error=recoverable_error(), completed_at=old))
    await repository.insert(make_job("recent", status=JobStatus.COMPLETED, completed_at=clock()))

    removed = await repository.delete_terminal_before(
        completed_before=clock() - timedelta(days=1),
        failed_before=clock() - timedelta(days=7),
    )

    assert sorted(removed) == ["dead", "done"]
    assert await repository.get("retryable") is not None
    assert await repository.get("recent") is not None


@pytest.mark.asyncio
async def test_returned_jobs_are_copies(repository):
    await repository.insert(make_job())
    job = await repository.get("job-1")
    job.progress = 99

    assert (await repository.get("job-1")).progress == 0
