from __future__ import annotations

import pytest

from ingestion.app.constants import JobStatus
from ingestion.app.domain.exceptions import InvalidTransitionError
from ingestion.app.domain.state_machine import can_transition, ensure_transition, source_states
from tests.conftest import make_job, recoverable_error


@pytest.mark.parametrize(
    "current,target",
    [
        (JobStatus.PENDING, JobStatus.PROCESSING),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.PENDING),
        (JobStatus.PENDING, JobStatus.CANCELLED),
        (JobStatus.PROCESSING, JobStatus.CANCELLED),
        (JobStatus.PROCESSING, JobStatus.PENDING),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target) is True
    ensure_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (JobStatus.COMPLETED, JobStatus.PENDING),
        (JobStatus.COMPLETED, JobStatus.FAILED),
        (JobStatus.CANCELLED, JobStatus.PENDING),
        (JobStatus.FAILED, JobStatus.COMPLETED),
        (JobStatus.FAILED, JobStatus.CANCELLED),
        (JobStatus.PENDING, JobStatus.COMPLETED),
    ],
)
def test_rejected_transitions(current, target):
    assert can_transition(current, target) is False
    with pytest.raises(InvalidTransitionError) as exc_info:
        ensure_transition(current, target, job_id="j1")
    assert "j1" in str(exc_info.value)


def test_source_states_for_cancel():
    assert set(source_states(JobStatus.CANCELLED)) == {JobStatus.PENDING, JobStatus.PROCESSING}


def test_failed_job_is_terminal_only_when_it_cannot_retry():
    retryable = make_job(status=JobStatus.FAILED, error=recoverable_error(), retry_count=1, max_retries=3)
    exhausted = make_job(status=JobStatus.FAILED, error=recoverable_error(), retry_count=3, max_retries=3)

    assert retryable.can_retry is True
    assert retryable.is_terminal is False
    assert exhausted.can_retry is False
    assert exhausted.is_terminal is True


def test_job_rejects_retry_count_above_max():
    with pytest.raises(ValueError):
        make_job(retry_count=4, max_retries=3)


def test_job_document_round_trip_keeps_error_and_priority():
    job = make_job(status=JobStatus.FAILED, error=recoverable_error(), warnings=["w"])
    doc = job.to_document()

    assert doc["_id"] == job.job_id
    assert doc["priority_rank"] == 2
    restored = type(job).from_document(doc)
    assert restored == job
