"""Job lifecycle state machine.

  PENDING    -> PROCESSING  (claim, exclusive)
  PROCESSING -> COMPLETED   (processor or fallback produced an acceptable result)
  PROCESSING -> FAILED      (attempt exhausted)
  FAILED     -> PENDING     (retry scheduled; retry_count increments)
  PENDING    -> CANCELLED
  PROCESSING -> CANCELLED
  PROCESSING -> PENDING     (stalled-job recovery only)

COMPLETED and CANCELLED have no outgoing edges.
"""
from __future__ import annotations

from ingestion.app.constants import JobStatus
from ingestion.app.domain.exceptions import InvalidTransitionError

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.PENDING}
    ),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: JobStatus, target: JobStatus, *, job_id: str | None = None) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target, job_id)


def source_states(target: JobStatus) -> list[JobStatus]:
    """States from which `target` is reachable; used to build conditional updates."""
    return [state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets]
