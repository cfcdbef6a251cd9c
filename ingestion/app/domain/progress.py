"""In-memory progress tracking.

Progress is advisory: updates are kept per job in process memory and fanned out
to registered callbacks. A failing callback is logged and never interrupts the
caller. The job store's `progress` field is the durable approximation.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from ingestion.app.constants import STAGE_SEQUENCE, ProcessingStage
from ingestion.app.core import SERVICE_NAME


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProgressUpdate:
    job_id: str
    stage: ProcessingStage
    percentage: int
    timestamp: datetime
    bytes_processed: int | None = None
    total_bytes: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "stage": self.stage.value,
            "percentage": self.percentage,
            "timestamp": self.timestamp.isoformat(),
            "bytes_processed": self.bytes_processed,
            "total_bytes": self.total_bytes,
            "message": self.message,
        }


ProgressCallback = Callable[[ProgressUpdate], Any]


class ProgressTracker:
    def __init__(
        self,
        retention_seconds: float = 5.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._retention_seconds = retention_seconds
        self._now = now
        self._updates: dict[str, ProgressUpdate] = {}
        self._callbacks: dict[str, list[ProgressCallback]] = {}
        self._pending_clears: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def register(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Add a callback for `job_id`; returns a function that removes it."""
        self._callbacks.setdefault(job_id, []).append(callback)
        return lambda: self.unregister(job_id, callback)

    def unregister(self, job_id: str, callback: ProgressCallback) -> None:
        callbacks = self._callbacks.get(job_id)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            self._callbacks.pop(job_id, None)

    def update_progress(
        self,
        job_id: str,
        stage: ProcessingStage,
        percentage: float,
        *,
        bytes_processed: int | None = None,
        total_bytes: int | None = None,
        message: str | None = None,
    ) -> ProgressUpdate:
        update = ProgressUpdate(
            job_id=job_id,
            stage=stage,
            percentage=max(0, min(100, int(percentage))),
            timestamp=self._now(),
            bytes_processed=bytes_processed,
            total_bytes=total_bytes,
            message=message,
        )
        handle = self._pending_clears.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        self._updates[job_id] = update
        for callback in list(self._callbacks.get(job_id, ())):
            self._invoke(callback, update)
        return update

    def get_progress(self, job_id: str) -> ProgressUpdate | None:
        return self._updates.get(job_id)

    def active_jobs(self) -> list[str]:
        return list(self._updates)

    def clear_progress(self, job_id: str, *, keep_callbacks: bool = False) -> None:
        """Drop the job's last update; callbacks survive when the job will run again."""
        handle = self._pending_clears.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        self._updates.pop(job_id, None)
        if not keep_callbacks:
            self._callbacks.pop(job_id, None)

    def schedule_clear(self, job_id: str, delay: float | None = None) -> None:
        """Clear a finished job's progress after the retention delay."""
        delay = self._retention_seconds if delay is None else delay
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.clear_progress(job_id)
            return
        if delay <= 0:
            self.clear_progress(job_id)
            return
        previous = self._pending_clears.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        self._pending_clears[job_id] = loop.call_later(delay, self.clear_progress, job_id)

    def stage_sequencer(self, job_id: str) -> "StageSequencer":
        return StageSequencer(self, job_id)

    def _invoke(self, callback: ProgressCallback, update: ProgressUpdate) -> None:
        try:
            result = callback(update)
        except Exception as exc:
            logger.warning("progress callback failed for job {}: {}", update.job_id, exc)
            return
        if asyncio.iscoroutine(result):
            try:
                task = asyncio.get_running_loop().create_task(result)
            except RuntimeError:
                result.close()
                logger.warning("progress callback for job {} needs a running loop", update.job_id)
                return
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.bind(service_name=SERVICE_NAME, event="progress_callback_failed").warning(
                "async progress callback failed: {}", exc
            )


class StageSequencer:
    """Spreads 100% evenly across the fixed stage list."""

    def __init__(self, tracker: ProgressTracker, job_id: str) -> None:
        self._tracker = tracker
        self._job_id = job_id
        self.current: ProcessingStage | None = None

    @staticmethod
    def percentage_for(stage: ProcessingStage, stage_percent: float = 0.0) -> int:
        index = STAGE_SEQUENCE.index(stage)
        if index == len(STAGE_SEQUENCE) - 1:
            return 100
        fraction = max(0.0, min(100.0, stage_percent)) / 100
        return math.floor((index + fraction) * 100 / len(STAGE_SEQUENCE))

    def advance(
        self,
        stage: ProcessingStage,
        stage_percent: float = 0.0,
        message: str | None = None,
        *,
        bytes_processed: int | None = None,
        total_bytes: int | None = None,
    ) -> ProgressUpdate:
        self.current = stage
        return self._tracker.update_progress(
            self._job_id,
            stage,
            self.percentage_for(stage, stage_percent),
            bytes_processed=bytes_processed,
            total_bytes=total_bytes,
            message=message,
        )

    def complete(self) -> ProgressUpdate:
        return self.advance(ProcessingStage.COMPLETED)

