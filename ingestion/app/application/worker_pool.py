from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from ingestion.app.application.pipeline import IngestionPipeline
from ingestion.app.core import SERVICE_NAME


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class WorkerPool:
    """Runs N worker loops that claim and process jobs until stopped.

    A worker that finds nothing claimable sleeps for the poll interval. On stop
    each worker finishes its current job before exiting.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        *,
        concurrency: int,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._pipeline = pipeline
        self._concurrency = concurrency
        self._poll_interval = poll_interval_seconds
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.processed = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"ingestion-worker-{index}")
            for index in range(self._concurrency)
        ]
        _log("worker_pool_started", concurrency=self._concurrency)

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        _log("worker_pool_stopped", processed=self.processed)

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                job_id = await self._pipeline.process_next()
            except Exception as exc:
                logger.exception("worker {} iteration failed: {}", index, exc)
                job_id = None
            if job_id is not None:
                self.processed += 1
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), self._poll_interval)
            except asyncio.TimeoutError:
                pass
