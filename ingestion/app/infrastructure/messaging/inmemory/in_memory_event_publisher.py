"""In-memory event channel for tests and local mode.

Events are appended to `events` and put on an asyncio.Queue that an external
subscriber drains. When the queue is full the oldest event is dropped.
"""
from __future__ import annotations

import asyncio

from ingestion.app.domain.models import ProcessingEvent


class InMemoryEventPublisher:
    def __init__(self, max_length: int = 10_000, keep_history: bool = True) -> None:
        self._queue: asyncio.Queue[ProcessingEvent] = asyncio.Queue(maxsize=max_length)
        self._keep_history = keep_history
        self.events: list[ProcessingEvent] = []

    async def connect(self) -> None:
        return

    @property
    def ready(self) -> bool:
        return True

    async def publish(self, event: ProcessingEvent) -> None:
        if self._keep_history:
            self.events.append(event)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    async def next_event(self, timeout: float | None = None) -> ProcessingEvent:
        return await asyncio.wait_for(self._queue.get(), timeout)

    def drain(self) -> list[ProcessingEvent]:
        drained: list[ProcessingEvent] = []
        while not self._queue.empty():
            drained.append(self._queue.get_nowait())
        return drained

    def events_for(self, job_id: str) -> list[ProcessingEvent]:
        return [e for e in self.events if e.job_id == job_id]

    async def close(self) -> None:
        return
