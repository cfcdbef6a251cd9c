"""Port: lifecycle event publish contract. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol

from ingestion.app.domain.models import ProcessingEvent


class EventPublisher(Protocol):
    """Best-effort delivery of job lifecycle events.

    Implementations may raise from `publish`; the pipeline logs and drops
    such failures so that a job's outcome never depends on event delivery.
    """

    async def connect(self) -> None: ...
    async def publish(self, event: ProcessingEvent) -> None: ...
    async def close(self) -> None: ...

    @property
    def ready(self) -> bool: ...
