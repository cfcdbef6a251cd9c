"""Event publisher factory: selects implementation from config."""
from __future__ import annotations

from ingestion.app.config.settings import Settings
from ingestion.app.infrastructure.messaging.inmemory.in_memory_event_publisher import InMemoryEventPublisher
from ingestion.app.infrastructure.messaging.rabbitmq.rabbitmq_event_publisher import RabbitMQEventPublisher
from ingestion.app.ports.event_publisher import EventPublisher


def create_event_publisher(settings: Settings) -> EventPublisher:
    backend = settings.event_publisher_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQEventPublisher(settings)

    if backend == "inmemory":
        return InMemoryEventPublisher(max_length=settings.queue_max_length)

    raise ValueError(f"Unsupported event publisher backend: {backend}")
