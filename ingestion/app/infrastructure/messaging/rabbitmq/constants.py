from enum import Enum

from ingestion.app.constants import EventType


class PublisherState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    CONFIRM_ENABLED = "CONFIRM_ENABLED"
    TOPOLOGY_DECLARED = "TOPOLOGY_DECLARED"
    READY = "READY"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


# Bound on the events queue so every lifecycle event reaches it.
ALL_JOB_EVENTS = "job.#"


def routing_key_for(event_type: EventType) -> str:
    """job_completed -> job.completed"""
    return event_type.value.replace("_", ".", 1)
