"""
RabbitMQ event publisher.

Events go to a durable topic exchange with one routing key per event type
(`job.created`, `job.progress`, `job.completed`, ...). A bounded durable queue
is bound to `job.#` so a notification consumer sees the whole lifecycle;
other consumers can bind narrower keys such as `job.failed`.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> CHANNEL_OPEN ->
  CONFIRM_ENABLED -> TOPOLOGY_DECLARED -> READY.
  A failed publish or broker disconnect moves READY -> RECONNECTING and a
  background task repeats the connect sequence. close() -> CLOSING -> CLOSED.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from loguru import logger

from ingestion.app.core import SERVICE_NAME
from ingestion.app.core.backoff import exponential_backoff
from ingestion.app.domain.models import ProcessingEvent
from ingestion.app.infrastructure.messaging.rabbitmq.constants import (
    ALL_JOB_EVENTS,
    PublisherState,
    routing_key_for,
)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def build_event_message(event: ProcessingEvent) -> Message:
    """Persistent JSON message; job id and event type are also headers for consumer-side filtering."""
    return Message(
        json.dumps(event.to_dict(), default=str).encode(),
        delivery_mode=DeliveryMode.PERSISTENT,
        content_type="application/json",
        type=event.type.value,
        timestamp=event.timestamp,
        headers={"job_id": event.job_id, "event_type": event.type.value},
    )


class RabbitMQEventPublisher:
    def __init__(self, settings: Any) -> None:
        self._settings = settings
        self._state = PublisherState.DISCONNECTED
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.Channel | None = None
        self._exchange: aio_pika.Exchange | None = None
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == PublisherState.READY

    async def connect(self) -> None:
        self._state = PublisherState.CONNECTING
        await self._establish(reconnecting=False)

    async def publish(self, event: ProcessingEvent) -> None:
        if self._state != PublisherState.READY:
            _log("publish_rejected", reason="publisher_not_ready", job_id=event.job_id)
            raise RuntimeError("publisher_not_ready")
        routing_key = routing_key_for(event.type)
        start = time.perf_counter()
        async with self._lock:
            if self._exchange is None:
                _log("publish_failed", reason="connection_lost", job_id=event.job_id)
                raise RuntimeError("connection_lost")
            try:
                await self._exchange.publish(
                    build_event_message(event),
                    routing_key=routing_key,
                    timeout=self._settings.publish_timeout_seconds,
                )
            except Exception as exc:
                _log("publish_failed", reason=str(exc), job_id=event.job_id, routing_key=routing_key)
                self._start_reconnect()
                raise
        _log(
            "publish_success",
            job_id=event.job_id,
            routing_key=routing_key,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def close(self) -> None:
        self._closing = True
        self._state = PublisherState.CLOSING
        _log("publisher_shutdown")
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            await self._teardown()
        self._state = PublisherState.CLOSED

    # Connection management

    async def _establish(self, *, reconnecting: bool) -> None:
        """Connect with backoff and declare the topology; raises after the last attempt."""
        attempt = 0
        last_error: Exception | None = None
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            if self._closing:
                return
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay, reconnecting=reconnecting)
            try:
                self._connection = await aio_pika.connect_robust(self._url())
                self._watch_connection()
                self._state = PublisherState.CONNECTED
                await self._declare_topology()
            except aio_pika.exceptions.ChannelNotFoundEntity:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning("rmq connect attempt {} failed: {}", attempt, exc)
                await self._teardown()
                continue
            _log("rmq_ready", attempt=attempt, exchange=self._settings.events_exchange_name)
            return
        self._state = PublisherState.DISCONNECTED
        _log("rmq_connect_failed", attempt=attempt)
        if last_error is not None:
            raise last_error

    async def _declare_topology(self) -> None:
        connection = self._connection
        if connection is None:
            raise RuntimeError("connection_lost")
        self._state = PublisherState.CHANNEL_OPEN
        self._channel = await connection.channel(publisher_confirms=True)
        self._state = PublisherState.CONFIRM_ENABLED
        exchange = await self._channel.declare_exchange(
            self._settings.events_exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        queue = await self._channel.declare_queue(
            self._settings.events_queue_name,
            durable=True,
            arguments={
                "x-max-length": self._settings.queue_max_length,
                "x-overflow": "drop-head",
            },
        )
        await queue.bind(exchange, routing_key=ALL_JOB_EVENTS)
        self._exchange = exchange
        self._state = PublisherState.TOPOLOGY_DECLARED
        self._state = PublisherState.READY

    def _url(self) -> str:
        return (
            f"amqp://{self._settings.broker_user}:{self._settings.broker_password}"
            f"@{self._settings.broker_host}:{self._settings.broker_port}/"
        )

    def _watch_connection(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        conn = getattr(self._connection, "connection", self._connection)
        if callable(getattr(conn, "add_close_callback", None)):
            conn.add_close_callback(self._on_connection_closed)

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing or self._loop is None:
            return
        _log("broker_disconnect_detected")
        self._loop.call_soon_threadsafe(self._start_reconnect)

    def _start_reconnect(self) -> None:
        self._state = PublisherState.RECONNECTING
        self._exchange = None
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        async with self._lock:
            await self._teardown()
        try:
            await self._establish(reconnecting=True)
        except Exception as exc:
            logger.warning("rmq reconnect gave up: {}", exc)

    async def _teardown(self) -> None:
        self._exchange = None
        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception as exc:
                logger.warning("rmq channel close failed: {}", exc)
            self._channel = None
        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception as exc:
                logger.warning("rmq connection close failed: {}", exc)
            self._connection = None
