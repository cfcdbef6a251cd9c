"""Ingestion composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from ingestion.app.application.job_monitor import JobMonitor
from ingestion.app.application.pipeline import IngestionPipeline
from ingestion.app.application.retry_scheduler import RetryScheduler
from ingestion.app.application.worker_pool import WorkerPool
from ingestion.app.config.settings import Settings
from ingestion.app.core import SERVICE_NAME
from ingestion.app.core.backoff import RetryPolicy
from ingestion.app.domain.fallbacks import FallbackChain, default_strategies
from ingestion.app.domain.processors.registry import default_registry
from ingestion.app.domain.progress import ProgressTracker
from ingestion.app.domain.validator import FileValidator
from ingestion.app.infrastructure.messaging.factory import create_event_publisher
from ingestion.app.infrastructure.ocr.tesseract_ocr import TesseractOcrEngine
from ingestion.app.infrastructure.persistence.factory import create_persistence
from ingestion.app.ports.document_store import DocumentStore
from ingestion.app.ports.event_publisher import EventPublisher
from ingestion.app.ports.job_repository import JobRepository


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class IngestionDependencies:
    """Holds wired ingestion dependencies and their lifecycle."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._repository: JobRepository | None = None
        self._documents: DocumentStore | None = None
        self._publisher: EventPublisher | None = None
        self._pipeline: IngestionPipeline | None = None
        self._monitor: JobMonitor | None = None
        self._connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def repository(self) -> JobRepository:
        if self._repository is None:
            raise RuntimeError("repository is not initialized")
        return self._repository

    @property
    def documents(self) -> DocumentStore:
        if self._documents is None:
            raise RuntimeError("documents is not initialized")
        return self._documents

    @property
    def publisher(self) -> EventPublisher:
        if self._publisher is None:
            raise RuntimeError("publisher is not initialized")
        return self._publisher

    @property
    def pipeline(self) -> IngestionPipeline:
        if self._pipeline is None:
            raise RuntimeError("pipeline is not initialized")
        return self._pipeline

    @property
    def monitor(self) -> JobMonitor:
        if self._monitor is None:
            raise RuntimeError("monitor is not initialized")
        return self._monitor

    def create_worker_pool(self) -> WorkerPool:
        return WorkerPool(
            self.pipeline,
            concurrency=self._settings.max_concurrent_jobs,
            poll_interval_seconds=self._settings.worker_poll_interval_seconds,
        )

    async def connect(self) -> None:
        settings = self._settings
        self._repository, self._documents = await create_persistence(settings)

        self._publisher = create_event_publisher(settings)
        await self._publisher.connect()

        progress = ProgressTracker(retention_seconds=settings.progress_retention_seconds)
        validator = FileValidator(settings.max_file_size_bytes, settings.supported_format_list)
        chain = FallbackChain(
            default_strategies(TesseractOcrEngine(), enable_minimal=settings.enable_minimal_fallback),
            min_text_length=settings.min_text_length,
        )
        policy = RetryPolicy(
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_factor=settings.retry_jitter_factor,
        )
        self._pipeline = IngestionPipeline(
            repository=self.repository,
            documents=self.documents,
            publisher=self.publisher,
            validator=validator,
            registry=default_registry(settings.max_file_size_bytes),
            fallback_chain=chain,
            retry_scheduler=RetryScheduler(self.repository, policy),
            progress=progress,
            default_timeout_seconds=settings.default_timeout_seconds,
            max_retries=settings.max_retries,
            enable_ocr=settings.enable_ocr,
            ocr_languages=settings.ocr_language_list,
        )
        self._monitor = JobMonitor(
            self.repository,
            self.documents,
            stalled_threshold_seconds=settings.stalled_job_threshold_seconds,
            max_stalled_recoveries=settings.max_stalled_recoveries,
            completed_retention_seconds=settings.completed_retention_seconds,
            failed_retention_seconds=settings.failed_retention_seconds,
            health_check_interval_seconds=settings.health_check_interval_seconds,
            progress=progress,
            publisher=self.publisher,
        )
        self._connected = True
        _log(
            "dependencies_connected",
            repository_backend=settings.repository_backend,
            event_publisher_backend=settings.event_publisher_backend,
        )

    async def close(self) -> None:
        if self._publisher is not None:
            try:
                await self._publisher.close()
            except Exception as exc:
                logger.warning("event publisher close failed: {}", exc)
            self._publisher = None

        if self._documents is not None:
            try:
                await self._documents.close()
            except Exception as exc:
                logger.warning("document store close failed: {}", exc)
            self._documents = None

        if self._repository is not None:
            try:
                await self._repository.close()
            except Exception as exc:
                logger.warning("repository close failed: {}", exc)

        self._repository = None
        self._pipeline = None
        self._monitor = None
        self._connected = False


def create_ingestion_dependencies(settings: Settings | None = None) -> IngestionDependencies:
    return IngestionDependencies(settings=settings or Settings())
