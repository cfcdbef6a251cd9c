from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Callable, Iterable, Sequence

from loguru import logger

from ingestion.app.application.retry_scheduler import RetryScheduler
from ingestion.app.constants import ErrorCode, EventType, FileFormat, JobStatus, ProcessingStage
from ingestion.app.core import SERVICE_NAME
from ingestion.app.domain.exceptions import DocumentProcessingError, JobNotFoundError
from ingestion.app.domain.fallbacks import FallbackChain, FallbackContext, FallbackOutcome
from ingestion.app.domain.models import (
    FileMetadata,
    FileValidationResult,
    ProcessingError,
    ProcessingEvent,
    ProcessingJob,
    ProcessingResult,
)
from ingestion.app.domain.processors.registry import ProcessorRegistry
from ingestion.app.domain.progress import ProgressTracker, StageSequencer
from ingestion.app.domain.validator import FileValidator
from ingestion.app.ports.document_store import DocumentStore
from ingestion.app.ports.event_publisher import EventPublisher
from ingestion.app.ports.job_repository import JobRepository
from ingestion.app.schemas.options import ProcessingOptions
from ingestion.app.schemas.status import JobStatusResponse


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _OwnershipLost(Exception):
    """The job left PROCESSING under this worker (cancelled or recovered elsewhere)."""


@dataclass
class _AttemptOutcome:
    result: ProcessingResult | None = None
    error: ProcessingError | None = None
    fallback_source: str | None = None
    warnings: list[str] = field(default_factory=list)


class IngestionPipeline:
    """
    Orchestrates a job: validate -> select processor -> process -> fallback chain
    -> persist result or failure -> schedule retry.

    The pipeline is the only place processing results become state transitions.
    Blocking work (validation, parsing, OCR) runs in threads under per-job
    timeouts. Every write made while a job runs is conditional on the claim
    token, so a job cancelled mid-flight keeps its CANCELLED status.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        documents: DocumentStore,
        publisher: EventPublisher,
        validator: FileValidator,
        registry: ProcessorRegistry,
        fallback_chain: FallbackChain,
        retry_scheduler: RetryScheduler,
        progress: ProgressTracker,
        default_timeout_seconds: float = 30.0,
        max_retries: int = 3,
        enable_ocr: bool = False,
        ocr_languages: Sequence[str] = ("eng",),
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._documents = documents
        self._publisher = publisher
        self._validator = validator
        self._registry = registry
        self._chain = fallback_chain
        self._retry_scheduler = retry_scheduler
        self._progress = progress
        self._default_timeout = float(default_timeout_seconds)
        self._max_retries = int(max_retries)
        self._enable_ocr = enable_ocr
        self._ocr_languages = tuple(ocr_languages) or ("eng",)
        self._now = now

    @property
    def events(self) -> EventPublisher:
        return self._publisher

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    def supported_formats(self) -> list[FileFormat]:
        registered = self._registry.supported_formats()
        return [fmt for fmt in registered if fmt in self._validator.supported_formats]

    # Submission and status

    async def submit(
        self,
        content: bytes,
        file_name: str,
        *,
        file_id: str | None = None,
        declared_mime: str | None = None,
        options: ProcessingOptions | dict[str, Any] | None = None,
    ) -> str:
        opts = options if isinstance(options, ProcessingOptions) else ProcessingOptions.model_validate(options or {})
        validation = await asyncio.to_thread(self._validator.validate, content, file_name, declared_mime)

        now = self._now()
        job_id = uuid.uuid4().hex
        estimated = None
        if validation.format is not None:
            estimated = await self._repository.average_duration_seconds(validation.format)

        rejection = None if validation.is_valid else self._rejection_error(validation)
        job = ProcessingJob(
            job_id=job_id,
            file_id=file_id or job_id,
            file_name=file_name,
            file_size=len(content),
            created_at=now,
            declared_format=declared_mime or (PurePath(file_name).suffix.lstrip(".").lower() or None),
            format=validation.format,
            priority=opts.priority,
            options=opts.model_dump(mode="json"),
            max_retries=opts.retry_attempts if opts.retry_attempts is not None else self._max_retries,
            warnings=list(validation.warnings),
            updated_at=now,
            estimated_duration=estimated,
        )
        if rejection is not None:
            # Never claimable: the job is stored already FAILED.
            job.status = JobStatus.FAILED
            job.error = rejection
            job.completed_at = now
            job.actual_duration = 0.0
        else:
            await self._documents.put(job_id, content)
        await self._repository.insert(job)
        _log(
            "job_created",
            job_id=job_id,
            file_name=file_name,
            file_size=len(content),
            format=validation.format.value if validation.format else None,
            priority=opts.priority.value,
        )
        await self._emit(
            EventType.JOB_CREATED,
            job_id,
            {
                "file_id": job.file_id,
                "file_name": file_name,
                "file_size": len(content),
                "format": job.format.value if job.format else None,
                "priority": opts.priority.value,
            },
        )

        if rejection is not None:
            _log("job_rejected", job_id=job_id, error_code=rejection.code, errors=list(validation.errors))
            await self._emit(EventType.JOB_FAILED, job_id, {"error": rejection.to_dict(), "retry_scheduled": False})
        return job_id

    async def submit_batch(
        self,
        files: Iterable[tuple[bytes, str]],
        options: ProcessingOptions | dict[str, Any] | None = None,
    ) -> list[str]:
        return [await self.submit(content, name, options=options) for content, name in files]

    def _rejection_error(self, validation: FileValidationResult) -> ProcessingError:
        code = ErrorCode.VALIDATION_FAILED
        if validation.encrypted and len(validation.errors) == 1:
            code = ErrorCode.FILE_ENCRYPTED
        return ProcessingError(
            code=code,
            message="; ".join(validation.errors),
            recoverable=False,
            details={"errors": list(validation.errors), "warnings": list(validation.warnings)},
        )

    async def get_status(self, job_id: str) -> JobStatusResponse:
        job = await self._repository.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatusResponse.from_job(job, self._progress.get_progress(job_id))

    async def cancel(self, job_id: str) -> bool:
        cancelled = await self._repository.cancel(job_id, self._now())
        if cancelled is None:
            if await self._repository.get(job_id) is None:
                raise JobNotFoundError(job_id)
            _log("job_cancel_rejected", job_id=job_id)
            return False
        self._progress.schedule_clear(job_id)
        _log("job_cancelled", job_id=job_id)
        await self._emit(EventType.JOB_CANCELLED, job_id, {"previous_progress": cancelled.progress})
        return True

    async def extract_metadata(self, content: bytes, file_name: str) -> FileMetadata:
        """Metadata only, outside the job lifecycle. Raises DocumentProcessingError."""
        validation = await asyncio.to_thread(self._validator.validate, content, file_name, None)
        if not validation.is_valid:
            raise DocumentProcessingError(
                ProcessingError(
                    code=ErrorCode.VALIDATION_FAILED,
                    message="; ".join(validation.errors),
                    recoverable=False,
                )
            )
        processor = self._registry.select(content, validation.format, validation.signature_format)
        if processor is None:
            raise DocumentProcessingError(self._no_processor_error(validation.format))
        return await asyncio.to_thread(processor.extract_metadata, content)

    # Execution

    async def process_next(self) -> str | None:
        job = await self._repository.claim_next(self._now())
        if job is None:
            return None
        await self._execute(job)
        return job.job_id

    async def run_job(self, job_id: str) -> bool:
        """Claim one specific PENDING job and run it; False if it was not claimable."""
        job = await self._repository.claim(job_id, self._now())
        if job is None:
            return False
        await self._execute(job)
        return True

    async def _execute(self, job: ProcessingJob) -> None:
        started = time.perf_counter()
        attempt = job.retry_count + 1
        sequencer = self._progress.stage_sequencer(job.job_id)
        _log("job_started", job_id=job.job_id, attempt=attempt, file_name=job.file_name)
        await self._emit(
            EventType.JOB_STARTED,
            job.job_id,
            {"attempt": attempt, "file_name": job.file_name},
        )

        try:
            outcome = await self._attempt(job, sequencer)
        except _OwnershipLost:
            _log("job_ownership_lost", job_id=job.job_id, attempt=attempt)
            current = await self._repository.get(job.job_id)
            if current is None or current.is_terminal:
                self._progress.schedule_clear(job.job_id)
            else:
                self._progress.clear_progress(job.job_id, keep_callbacks=True)
            return
        except Exception as exc:
            logger.exception("job {} crashed: {}", job.job_id, exc)
            outcome = _AttemptOutcome(
                error=ProcessingError(
                    code=ErrorCode.UNEXPECTED_ERROR,
                    message=str(exc) or type(exc).__name__,
                    recoverable=True,
                    details={"exception": type(exc).__name__},
                )
            )

        duration = time.perf_counter() - started
        warnings = list(dict.fromkeys(job.warnings + outcome.warnings))
        retry_scheduled = False
        try:
            if outcome.result is not None:
                await self._finish_completed(job, sequencer, outcome.result, outcome, warnings, duration)
            else:
                retry_scheduled = await self._finish_failed(job, outcome.error, warnings, duration)
        finally:
            if retry_scheduled:
                # Subscribers stay registered for the next attempt.
                self._progress.clear_progress(job.job_id, keep_callbacks=True)
            else:
                self._progress.schedule_clear(job.job_id)

    async def _attempt(self, job: ProcessingJob, sequencer: StageSequencer) -> _AttemptOutcome:
        options = ProcessingOptions.model_validate(job.options)
        timeout = options.timeout_seconds or self._default_timeout

        await self._report(job, sequencer, ProcessingStage.VALIDATING)
        content = await self._documents.get(job.job_id)
        if content is None:
            return _AttemptOutcome(
                error=ProcessingError(
                    code=ErrorCode.DOCUMENT_MISSING,
                    message="Stored document bytes not found",
                    recoverable=False,
                )
            )

        await self._report(
            job, sequencer, ProcessingStage.READING, bytes_processed=len(content), total_bytes=job.file_size
        )
        declared_mime = job.declared_format if job.declared_format and "/" in job.declared_format else None
        validation = await asyncio.to_thread(self._validator.validate, content, job.file_name, declared_mime)
        if not validation.is_valid:
            return _AttemptOutcome(
                error=ProcessingError(
                    code=ErrorCode.FILE_ENCRYPTED if validation.encrypted else ErrorCode.VALIDATION_FAILED,
                    message="; ".join(validation.errors),
                    recoverable=False,
                    details={"errors": list(validation.errors)},
                ),
                warnings=list(validation.warnings),
            )

        processor = self._registry.select(content, validation.format, validation.signature_format)
        if processor is None:
            return _AttemptOutcome(error=self._no_processor_error(validation.format))

        await self._report(job, sequencer, ProcessingStage.PARSING)
        try:
            primary = await self._run_blocking(processor.process, content, options, timeout=timeout)
        except asyncio.TimeoutError:
            primary = ProcessingResult.failed(
                processor.name,
                ProcessingError(
                    code=ErrorCode.PROCESSING_TIMEOUT,
                    message=f"Processing exceeded {timeout} seconds",
                    recoverable=True,
                    details={"timeout_seconds": timeout},
                ),
                duration_seconds=timeout,
            )
        _log(
            "primary_processed",
            job_id=job.job_id,
            processor=processor.name,
            success=primary.success,
            text_length=primary.text_length,
            error_code=primary.error.code if primary.error else None,
        )

        await self._report(job, sequencer, ProcessingStage.EXTRACTING)
        final_attempt = job.retry_count >= job.max_retries or (
            primary.error is not None and not primary.error.recoverable
        )
        context = FallbackContext(
            file_name=job.file_name,
            file_size=job.file_size,
            fmt=validation.format,
            final_attempt=final_attempt,
            primary=processor,
            ocr_enabled=self._enable_ocr if options.enable_ocr is None else options.enable_ocr,
            ocr_languages=self._ocr_languages,
        )
        if self._chain.is_acceptable(primary, options):
            outcome = FallbackOutcome(result=primary, acceptable=True)
        else:
            try:
                outcome = await self._run_blocking(
                    self._chain.run, content, options, primary, context, timeout=timeout * 2
                )
            except asyncio.TimeoutError:
                logger.warning("fallback chain timed out for job {}", job.job_id)
                outcome = FallbackOutcome(result=primary, acceptable=False)

        await self._report(job, sequencer, ProcessingStage.FINALIZING)
        warnings = list(validation.warnings) + list(outcome.result.warnings)
        if outcome.acceptable or (outcome.result.success and (primary.success or final_attempt)):
            if not outcome.acceptable:
                warnings.append(
                    f"Extracted text is shorter than the minimum of {self._chain.min_text_length} characters"
                )
            return _AttemptOutcome(
                result=outcome.result,
                fallback_source=outcome.fallback_source,
                warnings=warnings,
            )

        error = primary.error or outcome.trigger
        if outcome.attempts and error is not None:
            error = ProcessingError(
                code=error.code,
                message=error.message,
                recoverable=error.recoverable,
                details={**error.details, "fallback_attempts": outcome.attempts},
            )
        return _AttemptOutcome(error=error, warnings=warnings)

    async def _finish_completed(
        self,
        job: ProcessingJob,
        sequencer: StageSequencer,
        result: ProcessingResult,
        outcome: _AttemptOutcome,
        warnings: list[str],
        duration: float,
    ) -> None:
        metadata = result.metadata.to_dict() if result.metadata is not None else None
        completed = await self._repository.complete(
            job.job_id,
            job.claim_token,
            text=result.text,
            metadata=metadata,
            fallback_source=outcome.fallback_source,
            warnings=warnings,
            actual_duration=duration,
            now=self._now(),
        )
        if completed is None:
            _log("job_result_discarded", job_id=job.job_id, reason="not_owned")
            return
        sequencer.complete()
        _log(
            "job_completed",
            job_id=job.job_id,
            text_length=result.text_length,
            fallback_source=outcome.fallback_source,
            duration_seconds=round(duration, 4),
        )
        await self._emit(
            EventType.JOB_COMPLETED,
            job.job_id,
            {
                "text_length": result.text_length,
                "fallback_source": outcome.fallback_source,
                "duration_seconds": duration,
                "warnings": warnings,
            },
        )

    async def _finish_failed(
        self,
        job: ProcessingJob,
        error: ProcessingError | None,
        warnings: list[str],
        duration: float,
    ) -> bool:
        """Record the failure; True when a retry was scheduled."""
        error = error or ProcessingError(
            code=ErrorCode.UNEXPECTED_ERROR, message="Processing failed", recoverable=True
        )
        failed = await self._repository.fail(
            job.job_id,
            job.claim_token,
            error=error,
            warnings=warnings,
            actual_duration=duration,
            now=self._now(),
        )
        if failed is None:
            _log("job_result_discarded", job_id=job.job_id, reason="not_owned")
            return False
        retry_scheduled = await self._retry_scheduler.schedule_retry(job.job_id)
        _log(
            "job_failed",
            job_id=job.job_id,
            error_code=error.code,
            recoverable=error.recoverable,
            retry_count=failed.retry_count,
            retry_scheduled=retry_scheduled,
        )
        await self._emit(
            EventType.JOB_FAILED,
            job.job_id,
            {
                "error": error.to_dict(),
                "retry_count": failed.retry_count,
                "retry_scheduled": retry_scheduled,
            },
        )
        return retry_scheduled

    async def _report(
        self,
        job: ProcessingJob,
        sequencer: StageSequencer,
        stage: ProcessingStage,
        *,
        bytes_processed: int | None = None,
        total_bytes: int | None = None,
    ) -> None:
        percentage = sequencer.percentage_for(stage)
        owned = await self._repository.update_progress(
            job.job_id, job.claim_token, percentage, self._now()
        )
        if not owned:
            raise _OwnershipLost(job.job_id)
        update = sequencer.advance(stage, bytes_processed=bytes_processed, total_bytes=total_bytes)
        await self._emit(
            EventType.JOB_PROGRESS,
            job.job_id,
            {"stage": stage.value, "progress": update.percentage},
        )

    async def _run_blocking(self, func: Callable[..., Any], *args: Any, timeout: float) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)

    def _no_processor_error(self, fmt: FileFormat | None) -> ProcessingError:
        return ProcessingError(
            code=ErrorCode.NO_PROCESSOR,
            message=f"No processor available for format '{fmt.value if fmt else 'unknown'}'",
            recoverable=False,
        )

    async def _emit(self, event_type: EventType, job_id: str, data: dict[str, Any]) -> None:
        event = ProcessingEvent(type=event_type, job_id=job_id, timestamp=self._now(), data=data)
        try:
            await self._publisher.publish(event)
        except Exception as exc:
            logger.warning("event publish failed for job {} ({}): {}", job_id, event_type.value, exc)
