"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ingestion.app.constants import (
    EventType,
    FileFormat,
    JobPriority,
    JobStatus,
)


@dataclass(frozen=True)
class ProcessingError:
    """Structured failure record attached to a job or a processing result.

    `recoverable` describes this failure class (worth a fallback or retry),
    not the job's overall fate.
    """

    code: str
    message: str
    recoverable: bool
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": bool(self.recoverable),
            "details": dict(self.details),
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ProcessingError":
        return ProcessingError(
            code=str(payload.get("code", "")),
            message=str(payload.get("message", "")),
            recoverable=bool(payload.get("recoverable", False)),
            details=dict(payload.get("details") or {}),
        )


@dataclass
class FileMetadata:
    """Structural metadata a processor could read from the document."""

    title: str | None = None
    author: str | None = None
    subject: str | None = None
    creator: str | None = None
    producer: str | None = None
    creation_date: datetime | None = None
    modification_date: datetime | None = None
    page_count: int | None = None
    word_count: int = 0
    character_count: int = 0
    language: str | None = None
    keywords: list[str] = field(default_factory=list)
    custom_properties: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def for_text(text: str, **kwargs: Any) -> "FileMetadata":
        return FileMetadata(
            word_count=len(text.split()),
            character_count=len(text),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "word_count": int(self.word_count),
            "character_count": int(self.character_count),
            "keywords": list(self.keywords),
            "custom_properties": dict(self.custom_properties),
        }
        for name in ("title", "author", "subject", "creator", "producer", "language", "page_count"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if self.creation_date is not None:
            payload["creation_date"] = self.creation_date
        if self.modification_date is not None:
            payload["modification_date"] = self.modification_date
        return payload

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "FileMetadata":
        return FileMetadata(
            title=payload.get("title"),
            author=payload.get("author"),
            subject=payload.get("subject"),
            creator=payload.get("creator"),
            producer=payload.get("producer"),
            creation_date=payload.get("creation_date"),
            modification_date=payload.get("modification_date"),
            page_count=payload.get("page_count"),
            word_count=int(payload.get("word_count", 0)),
            character_count=int(payload.get("character_count", 0)),
            language=payload.get("language"),
            keywords=list(payload.get("keywords") or []),
            custom_properties=dict(payload.get("custom_properties") or {}),
        )


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome of one processor or fallback strategy invocation (value object)."""

    success: bool
    source: str
    text: str = ""
    metadata: FileMetadata | None = None
    error: ProcessingError | None = None
    duration_seconds: float = 0.0
    warnings: tuple[str, ...] = ()

    @property
    def text_length(self) -> int:
        return len(self.text.strip())

    @staticmethod
    def succeeded(
        source: str,
        text: str,
        metadata: FileMetadata | None = None,
        *,
        duration_seconds: float = 0.0,
        warnings: tuple[str, ...] = (),
    ) -> "ProcessingResult":
        return ProcessingResult(
            success=True,
            source=source,
            text=text,
            metadata=metadata if metadata is not None else FileMetadata.for_text(text),
            duration_seconds=duration_seconds,
            warnings=warnings,
        )

    @staticmethod
    def failed(
        source: str,
        error: ProcessingError,
        *,
        duration_seconds: float = 0.0,
    ) -> "ProcessingResult":
        return ProcessingResult(
            success=False,
            source=source,
            error=error,
            duration_seconds=duration_seconds,
        )


@dataclass(frozen=True)
class FileValidationResult:
    """Validator verdict. Transient: produced fresh per call, never persisted."""

    is_valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    size: int
    format: FileFormat | None
    mime_type: str
    encoding: str | None = None
    signature_format: FileFormat | None = None
    encrypted: bool = False


@dataclass
class ProcessingJob:
    """Durable record of one file's passage through the pipeline."""

    job_id: str
    file_id: str
    file_name: str
    file_size: int
    created_at: datetime
    declared_format: str | None = None
    format: FileFormat | None = None
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    priority: JobPriority = JobPriority.NORMAL
    options: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    recovery_count: int = 0
    last_retry_at: datetime | None = None
    next_retry_at: datetime | None = None
    extracted_text: str | None = None
    metadata: dict[str, Any] | None = None
    error: ProcessingError | None = None
    fallback_source: str | None = None
    warnings: list[str] = field(default_factory=list)
    claim_token: str | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: float | None = None
    actual_duration: float | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.progress <= 100:
            raise ValueError("progress must be within 0..100")
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")

    @property
    def can_retry(self) -> bool:
        return (
            self.status == JobStatus.FAILED
            and self.error is not None
            and self.error.recoverable
            and self.retry_count < self.max_retries
        )

    @property
    def is_terminal(self) -> bool:
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        return self.status == JobStatus.FAILED and not self.can_retry

    def to_document(self) -> dict[str, Any]:
        """Serialisable dict for persistence. Transport-agnostic (used by repository adapters)."""
        return {
            "_id": self.job_id,
            "file_id": self.file_id,
            "file_name": self.file_name,
            "file_size": int(self.file_size),
            "declared_format": self.declared_format,
            "format": self.format.value if self.format else None,
            "status": self.status.value,
            "progress": int(self.progress),
            "priority": self.priority.value,
            "priority_rank": self.priority.rank,
            "options": dict(self.options),
            "retry_count": int(self.retry_count),
            "max_retries": int(self.max_retries),
            "recovery_count": int(self.recovery_count),
            "last_retry_at": self.last_retry_at,
            "next_retry_at": self.next_retry_at,
            "extracted_text": self.extracted_text,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
            "error": self.error.to_dict() if self.error else None,
            "fallback_source": self.fallback_source,
            "warnings": list(self.warnings),
            "claim_token": self.claim_token,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
        }

    @staticmethod
    def from_document(doc: dict[str, Any]) -> "ProcessingJob":
        error = doc.get("error")
        fmt = doc.get("format")
        return ProcessingJob(
            job_id=str(doc["_id"]),
            file_id=str(doc.get("file_id", doc["_id"])),
            file_name=str(doc.get("file_name", "")),
            file_size=int(doc.get("file_size", 0)),
            declared_format=doc.get("declared_format"),
            format=FileFormat(fmt) if fmt else None,
            status=JobStatus(doc.get("status", JobStatus.PENDING.value)),
            progress=int(doc.get("progress", 0)),
            priority=JobPriority(doc.get("priority", JobPriority.NORMAL.value)),
            options=dict(doc.get("options") or {}),
            retry_count=int(doc.get("retry_count", 0)),
            max_retries=int(doc.get("max_retries", 0)),
            recovery_count=int(doc.get("recovery_count", 0)),
            last_retry_at=doc.get("last_retry_at"),
            next_retry_at=doc.get("next_retry_at"),
            extracted_text=doc.get("extracted_text"),
            metadata=doc.get("metadata"),
            error=ProcessingError.from_dict(error) if error else None,
            fallback_source=doc.get("fallback_source"),
            warnings=list(doc.get("warnings") or []),
            claim_token=doc.get("claim_token"),
            created_at=doc["created_at"],
            updated_at=doc.get("updated_at"),
            started_at=doc.get("started_at"),
            completed_at=doc.get("completed_at"),
            estimated_duration=doc.get("estimated_duration"),
            actual_duration=doc.get("actual_duration"),
        )


@dataclass(frozen=True)
class ProcessingEvent:
    """Lifecycle event handed to the outbound event channel."""

    type: EventType
    job_id: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }
