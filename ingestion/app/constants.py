"""Ingestion-level constants shared across modules."""
from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: dict[JobPriority, int] = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 2,
    JobPriority.HIGH: 3,
}


class FileFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    DOC = "doc"
    TXT = "txt"
    RTF = "rtf"


class ProcessingStage(str, Enum):
    VALIDATING = "validating"
    READING = "reading"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    FINALIZING = "finalizing"
    COMPLETED = "completed"


STAGE_SEQUENCE: tuple[ProcessingStage, ...] = (
    ProcessingStage.VALIDATING,
    ProcessingStage.READING,
    ProcessingStage.PARSING,
    ProcessingStage.EXTRACTING,
    ProcessingStage.FINALIZING,
    ProcessingStage.COMPLETED,
)


class EventType(str, Enum):
    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ErrorCode:
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FILE_ENCRYPTED = "FILE_ENCRYPTED"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    NO_PROCESSOR = "NO_PROCESSOR"
    PDF_PROCESSING_ERROR = "PDF_PROCESSING_ERROR"
    DOCX_PROCESSING_ERROR = "DOCX_PROCESSING_ERROR"
    TEXT_PROCESSING_ERROR = "TEXT_PROCESSING_ERROR"
    PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"
    INSUFFICIENT_CONTENT = "INSUFFICIENT_CONTENT"
    FALLBACK_EXTRACTION_ERROR = "FALLBACK_EXTRACTION_ERROR"
    OCR_UNAVAILABLE = "OCR_UNAVAILABLE"
    OCR_ERROR = "OCR_ERROR"
    DOCUMENT_MISSING = "DOCUMENT_MISSING"
    STALLED_RECOVERY_EXHAUSTED = "STALLED_RECOVERY_EXHAUSTED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


MIME_TYPES: dict[FileFormat, str] = {
    FileFormat.PDF: "application/pdf",
    FileFormat.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    FileFormat.DOC: "application/msword",
    FileFormat.TXT: "text/plain",
    FileFormat.RTF: "application/rtf",
}

# Health thresholds
DEGRADED_SUCCESS_RATE = 90.0
UNHEALTHY_SUCCESS_RATE = 70.0
UNHEALTHY_STALLED_JOBS = 5
MAX_PENDING_AGE_SECONDS = 10 * 60
MAX_PENDING_BACKLOG = 100
