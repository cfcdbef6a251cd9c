"""Shared processor behaviour: timing, signature checks and error classification."""
from __future__ import annotations

import time
from typing import Any

from loguru import logger

from ingestion.app.constants import MIME_TYPES, ErrorCode, FileFormat
from ingestion.app.core import SERVICE_NAME
from ingestion.app.domain.exceptions import DocumentProcessingError
from ingestion.app.domain.models import (
    FileMetadata,
    FileValidationResult,
    ProcessingError,
    ProcessingResult,
)
from ingestion.app.domain.validator import FileValidator
from ingestion.app.schemas.options import ProcessingOptions


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class EncryptedDocumentError(Exception):
    """Raised by a parser when the document needs a password."""


class BaseFileProcessor:
    """Template for format processors.

    Subclasses set `name`, `formats`, `signature` and `error_code` and implement
    `_extract` and `_read_metadata`. `process` times the call and turns any
    parser exception into a failed result.
    """

    name: str = "BaseFileProcessor"
    formats: frozenset[FileFormat] = frozenset()
    signature: bytes | None = None
    error_code: str = ErrorCode.UNEXPECTED_ERROR

    def __init__(self, max_file_size_bytes: int = 10 * 1024 * 1024) -> None:
        self._validator = FileValidator(max_file_size_bytes, self.formats)

    @property
    def supported_formats(self) -> frozenset[FileFormat]:
        return self.formats

    def can_process(self, content: bytes, fmt: FileFormat) -> bool:
        if fmt not in self.formats:
            return False
        if self.signature is None:
            return True
        return content.startswith(self.signature)

    def validate(self, content: bytes) -> FileValidationResult:
        """Validate the bytes as this processor's own format."""
        fmt = sorted(self.formats, key=lambda f: f.value)[0]
        return self._validator.validate(content, declared_mime=MIME_TYPES[fmt])

    def process(self, content: bytes, options: ProcessingOptions) -> ProcessingResult:
        started = time.perf_counter()
        try:
            text, metadata, warnings = self._extract(content, options)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            error = self.classify_error(exc)
            logger.warning("{} failed: {}", self.name, exc)
            return ProcessingResult.failed(self.name, error, duration_seconds=elapsed)

        elapsed = time.perf_counter() - started
        if not options.extract_text:
            text = ""
        if not options.extract_metadata:
            metadata = FileMetadata.for_text(text)
        _log(
            "processor_completed",
            processor=self.name,
            text_length=len(text),
            page_count=metadata.page_count,
            duration_seconds=round(elapsed, 4),
        )
        return ProcessingResult.succeeded(
            self.name,
            text,
            metadata,
            duration_seconds=elapsed,
            warnings=tuple(warnings),
        )

    def extract_metadata(self, content: bytes) -> FileMetadata:
        try:
            return self._read_metadata(content)
        except Exception as exc:
            raise DocumentProcessingError(self.classify_error(exc)) from exc

    def classify_error(self, exc: Exception) -> ProcessingError:
        if isinstance(exc, EncryptedDocumentError):
            return ProcessingError(
                code=ErrorCode.FILE_ENCRYPTED,
                message=str(exc) or "Document is password-protected",
                recoverable=False,
                details={"processor": self.name},
            )
        return ProcessingError(
            code=self.error_code,
            message=str(exc) or type(exc).__name__,
            recoverable=True,
            details={"processor": self.name, "exception": type(exc).__name__},
        )

    def _extract(
        self, content: bytes, options: ProcessingOptions
    ) -> tuple[str, FileMetadata, list[str]]:
        raise NotImplementedError

    def _read_metadata(self, content: bytes) -> FileMetadata:
        raise NotImplementedError
