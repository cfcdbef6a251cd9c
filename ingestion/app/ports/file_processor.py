"""Port: format processor contract. Implementations live in domain/processors."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from ingestion.app.constants import FileFormat
from ingestion.app.domain.models import FileMetadata, FileValidationResult, ProcessingResult
from ingestion.app.schemas.options import ProcessingOptions


@runtime_checkable
class FileProcessor(Protocol):
    """Turns the bytes of one document format into text and metadata.

    `process` never raises: parser failures come back as a failed
    `ProcessingResult` carrying a classified `ProcessingError`. Calls are
    blocking and are run in a worker thread by the pipeline.
    """

    @property
    def name(self) -> str: ...

    @property
    def supported_formats(self) -> frozenset[FileFormat]: ...

    def can_process(self, content: bytes, fmt: FileFormat) -> bool: ...

    def validate(self, content: bytes) -> FileValidationResult: ...

    def process(self, content: bytes, options: ProcessingOptions) -> ProcessingResult: ...

    def extract_metadata(self, content: bytes) -> FileMetadata:
        """Metadata only; raises DocumentProcessingError on failure."""
        ...
