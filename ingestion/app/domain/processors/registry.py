"""Processor registry: picks the processor for a file's bytes and format."""
from __future__ import annotations

from typing import Iterable

from ingestion.app.constants import FileFormat
from ingestion.app.domain.processors.docx_processor import DocxFileProcessor
from ingestion.app.domain.processors.pdf_processor import PdfFileProcessor
from ingestion.app.domain.processors.text_processor import TextFileProcessor
from ingestion.app.ports.file_processor import FileProcessor


class ProcessorRegistry:
    def __init__(self, processors: Iterable[FileProcessor] = ()) -> None:
        self._processors: list[FileProcessor] = list(processors)

    def register(self, processor: FileProcessor) -> None:
        self._processors.append(processor)

    @property
    def processors(self) -> list[FileProcessor]:
        return list(self._processors)

    def supported_formats(self) -> list[FileFormat]:
        formats: list[FileFormat] = []
        for processor in self._processors:
            for fmt in sorted(processor.supported_formats, key=lambda f: f.value):
                if fmt not in formats:
                    formats.append(fmt)
        return formats

    def select(
        self,
        content: bytes,
        fmt: FileFormat | None,
        signature_format: FileFormat | None = None,
    ) -> FileProcessor | None:
        """First registered processor accepting the bytes.

        The format read from the binary signature is tried before the declared
        one, so a renamed file is parsed by what it actually is.
        """
        candidates: list[FileFormat] = []
        for candidate in (signature_format, fmt):
            if candidate is not None and candidate not in candidates:
                candidates.append(candidate)
        for candidate in candidates:
            for processor in self._processors:
                if processor.can_process(content, candidate):
                    return processor
        return None


def default_registry(max_file_size_bytes: int = 10 * 1024 * 1024) -> ProcessorRegistry:
    return ProcessorRegistry(
        [
            PdfFileProcessor(max_file_size_bytes),
            DocxFileProcessor(max_file_size_bytes),
            TextFileProcessor(max_file_size_bytes),
        ]
    )
