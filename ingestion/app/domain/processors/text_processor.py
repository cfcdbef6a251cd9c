"""Plain-text processor."""
from __future__ import annotations

from ingestion.app.constants import ErrorCode, FileFormat
from ingestion.app.domain.models import FileMetadata
from ingestion.app.domain.processors.base import BaseFileProcessor
from ingestion.app.domain.validator import detect_bom_encoding
from ingestion.app.schemas.options import ProcessingOptions


def decode_text(content: bytes) -> tuple[str, str]:
    encoding = detect_bom_encoding(content)
    if encoding is not None:
        return content.decode(encoding), encoding
    try:
        return content.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return content.decode("latin-1"), "latin-1"


class TextFileProcessor(BaseFileProcessor):
    name = "TextFileProcessor"
    formats = frozenset({FileFormat.TXT})
    error_code = ErrorCode.TEXT_PROCESSING_ERROR

    def can_process(self, content: bytes, fmt: FileFormat) -> bool:
        if fmt not in self.formats:
            return False
        return detect_bom_encoding(content) is not None or b"\x00" not in content[:1000]

    def _extract(
        self, content: bytes, options: ProcessingOptions
    ) -> tuple[str, FileMetadata, list[str]]:
        text, encoding = decode_text(content)
        warnings = [] if encoding != "latin-1" else ["Text was not valid UTF-8; decoded as latin-1"]
        return text, self._metadata(text, encoding), warnings

    def _read_metadata(self, content: bytes) -> FileMetadata:
        text, encoding = decode_text(content)
        return self._metadata(text, encoding)

    def _metadata(self, text: str, encoding: str) -> FileMetadata:
        return FileMetadata.for_text(text, custom_properties={"encoding": encoding})
