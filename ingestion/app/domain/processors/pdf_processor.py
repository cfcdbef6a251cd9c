"""PDF processor backed by pypdf."""
from __future__ import annotations

import io
from datetime import datetime

from pypdf import PdfReader
from pypdf.errors import FileNotDecryptedError

from ingestion.app.constants import ErrorCode, FileFormat
from ingestion.app.domain.models import FileMetadata
from ingestion.app.domain.processors.base import BaseFileProcessor, EncryptedDocumentError
from ingestion.app.schemas.options import ProcessingOptions


def _as_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_datetime(value: object) -> datetime | None:
    return value if isinstance(value, datetime) else None


class PdfFileProcessor(BaseFileProcessor):
    name = "PdfFileProcessor"
    formats = frozenset({FileFormat.PDF})
    signature = b"%PDF"
    error_code = ErrorCode.PDF_PROCESSING_ERROR

    def _open(self, content: bytes) -> PdfReader:
        reader = PdfReader(io.BytesIO(content))
        if reader.is_encrypted:
            # Owner-password-only files open with an empty user password.
            try:
                decrypted = reader.decrypt("")
            except Exception as exc:
                raise EncryptedDocumentError("PDF is encrypted") from exc
            if not decrypted:
                raise EncryptedDocumentError("PDF is encrypted")
        return reader

    def _extract(
        self, content: bytes, options: ProcessingOptions
    ) -> tuple[str, FileMetadata, list[str]]:
        reader = self._open(content)
        warnings: list[str] = []
        pages = reader.pages
        total = len(pages)
        limit = total if options.max_pages is None else min(total, options.max_pages)
        if limit < total:
            warnings.append(f"Only the first {limit} of {total} pages were processed")

        chunks: list[str] = []
        for index in range(limit):
            try:
                chunks.append(pages[index].extract_text() or "")
            except FileNotDecryptedError as exc:
                raise EncryptedDocumentError("PDF is encrypted") from exc
        text = "\n".join(chunk.strip() for chunk in chunks if chunk.strip())
        return text, self._metadata(reader, text), warnings

    def _read_metadata(self, content: bytes) -> FileMetadata:
        reader = self._open(content)
        text = "\n".join((page.extract_text() or "") for page in reader.pages)
        return self._metadata(reader, text)

    def _metadata(self, reader: PdfReader, text: str) -> FileMetadata:
        info = reader.metadata
        keywords: list[str] = []
        custom: dict[str, object] = {"pdf_version": reader.pdf_header.replace("%PDF-", "")}
        title = author = subject = creator = producer = None
        created = modified = None
        if info is not None:
            title = _as_str(info.title)
            author = _as_str(info.author)
            subject = _as_str(info.subject)
            creator = _as_str(info.creator)
            producer = _as_str(info.producer)
            try:
                created = _as_datetime(info.creation_date)
                modified = _as_datetime(info.modification_date)
            except ValueError:
                custom["date_warning"] = "unparseable document dates"
            raw_keywords = _as_str(info.get("/Keywords"))
            if raw_keywords:
                keywords = [k.strip() for k in raw_keywords.replace(";", ",").split(",") if k.strip()]
        return FileMetadata.for_text(
            text,
            title=title,
            author=author,
            subject=subject,
            creator=creator,
            producer=producer,
            creation_date=created,
            modification_date=modified,
            page_count=len(reader.pages),
            keywords=keywords,
            custom_properties=custom,
        )
