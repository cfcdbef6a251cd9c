from __future__ import annotations

import io
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

import docx
import pytest

from ingestion.app.application.pipeline import IngestionPipeline
from ingestion.app.application.retry_scheduler import RetryScheduler
from ingestion.app.constants import FileFormat
from ingestion.app.core.backoff import RetryPolicy
from ingestion.app.domain.fallbacks import FallbackChain, FallbackStrategy
from ingestion.app.domain.models import FileMetadata, ProcessingError, ProcessingJob, ProcessingResult
from ingestion.app.domain.processors.registry import ProcessorRegistry, default_registry
from ingestion.app.domain.progress import ProgressTracker
from ingestion.app.domain.validator import FileValidator
from ingestion.app.infrastructure.messaging.inmemory.in_memory_event_publisher import InMemoryEventPublisher
from ingestion.app.infrastructure.persistence.memory.in_memory_document_store import InMemoryDocumentStore
from ingestion.app.infrastructure.persistence.memory.in_memory_repository import InMemoryJobRepository

SUPPORTED = (FileFormat.PDF, FileFormat.DOCX, FileFormat.TXT)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def _pdf_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_pdf(pages: Sequence[Sequence[str]] = (("Hello World",),), *, info: dict[str, str] | None = None) -> bytes:
    """Minimal valid PDF: one Helvetica text stream per page, correct xref offsets."""
    objects: list[bytes] = []
    page_count = len(pages)
    font_num = 3 + 2 * page_count
    kids = " ".join(f"{3 + 2 * i} 0 R" for i in range(page_count))

    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode())
    for index, lines in enumerate(pages):
        page_num = 3 + 2 * index
        ops = ["BT", "/F1 12 Tf", "72 720 Td", "14 TL"]
        for line in lines:
            ops.append(f"({_pdf_escape(line)}) Tj T*")
        ops.append("ET")
        stream = "\n".join(ops).encode("latin-1")
        objects.append(
            (
                f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Contents {page_num + 1} 0 R /Resources << /Font << /F1 {font_num} 0 R >> >> >>"
            ).encode()
        )
        objects.append(
            b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream"
        )
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>")
    info_ref = ""
    if info:
        entries = " ".join(f"/{key} ({_pdf_escape(value)})" for key, value in info.items())
        objects.append(f"<< {entries} >>".encode("latin-1"))
        info_ref = f" /Info {len(objects)} 0 R"

    out = bytearray(b"%PDF-1.4\n")
    offsets: list[int] = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"
    xref_at = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R{info_ref} >>\n".encode()
    out += f"startxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


def build_docx(paragraphs: Sequence[str] = ("Quarterly report for the ingestion team",), *, title: str | None = None) -> bytes:
    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if title is not None:
        document.core_properties.title = title
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def make_job(job_id: str = "job-1", **overrides: Any) -> ProcessingJob:
    created = overrides.pop("created_at", datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc))
    fields: dict[str, Any] = {
        "job_id": job_id,
        "file_id": job_id,
        "file_name": f"{job_id}.pdf",
        "file_size": 128,
        "created_at": created,
        "format": FileFormat.PDF,
        "updated_at": created,
    }
    fields.update(overrides)
    return ProcessingJob(**fields)


def recoverable_error(code: str = "PDF_PROCESSING_ERROR") -> ProcessingError:
    return ProcessingError(code=code, message="transient parser failure", recoverable=True)


class StubProcessor:
    """FileProcessor double returning a canned result for one format."""

    def __init__(
        self,
        result: ProcessingResult,
        fmt: FileFormat = FileFormat.PDF,
        name: str = "StubProcessor",
    ) -> None:
        self.name = name
        self._result = result
        self._fmt = fmt
        self.calls = 0

    @property
    def supported_formats(self) -> frozenset[FileFormat]:
        return frozenset({self._fmt})

    def can_process(self, content: bytes, fmt: FileFormat) -> bool:
        return fmt == self._fmt

    def validate(self, content: bytes):
        return FileValidator(10 * 1024 * 1024, [self._fmt]).validate(content)

    def process(self, content: bytes, options) -> ProcessingResult:
        self.calls += 1
        return self._result

    def extract_metadata(self, content: bytes) -> FileMetadata:
        return FileMetadata()


class StubStrategy:
    """FallbackStrategy double."""

    def __init__(self, name: str, result: ProcessingResult, handles: bool = True) -> None:
        self.name = name
        self._result = result
        self._handles = handles
        self.calls = 0

    def can_handle(self, error, fmt, context) -> bool:
        return self._handles

    def execute(self, content, options, context) -> ProcessingResult:
        self.calls += 1
        return self._result


@dataclass
class Harness:
    pipeline: IngestionPipeline
    repository: InMemoryJobRepository
    documents: InMemoryDocumentStore
    publisher: InMemoryEventPublisher
    progress: ProgressTracker
    clock: FakeClock

    async def job(self, job_id: str) -> ProcessingJob:
        job = await self.repository.get(job_id)
        assert job is not None
        return job

    def event_types(self, job_id: str) -> list[str]:
        return [event.type.value for event in self.publisher.events_for(job_id)]


def build_harness(
    *,
    registry: ProcessorRegistry | None = None,
    strategies: Sequence[FallbackStrategy] = (),
    min_text_length: int = 10,
    max_retries: int = 3,
    supported: Sequence[FileFormat] = SUPPORTED,
    timeout_seconds: float = 5.0,
    clock: FakeClock | None = None,
) -> Harness:
    clock = clock or FakeClock()
    repository = InMemoryJobRepository()
    documents = InMemoryDocumentStore()
    publisher = InMemoryEventPublisher()
    progress = ProgressTracker(retention_seconds=0.0, now=clock)
    pipeline = IngestionPipeline(
        repository=repository,
        documents=documents,
        publisher=publisher,
        validator=FileValidator(10 * 1024 * 1024, supported),
        registry=registry or default_registry(),
        fallback_chain=FallbackChain(strategies, min_text_length=min_text_length),
        retry_scheduler=RetryScheduler(repository, RetryPolicy(), now=clock, rng=random.Random(7)),
        progress=progress,
        default_timeout_seconds=timeout_seconds,
        max_retries=max_retries,
        now=clock,
    )
    return Harness(pipeline, repository, documents, publisher, progress, clock)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture()
def hello_pdf() -> bytes:
    return build_pdf()
