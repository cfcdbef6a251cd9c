"""Fallback strategy chain.

When the primary processor fails, or succeeds with less text than the
acceptance threshold, strategies are executed in registration order. The
result with strictly more extracted text wins (ties keep the earlier one) and
the walk stops at the first acceptable result.
"""
from __future__ import annotations

import io
import re
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, Sequence

from loguru import logger

from ingestion.app.constants import ErrorCode, FileFormat
from ingestion.app.core import SERVICE_NAME
from ingestion.app.domain.models import FileMetadata, ProcessingError, ProcessingResult
from ingestion.app.ports.file_processor import FileProcessor
from ingestion.app.ports.ocr_engine import OcrEngine, OcrUnavailableError
from ingestion.app.schemas.options import ProcessingOptions


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass(frozen=True)
class FallbackContext:
    """What a strategy may know about the job besides its bytes."""

    file_name: str
    file_size: int
    fmt: FileFormat | None
    final_attempt: bool = False
    primary: FileProcessor | None = None
    ocr_enabled: bool = False
    ocr_languages: tuple[str, ...] = ("eng",)


class FallbackStrategy(Protocol):
    @property
    def name(self) -> str: ...

    def can_handle(
        self, error: ProcessingError, fmt: FileFormat | None, context: FallbackContext
    ) -> bool: ...

    def execute(
        self, content: bytes, options: ProcessingOptions, context: FallbackContext
    ) -> ProcessingResult: ...


@dataclass
class FallbackOutcome:
    """Chosen result of a primary run plus the chain walk."""

    result: ProcessingResult
    acceptable: bool
    fallback_source: str | None = None
    attempts: list[dict[str, Any]] = field(default_factory=list)
    trigger: ProcessingError | None = None


def insufficient_content_error(text_length: int, threshold: int) -> ProcessingError:
    return ProcessingError(
        code=ErrorCode.INSUFFICIENT_CONTENT,
        message=f"Extracted text length {text_length} is below the minimum of {threshold}",
        recoverable=True,
        details={"text_length": text_length, "min_text_length": threshold},
    )


# Simple binary extraction

PRINTABLE_RUN = re.compile(r"[^\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufffd]{4,}")
PDF_STREAM = re.compile(rb"stream\r?\n(.*?)\r?\nendstream", re.DOTALL)
PDF_LITERAL = re.compile(rb"\(((?:\\.|[^\\()])*)\)\s*(?:Tj|'|\")|\[((?:[^\]])*)\]\s*TJ", re.DOTALL)
PDF_ARRAY_LITERAL = re.compile(rb"\(((?:\\.|[^\\()])*)\)")
PDF_ESCAPES = {b"n": b"\n", b"r": b"\r", b"t": b"\t", b"b": b"\b", b"f": b"\f", b"(": b"(", b")": b")", b"\\": b"\\"}
XML_TAG = re.compile(r"<[^>]+>")
WHITESPACE = re.compile(r"\s+")
CANDIDATE_ENCODINGS = ("utf-8", "latin-1", "utf-16-le")


def _unescape_pdf_literal(raw: bytes) -> bytes:
    out = bytearray()
    index = 0
    while index < len(raw):
        char = raw[index:index + 1]
        if char == b"\\" and index + 1 < len(raw):
            nxt = raw[index + 1:index + 2]
            if nxt in PDF_ESCAPES:
                out += PDF_ESCAPES[nxt]
                index += 2
                continue
            octal = re.match(rb"[0-7]{1,3}", raw[index + 1:index + 4])
            if octal:
                out.append(int(octal.group(0), 8) & 0xFF)
                index += 1 + len(octal.group(0))
                continue
            index += 1
            continue
        out += char
        index += 1
    return bytes(out)


def _pdf_segments(content: bytes) -> list[bytes]:
    segments = [content]
    for match in PDF_STREAM.finditer(content):
        try:
            segments.append(zlib.decompress(match.group(1)))
        except zlib.error:
            continue
    return segments


def _pdf_literals(segments: Iterable[bytes]) -> str:
    parts: list[str] = []
    for segment in segments:
        for match in PDF_LITERAL.finditer(segment):
            if match.group(1) is not None:
                raws = [match.group(1)]
            else:
                raws = PDF_ARRAY_LITERAL.findall(match.group(2))
            for raw in raws:
                parts.append(_unescape_pdf_literal(raw).decode("latin-1"))
    return WHITESPACE.sub(" ", " ".join(parts)).strip()


def _docx_segments(content: bytes) -> list[bytes]:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = [n for n in archive.namelist() if n.startswith("word/") and n.endswith(".xml")]
            return [
                XML_TAG.sub(" ", archive.read(name).decode("utf-8", errors="ignore")).encode("utf-8")
                for name in names
            ]
    except (zipfile.BadZipFile, OSError, KeyError):
        return [content]


def _score(text: str) -> int:
    return sum(1 for ch in text if ch.isalnum())


def printable_runs(data: bytes) -> str:
    """Best printable-run text over the candidate encodings, scored by alphanumeric count."""
    best = ""
    for encoding in CANDIDATE_ENCODINGS:
        decoded = data.decode(encoding, errors="ignore")
        runs = [
            run.strip()
            for run in PRINTABLE_RUN.findall(decoded)
            if _score(run) * 2 >= len(run.strip()) > 0
        ]
        candidate = WHITESPACE.sub(" ", " ".join(runs)).strip()
        if _score(candidate) > _score(best):
            best = candidate
    return best


class SimpleTextExtraction:
    name = "SimpleTextExtraction"

    def can_handle(
        self, error: ProcessingError, fmt: FileFormat | None, context: FallbackContext
    ) -> bool:
        return fmt in (FileFormat.PDF, FileFormat.DOCX) and error.recoverable

    def execute(
        self, content: bytes, options: ProcessingOptions, context: FallbackContext
    ) -> ProcessingResult:
        started = time.perf_counter()
        try:
            if context.fmt == FileFormat.PDF:
                segments = _pdf_segments(content)
                text = _pdf_literals(segments)
                if not text:
                    text = printable_runs(b"\n".join(segments[1:]) or content)
            elif context.fmt == FileFormat.DOCX:
                text = " ".join(filter(None, (printable_runs(s) for s in _docx_segments(content))))
            else:
                text = printable_runs(content)
        except Exception as exc:
            return ProcessingResult.failed(
                self.name,
                ProcessingError(
                    code=ErrorCode.FALLBACK_EXTRACTION_ERROR,
                    message=f"Fallback extraction failed: {exc}",
                    recoverable=False,
                ),
                duration_seconds=time.perf_counter() - started,
            )
        metadata = FileMetadata.for_text(
            text,
            custom_properties={"extraction_method": "fallback-simple-text"},
        )
        return ProcessingResult.succeeded(
            self.name,
            text,
            metadata,
            duration_seconds=time.perf_counter() - started,
            warnings=("Text extracted using fallback method - may be incomplete",),
        )


class OcrExtraction:
    name = "OcrExtraction"

    def __init__(self, engine: OcrEngine) -> None:
        self._engine = engine

    def can_handle(
        self, error: ProcessingError, fmt: FileFormat | None, context: FallbackContext
    ) -> bool:
        return context.ocr_enabled and fmt == FileFormat.PDF and error.recoverable

    def execute(
        self, content: bytes, options: ProcessingOptions, context: FallbackContext
    ) -> ProcessingResult:
        started = time.perf_counter()
        languages = (options.ocr_language,) if options.ocr_language else context.ocr_languages
        try:
            if not self._engine.available():
                raise OcrUnavailableError("OCR engine is not installed")
            text = self._engine.extract_text(content, languages, max_pages=options.max_pages)
        except OcrUnavailableError as exc:
            error = ProcessingError(code=ErrorCode.OCR_UNAVAILABLE, message=str(exc), recoverable=False)
            return ProcessingResult.failed(self.name, error, duration_seconds=time.perf_counter() - started)
        except Exception as exc:
            error = ProcessingError(
                code=ErrorCode.OCR_ERROR,
                message=f"OCR failed: {exc}",
                recoverable=True,
            )
            return ProcessingResult.failed(self.name, error, duration_seconds=time.perf_counter() - started)
        metadata = FileMetadata.for_text(
            text,
            custom_properties={"extraction_method": "ocr", "ocr_languages": list(languages)},
        )
        return ProcessingResult.succeeded(
            self.name, text, metadata, duration_seconds=time.perf_counter() - started
        )


class RetryWithAdjustedOptions:
    """Re-runs the primary processor with relaxed limits."""

    name = "RetryWithAdjustedOptions"

    def can_handle(
        self, error: ProcessingError, fmt: FileFormat | None, context: FallbackContext
    ) -> bool:
        return (
            context.primary is not None
            and error.recoverable
            and error.code != ErrorCode.INSUFFICIENT_CONTENT
        )

    def execute(
        self, content: bytes, options: ProcessingOptions, context: FallbackContext
    ) -> ProcessingResult:
        if context.primary is None:
            return ProcessingResult.failed(
                self.name,
                ProcessingError(
                    code=ErrorCode.FALLBACK_EXTRACTION_ERROR,
                    message="No primary processor to re-run",
                    recoverable=False,
                ),
            )
        return context.primary.process(content, options.adjusted_for_retry())


class MinimalExtraction:
    """Last resort on a job's final attempt: file facts with empty text."""

    name = "MinimalExtraction"
    accepts_empty = True

    def can_handle(
        self, error: ProcessingError, fmt: FileFormat | None, context: FallbackContext
    ) -> bool:
        return context.final_attempt

    def execute(
        self, content: bytes, options: ProcessingOptions, context: FallbackContext
    ) -> ProcessingResult:
        metadata = FileMetadata(
            page_count=0,
            custom_properties={
                "extraction_method": "fallback-minimal",
                "file_name": context.file_name,
                "file_size": context.file_size,
            },
        )
        return ProcessingResult.succeeded(
            self.name,
            "",
            metadata,
            warnings=("File could not be processed - no text extracted",),
        )


class FallbackChain:
    def __init__(self, strategies: Sequence[FallbackStrategy], min_text_length: int) -> None:
        self._strategies = list(strategies)
        self._min_text_length = int(min_text_length)
        self._empty_ok = {s.name for s in self._strategies if getattr(s, "accepts_empty", False)}

    @property
    def strategies(self) -> list[FallbackStrategy]:
        return list(self._strategies)

    @property
    def min_text_length(self) -> int:
        return self._min_text_length

    def is_acceptable(self, result: ProcessingResult, options: ProcessingOptions) -> bool:
        if not result.success:
            return False
        if not options.extract_text or result.source in self._empty_ok:
            return True
        return result.text_length >= self._min_text_length

    def run(
        self,
        content: bytes,
        options: ProcessingOptions,
        primary: ProcessingResult,
        context: FallbackContext,
    ) -> FallbackOutcome:
        if self.is_acceptable(primary, options):
            return FallbackOutcome(result=primary, acceptable=True)

        if primary.success:
            trigger = insufficient_content_error(primary.text_length, self._min_text_length)
        else:
            trigger = primary.error or ProcessingError(
                code=ErrorCode.UNEXPECTED_ERROR, message="Processor failed", recoverable=True
            )

        best: ProcessingResult | None = primary if primary.success else None
        best_source: str | None = None
        attempts: list[dict[str, Any]] = []

        for strategy in self._strategies:
            if not strategy.can_handle(trigger, context.fmt, context):
                continue
            _log("fallback_attempted", strategy=strategy.name, trigger=trigger.code, file_name=context.file_name)
            try:
                result = strategy.execute(content, options, context)
            except Exception as exc:
                logger.warning("fallback strategy {} raised: {}", strategy.name, exc)
                result = ProcessingResult.failed(
                    strategy.name,
                    ProcessingError(
                        code=ErrorCode.FALLBACK_EXTRACTION_ERROR,
                        message=f"{strategy.name} failed: {exc}",
                        recoverable=False,
                    ),
                )
            attempts.append(
                {
                    "strategy": strategy.name,
                    "success": result.success,
                    "text_length": result.text_length,
                    "error": result.error.code if result.error else None,
                }
            )
            if not result.success:
                continue
            if best is None or result.text_length > best.text_length:
                best = result
                best_source = strategy.name
            if self.is_acceptable(result, options):
                break

        if best is None:
            return FallbackOutcome(result=primary, acceptable=False, attempts=attempts, trigger=trigger)

        # A successful last-resort run makes the attempt terminal even when an
        # earlier strategy returned more (but still too little) text.
        acceptable = self.is_acceptable(best, options) or any(
            a["success"] and a["strategy"] in self._empty_ok for a in attempts
        )
        _log(
            "fallback_selected",
            strategy=best_source or primary.source,
            text_length=best.text_length,
            acceptable=acceptable,
        )
        return FallbackOutcome(
            result=best,
            acceptable=acceptable,
            fallback_source=best_source,
            attempts=attempts,
            trigger=trigger,
        )


def default_strategies(
    ocr_engine: OcrEngine | None,
    *,
    enable_minimal: bool = True,
) -> list[FallbackStrategy]:
    strategies: list[FallbackStrategy] = [SimpleTextExtraction()]
    if ocr_engine is not None:
        strategies.append(OcrExtraction(ocr_engine))
    strategies.append(RetryWithAdjustedOptions())
    if enable_minimal:
        strategies.append(MinimalExtraction())
    return strategies
