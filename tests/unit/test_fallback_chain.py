"""Unit tests for the fallback chain and its built-in strategies."""
from __future__ import annotations

import io
import zipfile
import zlib

from ingestion.app.constants import ErrorCode, FileFormat
from ingestion.app.domain.fallbacks import (
    FallbackChain,
    FallbackContext,
    MinimalExtraction,
    OcrExtraction,
    RetryWithAdjustedOptions,
    SimpleTextExtraction,
    default_strategies,
    printable_runs,
)
from ingestion.app.domain.models import ProcessingError, ProcessingResult
from ingestion.app.ports.ocr_engine import OcrUnavailableError
from ingestion.app.schemas.options import ProcessingOptions
from tests.conftest import StubProcessor, StubStrategy, build_pdf, recoverable_error

OPTIONS = ProcessingOptions()


def _context(**overrides) -> FallbackContext:
    fields = {"file_name": "doc.pdf", "file_size": 100, "fmt": FileFormat.PDF}
    fields.update(overrides)
    return FallbackContext(**fields)


class _FakeOcr:
    def __init__(self, text: str = "", available: bool = True, raises: Exception | None = None) -> None:
        self._text = text
        self._available = available
        self._raises = raises
        self.languages = None

    def available(self) -> bool:
        return self._available

    def extract_text(self, content, languages, *, max_pages=None) -> str:
        self.languages = tuple(languages)
        if self._raises is not None:
            raise self._raises
        return self._text


def test_short_primary_text_is_replaced_by_longer_fallback_result():
    primary = ProcessingResult.succeeded("PdfFileProcessor", "ab")
    fallback = StubStrategy("SimpleTextExtraction", ProcessingResult.succeeded("SimpleTextExtraction", "x" * 50))
    chain = FallbackChain([fallback], min_text_length=10)

    outcome = chain.run(b"%PDF-", OPTIONS, primary, _context())

    assert outcome.acceptable is True
    assert outcome.result.text_length == 50
    assert outcome.fallback_source == "SimpleTextExtraction"
    assert outcome.trigger.code == ErrorCode.INSUFFICIENT_CONTENT
    assert outcome.attempts == [
        {"strategy": "SimpleTextExtraction", "success": True, "text_length": 50, "error": None}
    ]


def test_acceptable_primary_skips_the_chain():
    primary = ProcessingResult.succeeded("PdfFileProcessor", "plenty of text here")
    strategy = StubStrategy("SimpleTextExtraction", ProcessingResult.succeeded("SimpleTextExtraction", "z" * 99))
    outcome = FallbackChain([strategy], 10).run(b"", OPTIONS, primary, _context())

    assert outcome.result is primary
    assert outcome.fallback_source is None
    assert strategy.calls == 0


def test_chain_stops_at_first_acceptable_result():
    first = StubStrategy("First", ProcessingResult.succeeded("First", "enough text to pass"))
    second = StubStrategy("Second", ProcessingResult.succeeded("Second", "even more text than the first one"))
    primary = ProcessingResult.failed("PdfFileProcessor", recoverable_error())

    outcome = FallbackChain([first, second], 10).run(b"", OPTIONS, primary, _context())

    assert outcome.fallback_source == "First"
    assert second.calls == 0


def test_ties_keep_the_earlier_result():
    first = StubStrategy("First", ProcessingResult.succeeded("First", "abc"))
    second = StubStrategy("Second", ProcessingResult.succeeded("Second", "xyz"))
    primary = ProcessingResult.failed("PdfFileProcessor", recoverable_error())

    outcome = FallbackChain([first, second], 10).run(b"", OPTIONS, primary, _context())

    assert outcome.acceptable is False
    assert outcome.fallback_source == "First"


def test_strategies_that_decline_are_not_run():
    declined = StubStrategy("Declined", ProcessingResult.succeeded("Declined", "x" * 40), handles=False)
    primary = ProcessingResult.failed("PdfFileProcessor", recoverable_error())

    outcome = FallbackChain([declined], 10).run(b"", OPTIONS, primary, _context())

    assert declined.calls == 0
    assert outcome.acceptable is False
    assert outcome.result is primary
    assert outcome.trigger.code == "PDF_PROCESSING_ERROR"


def test_raising_strategy_is_recorded_and_skipped():
    class _Boom:
        name = "Boom"

        def can_handle(self, error, fmt, context):
            return True

        def execute(self, content, options, context):
            raise RuntimeError("kaput")

    primary = ProcessingResult.failed("PdfFileProcessor", recoverable_error())
    outcome = FallbackChain([_Boom()], 10).run(b"", OPTIONS, primary, _context())

    assert outcome.acceptable is False
    assert outcome.attempts[0]["error"] == ErrorCode.FALLBACK_EXTRACTION_ERROR


def test_simple_extraction_reads_pdf_literals():
    result = SimpleTextExtraction().execute(build_pdf([["Hello fallback world"]]), OPTIONS, _context())

    assert result.success is True
    assert "Hello fallback world" in result.text
    assert result.metadata.custom_properties["extraction_method"] == "fallback-simple-text"


def test_simple_extraction_inflates_flate_streams():
    stream = zlib.compress(b"BT (Compressed words survive) Tj ET")
    content = b"%PDF-1.4\n4 0 obj << /Filter /FlateDecode >>\nstream\n" + stream + b"\nendstream\nendobj\n%%EOF"

    result = SimpleTextExtraction().execute(content, OPTIONS, _context())

    assert "Compressed words survive" in result.text


def test_simple_extraction_strips_docx_markup():
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("word/document.xml", "<w:document><w:p><w:t>Contract terms apply</w:t></w:p></w:document>")
    result = SimpleTextExtraction().execute(buffer.getvalue(), OPTIONS, _context(fmt=FileFormat.DOCX))

    assert "Contract terms apply" in result.text
    assert "<w:t>" not in result.text


def test_simple_extraction_only_for_pdf_and_docx():
    strategy = SimpleTextExtraction()

    assert strategy.can_handle(recoverable_error(), FileFormat.PDF, _context()) is True
    assert strategy.can_handle(recoverable_error(), FileFormat.TXT, _context()) is False


def test_printable_runs_ignores_binary_noise():
    assert printable_runs(b"\x00\x01\x02Readable text\x00\x03") == "Readable text"


def test_ocr_requires_flag_and_pdf():
    ocr = OcrExtraction(_FakeOcr("scanned"))

    assert ocr.can_handle(recoverable_error(), FileFormat.PDF, _context(ocr_enabled=False)) is False
    assert ocr.can_handle(recoverable_error(), FileFormat.DOCX, _context(ocr_enabled=True)) is False
    assert ocr.can_handle(recoverable_error(), FileFormat.PDF, _context(ocr_enabled=True)) is True


def test_ocr_unavailable_is_non_recoverable():
    result = OcrExtraction(_FakeOcr(available=False)).execute(b"", OPTIONS, _context(ocr_enabled=True))

    assert result.success is False
    assert result.error.code == ErrorCode.OCR_UNAVAILABLE
    assert result.error.recoverable is False


def test_ocr_missing_language_data_is_unavailable():
    engine = _FakeOcr(raises=OcrUnavailableError("no deu"))
    result = OcrExtraction(engine).execute(b"", ProcessingOptions(ocr_language="deu"), _context(ocr_enabled=True))

    assert result.error.code == ErrorCode.OCR_UNAVAILABLE
    assert engine.languages == ("deu",)


def test_ocr_success_uses_context_languages():
    engine = _FakeOcr("Scanned invoice number 42")
    result = OcrExtraction(engine).execute(
        b"", OPTIONS, _context(ocr_enabled=True, ocr_languages=("eng", "fra"))
    )

    assert result.success is True
    assert result.text == "Scanned invoice number 42"
    assert engine.languages == ("eng", "fra")


def test_retry_strategy_relaxes_options():
    class _Recorder(StubProcessor):
        def process(self, content, options):
            self.seen = options
            return super().process(content, options)

    primary = _Recorder(ProcessingResult.succeeded("Recorder", "recovered text value"))
    strategy = RetryWithAdjustedOptions()
    options = ProcessingOptions(max_pages=2, timeout_seconds=3)

    result = strategy.execute(b"", options, _context(primary=primary))

    assert result.success is True
    assert primary.seen.max_pages is None
    assert primary.seen.timeout_seconds == 3


def test_retry_strategy_without_primary_returns_structured_failure():
    result = RetryWithAdjustedOptions().execute(b"", ProcessingOptions(), _context())

    assert result.success is False
    assert result.error.code == ErrorCode.FALLBACK_EXTRACTION_ERROR
    assert result.error.recoverable is False


def test_retry_strategy_declines_insufficient_content():
    strategy = RetryWithAdjustedOptions()
    insufficient = ProcessingError(code=ErrorCode.INSUFFICIENT_CONTENT, message="short", recoverable=True)
    primary = StubProcessor(ProcessingResult.succeeded("Stub", ""))

    assert strategy.can_handle(insufficient, FileFormat.PDF, _context(primary=primary)) is False
    assert strategy.can_handle(recoverable_error(), FileFormat.PDF, _context(primary=primary)) is True


def test_minimal_extraction_only_on_final_attempt_and_is_acceptable():
    chain = FallbackChain([MinimalExtraction()], 10)
    primary = ProcessingResult.failed("PdfFileProcessor", recoverable_error())

    early = chain.run(b"", OPTIONS, primary, _context(final_attempt=False))
    final = chain.run(b"", OPTIONS, primary, _context(final_attempt=True))

    assert early.acceptable is False
    assert final.acceptable is True
    assert final.fallback_source == "MinimalExtraction"
    assert final.result.text == ""
    assert final.result.metadata.custom_properties["file_name"] == "doc.pdf"


def test_non_recoverable_error_skips_recoverable_only_strategies():
    chain = FallbackChain(default_strategies(_FakeOcr("x" * 30)), 10)
    encrypted = ProcessingError(code=ErrorCode.FILE_ENCRYPTED, message="locked", recoverable=False)
    primary = ProcessingResult.failed("PdfFileProcessor", encrypted)

    outcome = chain.run(b"", OPTIONS, primary, _context(ocr_enabled=True, final_attempt=True))

    assert [a["strategy"] for a in outcome.attempts] == ["MinimalExtraction"]


def test_default_strategy_order():
    names = [s.name for s in default_strategies(_FakeOcr())]

    assert names == ["SimpleTextExtraction", "OcrExtraction", "RetryWithAdjustedOptions", "MinimalExtraction"]
    assert [s.name for s in default_strategies(None, enable_minimal=False)] == [
        "SimpleTextExtraction",
        "RetryWithAdjustedOptions",
    ]
