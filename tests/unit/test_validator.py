"""Unit tests for FileValidator: format detection, structural checks, limits."""
from __future__ import annotations

import io
import zipfile

from ingestion.app.constants import FileFormat
from ingestion.app.domain.validator import FileValidator, detect_bom_encoding, is_plain_text
from tests.conftest import build_docx, build_pdf

SUPPORTED = (FileFormat.PDF, FileFormat.DOCX, FileFormat.TXT)


def _validator(max_size: int = 1024 * 1024) -> FileValidator:
    return FileValidator(max_size, SUPPORTED)


def test_empty_file_declared_as_pdf_reports_empty_and_invalid_header():
    result = _validator().validate(b"", "empty.pdf", "application/pdf")

    assert result.is_valid is False
    assert result.format == FileFormat.PDF
    assert "File is empty" in result.errors
    assert "Invalid PDF header" in result.errors


def test_well_formed_pdf_is_valid():
    result = _validator().validate(build_pdf(), "hello.pdf")

    assert result.is_valid is True
    assert result.errors == ()
    assert result.format == FileFormat.PDF
    assert result.mime_type == "application/pdf"
    assert result.signature_format == FileFormat.PDF
    assert result.encoding is None


def test_oversized_file_is_rejected_with_sizes_in_message():
    result = _validator(max_size=100).validate(b"a" * 101, "notes.txt")

    assert result.is_valid is False
    assert "File size (101 bytes) exceeds maximum allowed size (100 bytes)" in result.errors


def test_unsupported_format_is_rejected():
    result = _validator().validate(b"{\\rtf1 hello}", "letter.rtf")

    assert result.is_valid is False
    assert result.format == FileFormat.RTF
    assert "File format 'rtf' is not supported" in result.errors


def test_unknown_binary_without_hints_cannot_be_classified():
    result = _validator().validate(bytes(range(256)) * 4)

    assert result.is_valid is False
    assert result.format is None
    assert "Unable to determine file format" in result.errors


def test_encrypted_pdf_is_an_error_and_flagged():
    content = build_pdf().replace(b"/Root 1 0 R", b"/Root 1 0 R /Encrypt 99 0 R")
    result = _validator().validate(content, "secret.pdf")

    assert result.is_valid is False
    assert result.encrypted is True
    assert "PDF is encrypted - cannot process password-protected files" in result.errors


def test_pdf_without_trailer_is_a_warning_not_an_error():
    content = build_pdf().replace(b"%%EOF", b"")
    result = _validator().validate(content, "truncated.pdf")

    assert result.is_valid is True
    assert "PDF trailer not found - file may be corrupted" in result.warnings


def test_image_only_pdf_gets_ocr_warning():
    content = b"%PDF-1.4\n1 0 obj << /Subtype /Image /Width 10 >> endobj\n%%EOF\n"
    result = _validator().validate(content, "scan.pdf")

    assert result.is_valid is True
    assert any("OCR may be required" in w for w in result.warnings)


def test_extension_mismatch_is_a_warning():
    result = _validator().validate(b"plain words, not a pdf at all", "report.pdf")

    assert "File signature does not match expected format" in result.warnings
    assert "Invalid PDF header" in result.errors


def test_docx_generated_by_python_docx_is_valid():
    result = _validator().validate(build_docx(), "report.docx")

    assert result.is_valid is True
    assert result.format == FileFormat.DOCX
    assert result.warnings == ()


def test_zip_without_document_part_warns():
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("something.txt", "hi")
    result = _validator().validate(buffer.getvalue(), "odd.docx")

    assert result.is_valid is True
    assert "DOCX structure may be invalid - missing word/document.xml" in result.warnings


def test_docx_with_non_zip_header_is_invalid():
    result = _validator().validate(b"not a zip archive", "broken.docx")

    assert result.is_valid is False
    assert "Invalid DOCX/ZIP header" in result.errors


def test_plain_text_detected_from_content():
    result = _validator().validate("Grüße aus Berlin\n".encode("utf-8"))

    assert result.format == FileFormat.TXT
    assert result.encoding == "utf-8"
    assert result.is_valid is True


def test_latin1_text_encoding_is_reported():
    result = _validator().validate("café crème".encode("latin-1"), "menu.txt")

    assert result.encoding == "latin-1"


def test_bom_detection():
    assert detect_bom_encoding(b"\xef\xbb\xbfabc") == "utf-8-sig"
    assert detect_bom_encoding(b"\xff\xfea\x00") == "utf-16-le"
    assert detect_bom_encoding(b"\xfe\xff\x00a") == "utf-16-be"
    assert detect_bom_encoding(b"abc") is None


def test_is_plain_text_rejects_nul_bytes():
    assert is_plain_text(b"hello world") is True
    assert is_plain_text(b"hel\x00lo") is False
    assert is_plain_text(b"") is False


def test_declared_mime_wins_over_extension():
    result = _validator().validate(build_pdf(), "renamed.txt", "application/pdf")

    assert result.format == FileFormat.PDF


def test_validate_never_raises_on_bad_input():
    result = _validator().validate(None)  # type: ignore[arg-type]

    assert result.is_valid is False
    assert result.errors[0].startswith("Validation error:")
