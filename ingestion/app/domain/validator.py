"""File validator: inspects raw bytes plus the caller's hints and reports findings as data.

Format detection order: declared MIME type, file-name extension, binary signature,
content heuristics. Signature mismatches are warnings (some producers write
non-canonical headers); encryption is always an error.
"""
from __future__ import annotations

import io
import zipfile
from pathlib import PurePath
from typing import Any, Iterable

from loguru import logger

from ingestion.app.constants import MIME_TYPES, FileFormat
from ingestion.app.core import SERVICE_NAME
from ingestion.app.domain.models import FileValidationResult

PDF_SIGNATURE = b"%PDF"
ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
RTF_SIGNATURE = b"{\\rtf"
OOXML_ENCRYPTED_STREAM = "EncryptedPackage".encode("utf-16-le")

SIGNATURES: dict[FileFormat, bytes] = {
    FileFormat.PDF: PDF_SIGNATURE,
    FileFormat.DOCX: ZIP_SIGNATURE,
    FileFormat.DOC: OLE_SIGNATURE,
    FileFormat.RTF: RTF_SIGNATURE,
}

MIME_TO_FORMAT: dict[str, FileFormat] = {
    "application/pdf": FileFormat.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileFormat.DOCX,
    "application/msword": FileFormat.DOC,
    "text/plain": FileFormat.TXT,
    "application/rtf": FileFormat.RTF,
    "text/rtf": FileFormat.RTF,
}

EXTENSION_TO_FORMAT: dict[str, FileFormat] = {
    ".pdf": FileFormat.PDF,
    ".docx": FileFormat.DOCX,
    ".doc": FileFormat.DOC,
    ".txt": FileFormat.TXT,
    ".text": FileFormat.TXT,
    ".md": FileFormat.TXT,
    ".rtf": FileFormat.RTF,
}

TEXT_SAMPLE_BYTES = 1000
MIN_PRINTABLE_RATIO = 0.95
PDF_HEADER_WINDOW = 1024
PDF_TRAILER_WINDOW = 1024


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).debug("")


def printable_ratio(sample: bytes) -> float:
    if not sample:
        return 0.0
    printable = sum(1 for b in sample if b in (9, 10, 13) or 32 <= b <= 126 or b >= 128)
    return printable / len(sample)


def is_plain_text(content: bytes) -> bool:
    sample = content[:TEXT_SAMPLE_BYTES]
    if not sample or b"\x00" in sample:
        return False
    return printable_ratio(sample) >= MIN_PRINTABLE_RATIO


def detect_bom_encoding(content: bytes) -> str | None:
    if content.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    if content.startswith(b"\xfe\xff"):
        return "utf-16-be"
    if content.startswith(b"\xff\xfe"):
        return "utf-16-le"
    return None


def format_from_signature(content: bytes) -> FileFormat | None:
    for fmt, signature in SIGNATURES.items():
        if content.startswith(signature):
            return fmt
    return None


class FileValidator:
    """Validates uploaded bytes against size limits and the supported format list."""

    def __init__(self, max_file_size_bytes: int, supported_formats: Iterable[FileFormat]) -> None:
        self._max_file_size = int(max_file_size_bytes)
        self._supported = frozenset(supported_formats)

    @property
    def supported_formats(self) -> frozenset[FileFormat]:
        return self._supported

    def validate(
        self,
        content: bytes,
        declared_name: str | None = None,
        declared_mime: str | None = None,
    ) -> FileValidationResult:
        try:
            return self._validate(content, declared_name, declared_mime)
        except Exception as exc:
            logger.exception("file validation crashed: {}", exc)
            return FileValidationResult(
                is_valid=False,
                errors=(f"Validation error: {exc}",),
                warnings=(),
                size=len(content) if isinstance(content, (bytes, bytearray)) else 0,
                format=None,
                mime_type="application/octet-stream",
            )

    def _validate(
        self,
        content: bytes,
        declared_name: str | None,
        declared_mime: str | None,
    ) -> FileValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        size = len(content)

        if size == 0:
            errors.append("File is empty")
        if size > self._max_file_size:
            errors.append(
                f"File size ({size} bytes) exceeds maximum allowed size ({self._max_file_size} bytes)"
            )

        fmt = self.detect_format(content, declared_name, declared_mime)
        signature_format = format_from_signature(content)
        encrypted = False

        if fmt is None:
            errors.append("Unable to determine file format")
        else:
            if fmt not in self._supported:
                errors.append(f"File format '{fmt.value}' is not supported")

            expected = SIGNATURES.get(fmt)
            if expected is not None and not content.startswith(expected):
                warnings.append("File signature does not match expected format")

            struct_errors, struct_warnings, encrypted = self._check_structure(content, fmt)
            errors.extend(struct_errors)
            warnings.extend(struct_warnings)

        mime_type = self._resolve_mime(fmt, declared_mime)
        result = FileValidationResult(
            is_valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warnings),
            size=size,
            format=fmt,
            mime_type=mime_type,
            encoding=self._detect_encoding(content, fmt),
            signature_format=signature_format,
            encrypted=encrypted,
        )
        _log(
            "file_validated",
            is_valid=result.is_valid,
            format=fmt.value if fmt else None,
            size=size,
            error_count=len(errors),
            warning_count=len(warnings),
        )
        return result

    def detect_format(
        self,
        content: bytes,
        declared_name: str | None = None,
        declared_mime: str | None = None,
    ) -> FileFormat | None:
        if declared_mime:
            mime = declared_mime.split(";", 1)[0].strip().lower()
            if mime in MIME_TO_FORMAT:
                return MIME_TO_FORMAT[mime]

        if declared_name:
            suffix = PurePath(declared_name).suffix.lower()
            if suffix in EXTENSION_TO_FORMAT:
                return EXTENSION_TO_FORMAT[suffix]

        from_signature = format_from_signature(content)
        if from_signature is not None:
            return from_signature

        if detect_bom_encoding(content) is not None or is_plain_text(content):
            return FileFormat.TXT
        return None

    def _check_structure(self, content: bytes, fmt: FileFormat) -> tuple[list[str], list[str], bool]:
        if fmt == FileFormat.PDF:
            return self._check_pdf(content)
        if fmt == FileFormat.DOCX:
            return self._check_docx(content)
        if fmt == FileFormat.TXT:
            warnings = []
            if content and detect_bom_encoding(content) is None and not is_plain_text(content):
                warnings.append("File contains binary data but is treated as text")
            return [], warnings, False
        return [], [], False

    def _check_pdf(self, content: bytes) -> tuple[list[str], list[str], bool]:
        errors: list[str] = []
        warnings: list[str] = []
        encrypted = False

        if b"%PDF-" not in content[:PDF_HEADER_WINDOW]:
            errors.append("Invalid PDF header")
        if b"%%EOF" not in content[-PDF_TRAILER_WINDOW:]:
            warnings.append("PDF trailer not found - file may be corrupted")
        if b"/Encrypt" in content:
            errors.append("PDF is encrypted - cannot process password-protected files")
            encrypted = True
        if b"/Image" in content and b"/Font" not in content:
            warnings.append("PDF may be image-only (scanned) - OCR may be required")
        return errors, warnings, encrypted

    def _check_docx(self, content: bytes) -> tuple[list[str], list[str], bool]:
        errors: list[str] = []
        warnings: list[str] = []

        if content.startswith(OLE_SIGNATURE) and OOXML_ENCRYPTED_STREAM in content:
            return ["DOCX is encrypted or password-protected"], warnings, True
        if not content.startswith(ZIP_SIGNATURE):
            errors.append("Invalid DOCX/ZIP header")
            return errors, warnings, False

        try:
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                infos = archive.infolist()
        except (zipfile.BadZipFile, OSError):
            warnings.append("DOCX archive structure could not be read - file may be corrupted")
            return errors, warnings, False

        if any(info.flag_bits & 0x1 for info in infos):
            errors.append("DOCX is encrypted or password-protected")
            return errors, warnings, True
        if "word/document.xml" not in {info.filename for info in infos}:
            warnings.append("DOCX structure may be invalid - missing word/document.xml")
        return errors, warnings, False

    def _resolve_mime(self, fmt: FileFormat | None, declared_mime: str | None) -> str:
        if declared_mime:
            return declared_mime.split(";", 1)[0].strip().lower()
        if fmt is not None:
            return MIME_TYPES[fmt]
        return "application/octet-stream"

    def _detect_encoding(self, content: bytes, fmt: FileFormat | None) -> str | None:
        bom = detect_bom_encoding(content)
        if bom is not None:
            return bom
        if fmt not in (FileFormat.TXT, FileFormat.RTF):
            return None
        try:
            content[:TEXT_SAMPLE_BYTES * 4].decode("utf-8")
            return "utf-8"
        except UnicodeDecodeError as exc:
            # A multi-byte sequence cut by the sample window still counts as UTF-8.
            if exc.start >= TEXT_SAMPLE_BYTES * 4 - 3:
                return "utf-8"
            return "latin-1"
