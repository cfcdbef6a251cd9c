"""DOCX processor backed by python-docx.

Page count is not part of the WordprocessingML body; it is read from the
`Pages` element of `docProps/app.xml` when the producer wrote one.
"""
from __future__ import annotations

import io
import zipfile
from xml.etree import ElementTree

import docx

from ingestion.app.constants import ErrorCode, FileFormat
from ingestion.app.domain.models import FileMetadata
from ingestion.app.domain.processors.base import BaseFileProcessor
from ingestion.app.schemas.options import ProcessingOptions

APP_PROPERTIES_PART = "docProps/app.xml"
EXTENDED_PROPERTIES_NS = "{http://schemas.openxmlformats.org/officeDocument/2006/extended-properties}"


def read_page_count(content: bytes) -> int | None:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            if APP_PROPERTIES_PART not in archive.namelist():
                return None
            root = ElementTree.fromstring(archive.read(APP_PROPERTIES_PART))
    except (zipfile.BadZipFile, ElementTree.ParseError, KeyError):
        return None
    node = root.find(f"{EXTENDED_PROPERTIES_NS}Pages")
    if node is None or not (node.text or "").strip().isdigit():
        return None
    return int(node.text.strip())


class DocxFileProcessor(BaseFileProcessor):
    name = "DocxFileProcessor"
    formats = frozenset({FileFormat.DOCX})
    signature = b"PK\x03\x04"
    error_code = ErrorCode.DOCX_PROCESSING_ERROR

    def _extract(
        self, content: bytes, options: ProcessingOptions
    ) -> tuple[str, FileMetadata, list[str]]:
        document = docx.Document(io.BytesIO(content))
        lines = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    lines.append("\t".join(cells))
        text = "\n".join(lines)
        return text, self._metadata(document, content, text), []

    def _read_metadata(self, content: bytes) -> FileMetadata:
        document = docx.Document(io.BytesIO(content))
        text = "\n".join(p.text for p in document.paragraphs)
        return self._metadata(document, content, text)

    def _metadata(self, document, content: bytes, text: str) -> FileMetadata:
        props = document.core_properties
        keywords = [k.strip() for k in (props.keywords or "").replace(";", ",").split(",") if k.strip()]
        custom: dict[str, object] = {}
        if props.revision:
            custom["revision"] = props.revision
        if props.last_modified_by:
            custom["last_modified_by"] = props.last_modified_by
        return FileMetadata.for_text(
            text,
            title=props.title or None,
            author=props.author or None,
            subject=props.subject or None,
            creator=props.author or None,
            creation_date=props.created,
            modification_date=props.modified,
            page_count=read_page_count(content),
            language=props.language or None,
            keywords=keywords,
            custom_properties=custom,
        )
