"""Tesseract OCR over the images embedded in PDF pages.

pypdf decodes the page images into Pillow images; pytesseract drives the
tesseract binary, which must be installed on the host.
"""
from __future__ import annotations

import io
from typing import Sequence

import pytesseract
from loguru import logger
from PIL import Image
from pypdf import PdfReader

from ingestion.app.ports.ocr_engine import OcrUnavailableError


class TesseractOcrEngine:
    def __init__(self, page_separator: str = "\n\n") -> None:
        self._page_separator = page_separator
        self._available: bool | None = None

    def available(self) -> bool:
        if self._available is None:
            try:
                pytesseract.get_tesseract_version()
                self._available = True
            except pytesseract.TesseractNotFoundError as exc:
                logger.warning("tesseract not available: {}", exc)
                self._available = False
        return self._available

    def extract_text(
        self,
        content: bytes,
        languages: Sequence[str],
        *,
        max_pages: int | None = None,
    ) -> str:
        if not self.available():
            raise OcrUnavailableError("tesseract binary not found")
        lang = "+".join(languages) or "eng"
        reader = PdfReader(io.BytesIO(content))
        pages = reader.pages if max_pages is None else reader.pages[:max_pages]
        texts: list[str] = []
        for page in pages:
            for image_file in page.images:
                image = image_file.image
                if image is None:
                    image = Image.open(io.BytesIO(image_file.data))
                try:
                    text = pytesseract.image_to_string(image, lang=lang)
                except pytesseract.TesseractError as exc:
                    if "Failed loading language" in str(exc):
                        raise OcrUnavailableError(f"tesseract language data missing for {lang}") from exc
                    raise
                if text.strip():
                    texts.append(text.strip())
        return self._page_separator.join(texts)
