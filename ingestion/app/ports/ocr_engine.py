"""Port: optical character recognition. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol, Sequence


class OcrUnavailableError(Exception):
    """Raised when the OCR backend (binary or language data) is not installed."""


class OcrEngine(Protocol):
    def available(self) -> bool: ...

    def extract_text(
        self,
        content: bytes,
        languages: Sequence[str],
        *,
        max_pages: int | None = None,
    ) -> str:
        """Recognise text in the page images of a PDF. Blocking."""
        ...
