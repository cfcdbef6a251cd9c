from typing import Any

from pydantic import BaseModel, Field

from ingestion.app.constants import JobPriority


class ProcessingOptions(BaseModel):
    extract_text: bool = True
    extract_metadata: bool = True
    enable_ocr: bool | None = None
    ocr_language: str | None = None
    max_pages: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)
    retry_attempts: int | None = Field(default=None, ge=0)
    priority: JobPriority = JobPriority.NORMAL
    extra: dict[str, Any] = Field(default_factory=dict)

    def adjusted_for_retry(self) -> "ProcessingOptions":
        """Copy without the page limit, for the retry-with-adjusted-options fallback.

        The longer time budget is not an option: the pipeline runs the whole
        fallback chain under twice the job timeout.
        """
        return self.model_copy(update={"max_pages": None})
