"""loguru sink configuration for the worker process."""
from __future__ import annotations

import sys

from loguru import logger

from ingestion.app.config.settings import Settings


def configure_logging(settings: Settings) -> None:
    """Replace the default sink with a single stderr sink at the configured level.

    With `log_json` set, records are serialized so bound fields (event, job_id, ...)
    reach the aggregator as structured data.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        serialize=settings.log_json,
        backtrace=False,
        diagnose=False,
    )
