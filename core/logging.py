"""
Logging configuration for the API and the headless pipeline runner
"""

import json
import logging
import sys
from typing import Optional

from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are noisy below WARNING
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx")


class PipelineFormatter(logging.Formatter):
    """
    Appends the structured context of a pipeline failure.

    Ingestion, refresh and job failures log with
    extra={"error_context": exc.to_dict()}; without this the context would
    only reach handlers that know to look for it.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = getattr(record, "error_context", None)
        if context:
            message = f"{message} | context={json.dumps(context, default=str, sort_keys=True)}"
        return message


def setup_logging(level: Optional[str] = None):
    """Configure application logging (level defaults to LOG_LEVEL)"""
    level_name = (level or settings.LOG_LEVEL).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(PipelineFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), handlers=[handler])

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured at {level_name} level")
