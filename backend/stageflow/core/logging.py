"""Logging configuration."""

import logging
import sys

from stageflow.core.config import settings


def configure_logging(level: str = None) -> None:
    """Configure root logging once at application startup."""
    log_level = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    # Engine echo goes through its own logger; keep it quiet unless asked for.
    if not settings.SQL_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
