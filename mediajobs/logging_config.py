import logging
import sys
from typing import Optional
import structlog

from mediajobs.config import settings


def configure_logging(json_logs: Optional[bool] = None, level: Optional[str] = None):
    """Configure structlog for the API process and workers.

    JSON lines in production (settings.log_json), coloured console output otherwise.
    """
    json_logs = settings.log_json if json_logs is None else json_logs
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
