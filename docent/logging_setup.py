"""Structured logging configuration shared by the scripts."""
import logging
import sys

import structlog

from docent import config


def configure_logging(level: str = None) -> None:
    """Configure stdlib logging and structlog with JSON output.

    Args:
        level: Log level name (default from config)
    """
    level = (level or config.LOG_LEVEL).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
