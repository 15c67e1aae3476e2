"""Logging configuration utilities for the Load Balancer service."""
import logging
import os
from typing import Optional

# httpx logs every upstream call at INFO; the balancer already writes one line per request
_CHATTY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging from ``level`` or the LOG_LEVEL environment variable."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
