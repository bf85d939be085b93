"""Structured logging utilities."""

import json
import logging
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_format: str = LOG_FORMAT) -> None:
    """Setup process-wide logging.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        log_format: Format string passed to logging.basicConfig
    """
    logging.basicConfig(level=getattr(logging, level.upper()), format=log_format)

    # websockets logs every frame at DEBUG
    if level.upper() != "DEBUG":
        logging.getLogger("websockets").setLevel(logging.WARNING)


def log_event(event_type: str, data: dict[str, Any], logger: logging.Logger | None = None) -> None:
    """Log structured event.

    Args:
        event_type: Event type identifier
        data: Event data dictionary
        logger: Logger to emit on (root logger if omitted)
    """
    (logger or logging.getLogger()).info(json.dumps({"event": event_type, **data}, default=str))
