"""Logging for the Hyperbolic x402 proxy.

Emits structured JSON log lines to stdout. The logger is shared by all
requests; records carry the request correlation id where one exists.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

logger = logging.getLogger("gateway")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str = "info") -> None:
    """Configure the gateway logger with a stdout handler.

    Args:
        level: Verbosity name (debug, info, warn, error).
    """
    logger.setLevel(_LEVELS.get(level.lower(), logging.INFO))

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        logger.addHandler(stdout_handler)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a single structured event as one JSON line.

    Args:
        event: Short event label (e.g. "payment_processed").
        level: stdlib logging level for the record.
        **fields: Extra key/value pairs; None values are dropped.
    """
    record: Dict[str, Any] = {"timestamp": utc_timestamp(), "event": event}
    record.update({k: v for k, v in fields.items() if v is not None})
    logger.log(level, json.dumps(record, default=str))
