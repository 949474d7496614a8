"""Logging configuration helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from .constants import TRAFFIC_LOGGER_NAME, TRAFFIC_TRUNCATE_AT

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_traffic: bool = True,
    log_network: bool = False,
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a file handler. When absent, only console logging is configured.
    log_traffic:
        When false, the command/event traffic log is silenced.
    log_network:
        When true, lower the logging level for verbose third-party libraries to aid diagnostics.
    """

    logging.captureWarnings(True)

    for handler in list(logging.getLogger().handlers):
        logging.getLogger().removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)

    logging.getLogger(TRAFFIC_LOGGER_NAME).disabled = not log_traffic

    if not log_network:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
        logging.getLogger("paho").setLevel(logging.WARNING)


def log_traffic(kind: str, message: Any) -> None:
    """Log a command or update flowing through the gateway on one line."""

    if isinstance(message, str):
        text = message
    elif isinstance(message, (bytes, bytearray)):
        text = bytes(message).decode("utf-8", errors="replace")
    else:
        text = json.dumps(message, default=str)

    if len(text) >= TRAFFIC_TRUNCATE_AT:
        text = f"{text[:TRAFFIC_TRUNCATE_AT]}..."

    logging.getLogger(TRAFFIC_LOGGER_NAME).info("%s UPDATE %s", kind.upper(), text)
