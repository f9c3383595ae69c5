"""
Structured Logging Utilities

Console and JSON-lines logging for the provisioning subsystem.  Records carry
their ``stage`` and any other ``extra`` context into the JSON output, and
credential-looking fields are masked before anything is written.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

__all__ = ["LOGGER_NAME", "JSONFormatter", "mask_sensitive_data", "setup_logging"]

LOGGER_NAME = "ScannerBootstrap.Provisioning"

_SENSITIVE_KEYS = {"authorization", "token", "password", "secret", "api_key"}
_MASK = "***masked***"
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with credential fields masked.

    Examples:
        >>> mask_sensitive_data({"token": "secret", "stage": "resolve"})
        {'token': '***masked***', 'stage': 'resolve'}
    """

    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = _MASK
        elif isinstance(value, str) and value.lower().startswith("bearer "):
            masked[key] = _MASK
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
        }
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS or key in log_obj:
                continue
            if not isinstance(value, (str, int, float, bool, type(None))):
                value = str(value)
            log_obj[key] = value
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj))


def setup_logging(level: int = logging.INFO, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure console (and optional JSON-lines file) handlers.

    Calling it again replaces the handlers installed by a previous call.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_bootstrap_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._bootstrap_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler._bootstrap_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = True
    return logger
