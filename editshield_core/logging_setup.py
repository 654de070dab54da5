"""
Logging Setup
=============

Opt-in logging configuration for hosts embedding EditShield:
- Console handler with a plain text format
- JSON-lines formatter for log shippers
- Optional rotating file handler

The library itself only creates module loggers under ``editshield_core``;
nothing here runs unless the host calls ``configure_logging``.

Author: jetgause
Created: 2025-12-14
"""

import json
import logging
import logging.handlers
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

ROOT_LOGGER = "editshield_core"
TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOG_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5


# Attributes passed through ``logger.x(..., extra={...})`` that are lifted into
# the ``context`` object of a JSON line
CONTEXT_FIELDS = ("source", "identifier", "directive", "blocked_uri", "threat_type", "severity")


@dataclass
class SecurityLogLine:
    """One JSON line as written to the console or log file."""
    time: str
    level: str
    logger: str
    message: str
    location: str
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, str]] = None

    def to_json(self) -> str:
        payload = asdict(self)
        if payload["error"] is None:
            del payload["error"]
        return json.dumps(payload, default=str)


class JSONFormatter(logging.Formatter):
    """Renders records as JSON lines; known ``extra`` fields go under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        context = {
            name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)
        }
        line = SecurityLogLine(
            time=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            location=f"{record.module}:{record.funcName}:{record.lineno}",
            context=context,
        )
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            line.error = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        return line.to_json()


def configure_logging(level: Union[str, int] = "INFO", json_format: bool = False,
                      log_file: Optional[str] = None,
                      logger_name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Attach handlers to the EditShield logger.

    Calling again replaces the handlers installed by a previous call.

    Args:
        level: Level name or number
        json_format: Use ``JSONFormatter`` on the console instead of text
        log_file: Path for a rotating JSON-lines log file

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_editshield_handler", False):
            logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    console_handler._editshield_handler = True
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._editshield_handler = True
        logger.addHandler(file_handler)

    return logger
