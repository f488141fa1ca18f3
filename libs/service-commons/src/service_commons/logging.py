"""
JSON-lines logging shared by the ledger services.

Every record becomes one JSON object carrying the service name, the level, the
logger, the message and whatever context the caller passed through ``extra=``.
Context keys that hold credentials or bank details are masked before they are
written, so handlers never see them in clear text.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Any

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Context keys whose values are masked in every record.
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "account_number",
        "authorization",
        "secret_key",
        "token",
        "webhook_secret_hash",
    }
)

_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "taskName"}
)


def mask_value(value: Any) -> str:
    """Keep the last four characters of a value and star out the rest."""
    text = str(value)
    if len(text) <= 4:
        return "*" * len(text)
    return "*" * (len(text) - 4) + text[-4:]


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Return the ``extra=`` fields of a record with sensitive keys masked."""
    context: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        context[key] = mask_value(value) if key.lower() in SENSITIVE_KEYS else value
    return context


class JSONFormatter(logging.Formatter):
    """Render records as single-line JSON objects tagged with the service name."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(
                timespec="milliseconds"
            ),
            "service": self._service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = record_context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class DailyLogFileHandler(TimedRotatingFileHandler):
    """File handler writing to ``<directory>/YYYY-MM-DD.log``, switching files at UTC midnight."""

    def __init__(self, directory: str) -> None:
        self._directory = directory
        super().__init__(self._path_for_today(), when="midnight", utc=True)

    def _path_for_today(self) -> str:
        return os.path.join(self._directory, datetime.now(tz=UTC).strftime("%Y-%m-%d") + ".log")

    def doRollover(self) -> None:  # noqa: N802
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self.baseFilename = os.path.abspath(self._path_for_today())
        if not self.delay:
            self.stream = self._open()
        self.rolloverAt = self.computeRollover(int(datetime.now(tz=UTC).timestamp()))


def setup_logging(level: str, service_name: str, log_directory: str) -> logging.Logger:
    """
    Attach JSON handlers for stdout and the daily log file to ``service_name``.

    Module loggers named ``<service_name>.<module>`` inherit the handlers. Calling
    this again replaces the handlers rather than stacking them.

    Raises:
        ValueError: If level is not a known log level
    """
    level_upper = level.upper()
    if level_upper not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}")

    logger = logging.getLogger(service_name)
    logger.setLevel(level_upper)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter(service_name)
    os.makedirs(log_directory, exist_ok=True)
    for handler in (logging.StreamHandler(sys.stdout), DailyLogFileHandler(log_directory)):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    return logger
