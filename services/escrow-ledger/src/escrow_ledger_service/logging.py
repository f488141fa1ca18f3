"""Logging setup for the escrow ledger service."""

from __future__ import annotations

import logging

from service_commons.logging import setup_logging as setup_service_logging

# Module loggers are created with __name__, so they all live under this namespace.
SERVICE_LOGGER_NAME = "escrow_ledger_service"


def setup_logging(level: str, log_directory: str) -> logging.Logger:
    """Configure structured JSON logging for the service logger namespace."""
    return setup_service_logging(level, SERVICE_LOGGER_NAME, log_directory)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module inside this service."""
    return logging.getLogger(name)
