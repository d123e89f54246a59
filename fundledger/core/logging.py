"""JSON logging setup shared by the API, the webhook worker and the scheduled jobs."""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "fundledger"


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """Stamp every record with the service name and environment."""

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("service", SERVICE_NAME)
        log_record.setdefault("env", os.getenv("APP_ENV", "dev").lower())


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging with a JSON formatter.

    The level defaults to ``LOG_LEVEL`` (``INFO`` when unset). Webhook payloads
    are logged through ``extra`` so they land as structured fields.
    """

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    handler = logging.StreamHandler()
    handler.setFormatter(ServiceJsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root_logger.addHandler(handler)
    # httpx logs every request line at INFO; gateway calls are logged by the client.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["SERVICE_NAME", "ServiceJsonFormatter", "setup_logging", "get_logger"]
