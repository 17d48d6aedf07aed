# -*- coding: utf-8 -*-
"""
Structured logging setup.

Production logs are one JSON object per line on stdout. Each record carries
the id of the HTTP request being served, so the steps of one upload or one
viewer session can be correlated across modules; handlers add
``content_id`` / ``tracking_link_id`` through ``extra``.
"""
import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from . import __version__
from .config import settings
from .middleware import get_request_id

SERVICE_NAME = "content-platform"

NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "aiosqlite", "multipart")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s"


class RequestIDFilter(logging.Filter):
    """Add request_id to log records."""

    def filter(self, record):
        record.request_id = get_request_id() or "-"
        return True


class PlatformJsonFormatter(JsonFormatter):
    """JSON lines with level, logger, service version and request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = SERVICE_NAME
        log_record["version"] = __version__
        log_record["request_id"] = getattr(record, "request_id", "-")


def build_formatter(log_format: str) -> logging.Formatter:
    """``text`` for local development, anything else yields JSON."""
    if log_format == "text":
        return logging.Formatter(TEXT_FORMAT)
    return PlatformJsonFormatter("%(message)s", timestamp="@timestamp")


def setup_logging(level: str | None = None, log_format: str | None = None) -> logging.Logger:
    """Install a single stdout handler on the root logger, replacing existing ones."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level or settings.LOG_LEVEL))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(log_format or settings.LOG_FORMAT))
    handler.addFilter(RequestIDFilter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
