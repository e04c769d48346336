"""
Structured logging for the feedlot ETL engine

Module loggers are children of the ``feedlot_etl`` package logger, which owns
the only handler. Run, file and organization identifiers are passed as JSON
fields through ``extra=``.
"""
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import TextIO

from pythonjsonlogger import jsonlogger

ROOT_LOGGER_NAME = "feedlot_etl"
SERVICE_NAME = "feedlot-etl"

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(threadName)s] %(message)s"


class EtlJsonFormatter(jsonlogger.JsonFormatter):
    """Adds UTC timestamp, level, logger, service and thread name to each record."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault(
            "timestamp",
            datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds")
        )
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = SERVICE_NAME
        log_record["thread"] = record.threadName


def _resolve_level(level: str | None) -> int:
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(
    level: str | None = None,
    format_type: str | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Calling it again replaces the handler, so settings loaded after import
    (e.g. by the CLI) take effect for every module logger.

    Args:
        level: Level name; LOG_LEVEL or INFO when omitted
        format_type: "json" or "text"; LOG_FORMAT or "json" when omitted
        stream: Output stream, stdout by default
    """
    format_type = format_type or os.getenv("LOG_FORMAT", "json")

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(_resolve_level(level))
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    if format_type == "json":
        handler.setFormatter(EtlJsonFormatter("%(message)s"))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    return root


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Logger for a module, configuring the package logger on first use.

    Names outside the package are nested under it so they share its handler.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        setup_logger()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


class log_operation:
    """
    Logs start, completion and failure of a step with its duration in ms.

    Usage:
        with log_operation("Spark CSV read", logger=logger, separator=";"):
            ...
    """

    def __init__(self, operation_name: str, logger: logging.Logger | None = None, **extra_fields):
        self.operation_name = operation_name
        self.logger = logger or get_logger()
        self.extra_fields = extra_fields
        self.started: float | None = None

    @property
    def duration_ms(self) -> int:
        if self.started is None:
            return 0
        return int((time.monotonic() - self.started) * 1000)

    def __enter__(self):
        self.started = time.monotonic()
        self.logger.debug(
            f"{self.operation_name} started",
            extra={"operation": self.operation_name, **self.extra_fields}
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        fields = {"operation": self.operation_name, "duration_ms": self.duration_ms, **self.extra_fields}
        if exc_type is None:
            self.logger.info(f"{self.operation_name} completed", extra=fields)
        else:
            self.logger.warning(
                f"{self.operation_name} failed: {exc_val}",
                extra={**fields, "error_type": exc_type.__name__}
            )
        return False
