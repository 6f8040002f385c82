"""Logging Setup.

One-call logging configuration for the tax-lot ledger. JSON lines for
production, a readable single-line format for the CLI. The CLI logs to
stderr so that stdout carries only its JSON result.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from src.logging_config.config import LogFormat, LoggingConfig
from src.logging_config.context import get_context_dict

# Attributes callers may attach with ``extra=`` that formatters emit.
EXTRA_FIELDS = ("duration_ms", "extra_data")

QUIET_LOGGERS = ("sqlalchemy.engine", "alembic")


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Bound context plus known ``extra`` attributes of a record."""
    fields = dict(get_context_dict())
    for key in EXTRA_FIELDS:
        if hasattr(record, key):
            fields[key] = getattr(record, key)
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Carries timestamp, level, logger, message and service, then the
    caller location, the bound user/tax-year context, timing extras and
    any exception.
    """

    def __init__(self, service_name: str = "taxlots", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if self.include_caller:
            entry.update(module=record.module, function=record.funcName, line=record.lineno)
        entry.update(_record_fields(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single readable line per record, level colored on terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        clock = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        line = f"{clock} {level} {record.name}: {record.getMessage()}"
        fields = _record_fields(record)
        if fields:
            line += " [" + ", ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    config: Optional[LoggingConfig] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Install one handler on the root logger.

    Args:
        config: Logging configuration. Defaults to
            ``LoggingConfig.from_settings()``, which honours
            TAXLOTS_LOG_LEVEL and TAXLOTS_LOG_FORMAT.
        stream: Output stream. Defaults to stderr.
    """
    config = config or LoggingConfig.from_settings()
    stream = stream or sys.stderr

    if config.format == LogFormat.JSON:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=config.service_name,
            include_caller=config.include_caller,
        )
    else:
        formatter = ConsoleFormatter(use_color=stream.isatty())

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(config.level.value)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
