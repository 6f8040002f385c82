"""Structured Logging.

Provides structured JSON logging, user/tax-year context binding,
and performance timing for the tax-lot ledger.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import LogContext, generate_request_id, get_context_dict
from src.logging_config.performance import PerformanceTimer, log_performance
from src.logging_config.setup import configure_logging

__all__ = [
    "LogContext",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "PerformanceTimer",
    "configure_logging",
    "generate_request_id",
    "get_context_dict",
    "log_performance",
]
