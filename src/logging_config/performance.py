"""Performance Logging.

Timing for ledger operations. ``PerformanceTimer`` measures a block and
logs it once on exit; ``log_performance`` runs a whole call inside one.
"""

import functools
import logging
import time
from typing import Any, Callable, Optional

from src.settings import get_settings

logger = logging.getLogger(__name__)


class PerformanceTimer:
    """Times a block of code and logs the outcome on exit.

    Failures log at ERROR, runs at or over the threshold at WARNING and
    everything else at DEBUG. ``details`` is attached as ``extra_data``.

    Args:
        operation_name: Name used in the log message.
        threshold_ms: Slow threshold. Defaults to TAXLOTS_SLOW_OPERATION_MS.
        log: Logger to write to. Defaults to this module's logger.
        details: Short free-form context, e.g. ``"user_1:2024"``.

    Example:
        with PerformanceTimer("build_report", details="user_1:2024") as timer:
            report = builder.build_report("user_1", 2024)
        timer.duration_ms
    """

    def __init__(
        self,
        operation_name: str,
        threshold_ms: Optional[float] = None,
        log: Optional[logging.Logger] = None,
        details: Optional[str] = None,
    ):
        self.operation_name = operation_name
        if threshold_ms is None:
            threshold_ms = get_settings().slow_operation_ms
        self.threshold_ms = threshold_ms
        self.log = log or logger
        self.details = details
        self.started: float = 0.0
        self.duration_ms: float = 0.0

    def __enter__(self) -> "PerformanceTimer":
        self.started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = (time.perf_counter() - self.started) * 1000
        extra: dict[str, Any] = {"duration_ms": round(self.duration_ms, 2)}
        if self.details:
            extra["extra_data"] = self.details

        if exc_type is not None:
            self.log.error(
                "%s failed after %.1fms: %s",
                self.operation_name, self.duration_ms, exc_type.__name__, extra=extra,
            )
        elif self.duration_ms >= self.threshold_ms:
            self.log.warning(
                "Slow operation: %s took %.1fms",
                self.operation_name, self.duration_ms, extra=extra,
            )
        else:
            self.log.debug(
                "%s completed in %.1fms", self.operation_name, self.duration_ms, extra=extra,
            )


def log_performance(threshold_ms: Optional[float] = None) -> Callable:
    """Decorator timing every call with a ``PerformanceTimer``.

    Logs to the decorated function's module logger. The threshold is
    resolved per call, so settings changes apply without re-importing.

    Example:
        @log_performance()
        def recompute_summary(self, user_id, tax_year):
            ...
    """

    def decorator(func: Callable) -> Callable:
        func_logger = logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with PerformanceTimer(func.__qualname__, threshold_ms, log=func_logger):
                return func(*args, **kwargs)

        return wrapper

    return decorator
