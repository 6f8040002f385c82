"""Logging Context.

Thread-safe logging context using contextvars for binding the user,
tax year and request id of the current operation to log entries.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Context variables for operation-scoped data
_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_user_id_var: ContextVar[str] = ContextVar("user_id", default="")
_tax_year_var: ContextVar[Optional[int]] = ContextVar("tax_year", default=None)
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_request_id() -> str:
    """Generate a unique request ID using UUID4."""
    return str(uuid.uuid4())


def get_request_id() -> str:
    """Get the current request ID from context."""
    return _request_id_var.get()


def get_user_id() -> str:
    """Get the current user ID from context."""
    return _user_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    req_id = _request_id_var.get()
    if req_id:
        ctx["request_id"] = req_id
    user_id = _user_id_var.get()
    if user_id:
        ctx["user_id"] = user_id
    tax_year = _tax_year_var.get()
    if tax_year is not None:
        ctx["tax_year"] = tax_year
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class LogContext:
    """Context manager binding an operation's user and year to log entries.

    Nested contexts inherit the outer request id unless given their own,
    and restore the outer values on exit.

    Example:
        with LogContext(user_id="user_1", tax_year=2024):
            logger.info("rebuilding summary")  # includes user_id, tax_year
    """

    user_id: str = ""
    tax_year: Optional[int] = None
    request_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list[Token] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = _request_id_var.get() or generate_request_id()

    def __enter__(self) -> "LogContext":
        self._tokens = [
            _request_id_var.set(self.request_id),
            _user_id_var.set(self.user_id or _user_id_var.get()),
            _tax_year_var.set(self.tax_year if self.tax_year is not None else _tax_year_var.get()),
            _extra_context_var.set({**_extra_context_var.get(), **self.extra}),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        request_token, user_token, year_token, extra_token = self._tokens
        _extra_context_var.reset(extra_token)
        _tax_year_var.reset(year_token)
        _user_id_var.reset(user_token)
        _request_id_var.reset(request_token)
        self._tokens = []

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the context."""
        current = _extra_context_var.get()
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
