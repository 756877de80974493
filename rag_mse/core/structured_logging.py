"""Structured logging helpers (PII-safe)."""

import logging
import secrets
import time
from contextvars import ContextVar, Token
from typing import Any

CORRELATION_ID_HEADER = "X-Correlation-Id"

SENSITIVE_KEYS = frozenset(
    {
        "token",
        "password",
        "authorization",
        "cookie",
        "smtp_password",
        "smtp_user",
    }
)
REDACTED = "[REDACTED]"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """Millisecond timestamp plus a short random suffix."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def start_correlation_context(correlation_id: str | None = None) -> Token:
    """Bind a correlation id to the current context and return the reset token."""
    return _CORRELATION_ID.set(correlation_id or generate_correlation_id())


def reset_correlation_context(token: Token) -> None:
    """Restore the previous correlation id."""
    _CORRELATION_ID.reset(token)


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


def build_log_context(
    *,
    user_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """Return a PII-safe log context dict.

    Empty values are dropped and sensitive keys are redacted. The current
    correlation id is attached when one is bound.
    """
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    for key, value in fields.items():
        if value is None or value == "":
            continue
        context[key] = REDACTED if key.lower() in SENSITIVE_KEYS else value
    correlation_id = get_correlation_id()
    if correlation_id:
        context["correlation_id"] = correlation_id
    return context


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def mask_token(token: str | None) -> str:
    if not token:
        return ""
    return f"{token[:6]}..."


class RedactingFilter(logging.Filter):
    """Blank sensitive attributes passed through ``extra=``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in SENSITIVE_KEYS:
            if key in record.__dict__:
                setattr(record, key, REDACTED)
        return True


def attach_redacting_filter(logger: logging.Logger | None = None) -> None:
    """
    Add a RedactingFilter to every handler of ``logger`` (root by default).

    Logger filters only see records logged on that exact logger, not ones
    propagated from children, so redaction has to sit on the handlers.
    """
    logger = logger or logging.getLogger()
    for handler in logger.handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())


def configure_logging(level: int = logging.INFO) -> None:
    """basicConfig plus redaction on the resulting root handlers."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    attach_redacting_filter()
