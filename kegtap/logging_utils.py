"""Structured logging helpers shared across the application."""

from __future__ import annotations

import contextvars
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

LOGGER_NAME = "kegtap"
_INSTALL_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "kegtap_install_id",
    default="-",
)


def build_install_id(value: str | None = None) -> str:
    """Return a normalized install id, generating one when empty."""
    candidate = (value or "").strip()
    if not candidate:
        return uuid4().hex[:12]
    return candidate[:64]


def set_install_id(install_id: str) -> contextvars.Token[str]:
    """Store the install id in the current context."""
    return _INSTALL_ID.set(install_id)


def reset_install_id(token: contextvars.Token[str]) -> None:
    """Reset context to the previous install id."""
    _INSTALL_ID.reset(token)


def get_install_id() -> str:
    """Return the current install id from context."""
    return _INSTALL_ID.get()


@contextmanager
def install_context(install_id: str | None = None) -> Iterator[str]:
    """Bind an install id for the duration of one pipeline run."""
    resolved = build_install_id(install_id)
    token = set_install_id(resolved)
    try:
        yield resolved
    finally:
        reset_install_id(token)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: Any | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log event with install context fields."""
    payload: dict[str, Any] = {
        "event": event,
        "install_id": get_install_id(),
    }
    payload.update({key: value for key, value in fields.items() if value is not None})
    logger.log(level, event, extra=payload, exc_info=exc_info)


class _InstallIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "install_id"):
            record.install_id = get_install_id()
        return True


class _EventFormatter(logging.Formatter):
    _RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
        "message",
        "asctime",
        "event",
        "install_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._RESERVED and not key.startswith("_")
        }
        if not fields:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{base} {rendered}"


class _StderrHandler(logging.StreamHandler):
    """Write to whatever ``sys.stderr`` is at emit time."""

    def __init__(self) -> None:
        logging.Handler.__init__(self)

    @property
    def stream(self):  # type: ignore[override]
        return sys.stderr


def configure_logging(*, verbose: bool = False) -> None:
    """Attach a stderr handler to the package logger for CLI use."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if any(isinstance(handler, _StderrHandler) for handler in logger.handlers):
        return
    handler = _StderrHandler()
    handler.addFilter(_InstallIdFilter())
    handler.setFormatter(_EventFormatter("%(levelname)s %(name)s [%(install_id)s] %(message)s"))
    logger.addHandler(handler)
