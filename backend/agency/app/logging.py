"""Logging configuration helpers for the agency backend."""
from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _resolve_log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return logging.INFO


def setup_logging(*, level: str | int | None = None) -> None:
    """Route stdlib and structlog output to stdout as JSON lines.

    Existing root handlers are kept (test runners install their own) and only
    have their level aligned.
    """

    resolved = _resolve_log_level(level or os.getenv("LOG_LEVEL"))
    root = logging.getLogger()
    if root.handlers:
        for handler in root.handlers:
            handler.setLevel(resolved)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
    root.setLevel(resolved)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        cache_logger_on_first_use=True,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        wrapper_class=structlog.make_filtering_bound_logger(resolved),
    )


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def mask_email(email: str | None) -> str | None:
    """Return ``email`` with most of the local part hidden, for log output."""

    if not email:
        return email
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    visible = local[:2] if len(local) > 2 else local[:1]
    return f"{visible}***@{domain}"


__all__ = [
    "bind_contextvars",
    "clear_contextvars",
    "get_logger",
    "mask_email",
    "setup_logging",
]
