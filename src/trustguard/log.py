"""
trustguard.log — Structured JSON logging with per-user context.

The library itself only calls ``logging.getLogger(__name__)``; applications
opt in to JSON output with ``setup_structured_logging()``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

user_id_var: ContextVar[str] = ContextVar("user_id", default="")


class UserIdFilter(logging.Filter):
    def filter(self, record):
        record.user_id = user_id_var.get("")
        return True


@contextmanager
def bind_user(user_id: str) -> Iterator[None]:
    """Attach ``user_id`` to every log record emitted inside the block."""
    token = user_id_var.set(user_id)
    try:
        yield
    finally:
        user_id_var.reset(token)


def setup_structured_logging(level: str = "INFO") -> logging.Logger:
    """Configure JSON structured logging for the ``trustguard`` logger tree."""
    from pythonjsonlogger.json import JsonFormatter

    logger = logging.getLogger("trustguard")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(user_id)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
        handler.setFormatter(formatter)
        handler.addFilter(UserIdFilter())
        logger.addHandler(handler)

    return logger
