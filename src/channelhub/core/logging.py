"""Structlog configuration helpers."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog

_CONFIGURED = False

_REDACTED_KEYS = frozenset(
    {"access_token", "accessToken", "refresh_token", "refreshToken", "master_key", "secret"}
)


def _redact_secrets(
    _: Any,
    __: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Mask token-bearing keys that slipped into a log event."""

    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog with JSON output and secret redaction."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the provided name."""

    configure_logging()
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)
