"""Core configuration, domain types, errors and logging."""

from . import config, domain, errors, logging
from .config import AppSettings
from .domain import ChannelStatus, ChannelType
from .logging import configure_logging, get_logger

__all__ = [
    "config",
    "domain",
    "errors",
    "logging",
    "AppSettings",
    "ChannelStatus",
    "ChannelType",
    "configure_logging",
    "get_logger",
]
