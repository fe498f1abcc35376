"""Database models and helpers for channel credential storage."""

from . import models, session
from .models import Channel, RefreshJobRecord, TenantMembership, metadata
from .session import create_engine_from_dsn, create_engine_from_settings, init_db, session_scope

__all__ = [
    "models",
    "session",
    "Channel",
    "RefreshJobRecord",
    "TenantMembership",
    "metadata",
    "create_engine_from_dsn",
    "create_engine_from_settings",
    "init_db",
    "session_scope",
]
