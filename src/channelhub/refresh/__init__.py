"""Proactive OAuth token refresh: engine, job queue and worker."""

from .engine import (
    RefreshService,
    TokenRefresher,
    has_refresh_token,
    minutes_until_expiration,
    needs_refresh,
)
from .models import (
    BatchRefreshReport,
    ChannelRefreshOutcome,
    InvalidTransitionError,
    QueueStatus,
    RefreshJob,
    RefreshResult,
    RefreshStatus,
    ScheduleReport,
    TokenExpirationInfo,
)
from .queue import (
    InMemoryRefreshJobStore,
    InMemoryRefreshQueue,
    RedisRefreshJobStore,
    RedisRefreshQueue,
    RefreshJobStore,
    RefreshQueueBackend,
    RefreshScheduler,
    SqlRefreshJobStore,
)
from .worker import RefreshWorker

__all__ = [
    "RefreshService",
    "TokenRefresher",
    "has_refresh_token",
    "minutes_until_expiration",
    "needs_refresh",
    "BatchRefreshReport",
    "ChannelRefreshOutcome",
    "InvalidTransitionError",
    "QueueStatus",
    "RefreshJob",
    "RefreshResult",
    "RefreshStatus",
    "ScheduleReport",
    "TokenExpirationInfo",
    "InMemoryRefreshJobStore",
    "InMemoryRefreshQueue",
    "RedisRefreshJobStore",
    "RedisRefreshQueue",
    "RefreshJobStore",
    "RefreshQueueBackend",
    "RefreshScheduler",
    "SqlRefreshJobStore",
    "RefreshWorker",
]
