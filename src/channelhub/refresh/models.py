"""Refresh job state machine and the reports produced by the refresh engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from channelhub.adapters.errors import AdapterError
from channelhub.core.domain import utcnow
from channelhub.core.errors import ConflictError


class RefreshStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


OPEN_STATUSES = frozenset({RefreshStatus.PENDING, RefreshStatus.IN_PROGRESS})


class InvalidTransitionError(ConflictError):
    """Raised when a refresh job is moved along an edge the state machine lacks."""

    def __init__(self, job_id: str, current: RefreshStatus, action: str) -> None:
        super().__init__(
            f"cannot {action} a refresh job in state {current.value}",
            details={"job_id": job_id, "status": current.value, "action": action},
        )


def make_job_id(channel_id: str, now: datetime | None = None) -> str:
    moment = now or utcnow()
    return f"refresh_{channel_id}_{int(moment.timestamp() * 1000)}"


class RefreshJob(BaseModel):
    """One queued attempt-series to renew a single channel's token."""

    id: str
    channel_id: str
    tenant_id: str
    status: RefreshStatus = RefreshStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    run_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: datetime | None = None
    attempt_count: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    last_error_retryable: bool = False
    channel_snapshot: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        channel_id: str,
        tenant_id: str,
        *,
        snapshot: dict[str, Any] | None = None,
        delay: timedelta = timedelta(0),
        max_attempts: int = 3,
        now: datetime | None = None,
    ) -> RefreshJob:
        moment = now or utcnow()
        return cls(
            id=make_job_id(channel_id, moment),
            channel_id=channel_id,
            tenant_id=tenant_id,
            created_at=moment,
            run_at=moment + delay,
            max_attempts=max_attempts,
            channel_snapshot=snapshot or {},
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def can_retry(self) -> bool:
        return (
            self.status is RefreshStatus.FAILED
            and self.last_error_retryable
            and self.attempt_count < self.max_attempts
        )

    def _require(self, action: str, *allowed: RefreshStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(self.id, self.status, action)

    def start(self, now: datetime | None = None) -> None:
        self._require("start", RefreshStatus.PENDING)
        self.status = RefreshStatus.IN_PROGRESS
        self.attempt_count += 1
        self.last_attempt_at = now or utcnow()

    def succeed(self) -> None:
        self._require("complete", RefreshStatus.IN_PROGRESS)
        self.status = RefreshStatus.SUCCESS
        self.last_error = None
        self.last_error_retryable = False

    def fail(self, error: str, *, retryable: bool) -> None:
        self._require("fail", RefreshStatus.IN_PROGRESS)
        self.status = RefreshStatus.FAILED
        self.last_error = error
        self.last_error_retryable = retryable

    def skip(self, reason: str) -> None:
        # a job may discover the missing refresh token only once it runs
        self._require("skip", RefreshStatus.PENDING, RefreshStatus.IN_PROGRESS)
        self.status = RefreshStatus.SKIPPED
        self.last_error = reason
        self.last_error_retryable = False

    def requeue(self, run_at: datetime) -> None:
        if not self.can_retry:
            raise InvalidTransitionError(self.id, self.status, "requeue")
        self.status = RefreshStatus.PENDING
        self.run_at = run_at


@dataclass(slots=True)
class RefreshResult:
    """Outcome of one provider token refresh call."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    error: AdapterError | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, error: AdapterError) -> RefreshResult:
        return cls(success=False, error=error)


@dataclass(slots=True)
class TokenExpirationInfo:
    channel_id: str
    channel_type: str
    display_name: str
    expires_at: datetime
    minutes_until_expiration: int
    has_refresh_token: bool

    @property
    def requires_manual_reauth(self) -> bool:
        return not self.has_refresh_token

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "channel_type": self.channel_type,
            "display_name": self.display_name,
            "expires_at": self.expires_at.isoformat(),
            "minutes_until_expiration": self.minutes_until_expiration,
            "has_refresh_token": self.has_refresh_token,
            "requires_manual_reauth": self.requires_manual_reauth,
        }


@dataclass(slots=True)
class ChannelRefreshOutcome:
    """What happened when one channel was refreshed."""

    channel_id: str
    status: RefreshStatus
    error: str | None = None
    retryable: bool = False
    expires_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status is RefreshStatus.SUCCESS


@dataclass(slots=True)
class BatchRefreshReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def record(self, outcome: ChannelRefreshOutcome) -> None:
        self.processed += 1
        if outcome.status is RefreshStatus.SUCCESS:
            self.succeeded += 1
        elif outcome.status is RefreshStatus.SKIPPED:
            self.skipped += 1
            self.errors[outcome.channel_id] = outcome.error or "skipped"
        else:
            self.failed += 1
            self.errors[outcome.channel_id] = outcome.error or "refresh failed"


@dataclass(slots=True)
class ScheduleReport:
    scheduled: int = 0
    skipped: int = 0
    job_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class QueueStatus:
    counts: dict[str, int] = field(default_factory=dict)
    jobs: list[RefreshJob] = field(default_factory=list)

    def count(self, status: RefreshStatus) -> int:
        return self.counts.get(status.value, 0)
