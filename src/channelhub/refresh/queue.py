"""Refresh job persistence, the due-time queue and the scheduler that feeds it."""

from __future__ import annotations

import asyncio
import heapq
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from prometheus_client import Gauge
from redis.asyncio import Redis
from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from channelhub.core.config import RefreshSettings
from channelhub.core.db.models import RefreshJobRecord
from channelhub.core.domain import utcnow
from channelhub.credentials.repository import ChannelRepository, require_channel

from .engine import RefreshService
from .models import OPEN_STATUSES, QueueStatus, RefreshJob, RefreshStatus, ScheduleReport

logger = logging.getLogger(__name__)

REFRESH_QUEUE_DEPTH = Gauge(
    "credential_refresh_queue_depth",
    "Refresh jobs waiting in the queue.",
)

TERMINAL_SUCCESS = frozenset({RefreshStatus.SUCCESS, RefreshStatus.SKIPPED})


def recurring_job_id(tenant_id: str) -> str:
    return f"recurring-refresh-{tenant_id}"


# -- job stores -------------------------------------------------------------


class RefreshJobStore(Protocol):
    async def get(self, job_id: str) -> RefreshJob | None:
        ...

    async def save(self, job: RefreshJob) -> None:
        ...

    async def find_open(self, channel_id: str) -> RefreshJob | None:
        ...

    async def list_jobs(self, tenant_id: str | None = None) -> list[RefreshJob]:
        ...

    async def delete(self, job_ids: Iterable[str]) -> int:
        ...


class InMemoryRefreshJobStore:
    """Process-local job store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._jobs: dict[str, RefreshJob] = {}

    async def get(self, job_id: str) -> RefreshJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def save(self, job: RefreshJob) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def find_open(self, channel_id: str) -> RefreshJob | None:
        for job in self._jobs.values():
            if job.channel_id == channel_id and job.is_open:
                return job.model_copy(deep=True)
        return None

    async def list_jobs(self, tenant_id: str | None = None) -> list[RefreshJob]:
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if tenant_id is None or job.tenant_id == tenant_id
        ]

    async def delete(self, job_ids: Iterable[str]) -> int:
        removed = 0
        for job_id in job_ids:
            if self._jobs.pop(job_id, None) is not None:
                removed += 1
        return removed


class RedisRefreshJobStore:
    """Jobs serialised as JSON in one Redis hash keyed by job id."""

    def __init__(self, *, redis: Redis, key: str = "oauth-refresh:jobs") -> None:
        self._redis = redis
        self._key = key

    async def get(self, job_id: str) -> RefreshJob | None:
        raw = await self._redis.hget(self._key, job_id)
        return RefreshJob.model_validate_json(raw) if raw is not None else None

    async def save(self, job: RefreshJob) -> None:
        await self._redis.hset(self._key, job.id, job.model_dump_json())

    async def find_open(self, channel_id: str) -> RefreshJob | None:
        for job in await self.list_jobs():
            if job.channel_id == channel_id and job.is_open:
                return job
        return None

    async def list_jobs(self, tenant_id: str | None = None) -> list[RefreshJob]:
        values = await self._redis.hvals(self._key)
        jobs = [RefreshJob.model_validate_json(raw) for raw in values]
        return [job for job in jobs if tenant_id is None or job.tenant_id == tenant_id]

    async def delete(self, job_ids: Iterable[str]) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        return int(await self._redis.hdel(self._key, *ids))


def _job_to_row(job: RefreshJob) -> RefreshJobRecord:
    return RefreshJobRecord(
        id=job.id,
        created_at=job.created_at,
        channel_id=job.channel_id,
        tenant_id=job.tenant_id,
        status=job.status.value,
        attempt_count=job.attempt_count,
        max_attempts=job.max_attempts,
        run_at=job.run_at,
        last_attempt_at=job.last_attempt_at,
        last_error=job.last_error,
        last_error_retryable=job.last_error_retryable,
        channel_snapshot=job.channel_snapshot,
    )


def _aware(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _row_to_job(row: RefreshJobRecord) -> RefreshJob:
    return RefreshJob(
        id=row.id,
        channel_id=row.channel_id,
        tenant_id=row.tenant_id,
        status=RefreshStatus(row.status),
        created_at=_aware(row.created_at),
        run_at=_aware(row.run_at),
        last_attempt_at=_aware(row.last_attempt_at),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        last_error=row.last_error,
        last_error_retryable=row.last_error_retryable,
        channel_snapshot=dict(row.channel_snapshot or {}),
    )


class SqlRefreshJobStore:
    """Jobs persisted in the ``refresh_jobs`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def get(self, job_id: str) -> RefreshJob | None:
        return await asyncio.to_thread(self._get_sync, job_id)

    async def save(self, job: RefreshJob) -> None:
        await asyncio.to_thread(self._save_sync, job)

    async def find_open(self, channel_id: str) -> RefreshJob | None:
        return await asyncio.to_thread(self._find_open_sync, channel_id)

    async def list_jobs(self, tenant_id: str | None = None) -> list[RefreshJob]:
        return await asyncio.to_thread(self._list_sync, tenant_id)

    async def delete(self, job_ids: Iterable[str]) -> int:
        return await asyncio.to_thread(self._delete_sync, list(job_ids))

    def _get_sync(self, job_id: str) -> RefreshJob | None:
        with Session(self._engine) as session:
            row = session.get(RefreshJobRecord, job_id)
            return _row_to_job(row) if row is not None else None

    def _save_sync(self, job: RefreshJob) -> None:
        with Session(self._engine) as session:
            session.merge(_job_to_row(job))
            session.commit()

    def _find_open_sync(self, channel_id: str) -> RefreshJob | None:
        statement = select(RefreshJobRecord).where(
            RefreshJobRecord.channel_id == channel_id,
            RefreshJobRecord.status.in_([status.value for status in OPEN_STATUSES]),
        )
        with Session(self._engine) as session:
            row = session.exec(statement).first()
            return _row_to_job(row) if row is not None else None

    def _list_sync(self, tenant_id: str | None) -> list[RefreshJob]:
        statement = select(RefreshJobRecord)
        if tenant_id is not None:
            statement = statement.where(RefreshJobRecord.tenant_id == tenant_id)
        with Session(self._engine) as session:
            return [_row_to_job(row) for row in session.exec(statement)]

    def _delete_sync(self, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        with Session(self._engine) as session:
            result = session.execute(
                delete(RefreshJobRecord).where(RefreshJobRecord.id.in_(job_ids))
            )
            session.commit()
            return int(result.rowcount or 0)


# -- queue backends ---------------------------------------------------------


class RefreshQueueBackend(Protocol):
    async def push(self, job_id: str, run_at: datetime) -> None:
        ...

    async def pop_due(self, now: datetime, limit: int) -> list[str]:
        ...

    async def remove(self, job_id: str) -> None:
        ...

    async def size(self) -> int:
        ...


class InMemoryRefreshQueue:
    """Heap of ``(run_at, job_id)``; re-pushing a job moves it."""

    def __init__(self) -> None:
        self._heap: list[tuple[float, str]] = []
        self._scheduled: dict[str, float] = {}

    async def push(self, job_id: str, run_at: datetime) -> None:
        score = run_at.timestamp()
        self._scheduled[job_id] = score
        heapq.heappush(self._heap, (score, job_id))

    async def pop_due(self, now: datetime, limit: int) -> list[str]:
        due: list[str] = []
        cutoff = now.timestamp()
        while self._heap and len(due) < limit and self._heap[0][0] <= cutoff:
            score, job_id = heapq.heappop(self._heap)
            # stale heap entries left behind by a re-push or remove
            if self._scheduled.get(job_id) != score:
                continue
            del self._scheduled[job_id]
            due.append(job_id)
        return due

    async def remove(self, job_id: str) -> None:
        self._scheduled.pop(job_id, None)

    async def size(self) -> int:
        return len(self._scheduled)


class RedisRefreshQueue:
    """Sorted set scored by run-at epoch seconds."""

    def __init__(self, *, redis: Redis, key: str = "oauth-refresh:queue") -> None:
        self._redis = redis
        self._key = key

    async def push(self, job_id: str, run_at: datetime) -> None:
        await self._redis.zadd(self._key, {job_id: run_at.timestamp()})

    async def pop_due(self, now: datetime, limit: int) -> list[str]:
        candidates = await self._redis.zrangebyscore(
            self._key, "-inf", now.timestamp(), start=0, num=limit
        )
        claimed: list[str] = []
        for raw in candidates:
            job_id = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
            # only the consumer whose ZREM succeeds owns the job
            if await self._redis.zrem(self._key, job_id):
                claimed.append(job_id)
        return claimed

    async def remove(self, job_id: str) -> None:
        await self._redis.zrem(self._key, job_id)

    async def size(self) -> int:
        return int(await self._redis.zcard(self._key))


# -- scheduler --------------------------------------------------------------


class RefreshScheduler:
    """Creates refresh jobs and keeps per-tenant recurring sweeps."""

    def __init__(
        self,
        jobs: RefreshJobStore,
        queue: RefreshQueueBackend,
        repository: ChannelRepository,
        service: RefreshService,
        settings: RefreshSettings,
        *,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs = jobs
        self._queue = queue
        self._repository = repository
        self._service = service
        self._settings = settings
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._clock = clock

    async def enqueue(
        self, channel_id: str, tenant_id: str, *, delay: timedelta = timedelta(0)
    ) -> RefreshJob:
        """Queue a refresh; an open job for the channel is returned instead of a new one."""

        existing = await self._jobs.find_open(channel_id)
        if existing is not None:
            logger.info(
                "refresh already queued for channel",
                extra={"channel_id": channel_id, "job_id": existing.id},
            )
            return existing

        record = await require_channel(self._repository, channel_id)
        job = RefreshJob.create(
            channel_id,
            tenant_id,
            snapshot={
                "type": record.type.value,
                "displayName": record.display_name,
                "status": record.status.value,
            },
            delay=delay,
            max_attempts=self._settings.max_attempts,
            now=self._clock(),
        )
        await self._jobs.save(job)
        await self._queue.push(job.id, job.run_at)
        REFRESH_QUEUE_DEPTH.set(await self._queue.size())
        logger.info(
            "refresh job queued",
            extra={
                "job_id": job.id,
                "channel_id": channel_id,
                "tenant_id": tenant_id,
                "run_at": job.run_at.isoformat(),
            },
        )
        return job

    async def schedule_batch(
        self, tenant_id: str, threshold_minutes: int | None = None
    ) -> ScheduleReport:
        """Queue every expiring channel of a tenant, timed to its threshold."""

        threshold = (
            self._settings.refresh_before_minutes
            if threshold_minutes is None
            else threshold_minutes
        )
        report = ScheduleReport()
        for info in await self._service.channels_needing_refresh(tenant_id, threshold):
            if not info.has_refresh_token:
                report.skipped += 1
                report.errors.append(
                    f"{info.display_name or info.channel_id}: "
                    "no refresh token, manual re-authentication required"
                )
                continue
            delay = timedelta(minutes=max(0, info.minutes_until_expiration - threshold))
            job = await self.enqueue(info.channel_id, tenant_id, delay=delay)
            report.scheduled += 1
            report.job_ids.append(job.id)

        logger.info(
            "refresh batch scheduled",
            extra={
                "tenant_id": tenant_id,
                "scheduled": report.scheduled,
                "skipped": report.skipped,
            },
        )
        return report

    async def schedule_recurring(
        self, tenant_id: str, interval_minutes: int | None = None
    ) -> str:
        minutes = interval_minutes or self._settings.check_interval_minutes
        job_id = recurring_job_id(tenant_id)
        if not self._scheduler.running:
            self._scheduler.start()
        self._scheduler.add_job(
            self.schedule_batch,
            "interval",
            minutes=minutes,
            id=job_id,
            args=[tenant_id],
            replace_existing=True,
        )
        logger.info(
            "recurring refresh scheduled",
            extra={"tenant_id": tenant_id, "interval_minutes": minutes},
        )
        return job_id

    def cancel_recurring(self, tenant_id: str) -> bool:
        try:
            self._scheduler.remove_job(recurring_job_id(tenant_id))
        except JobLookupError:
            return False
        logger.info("recurring refresh cancelled", extra={"tenant_id": tenant_id})
        return True

    def recurring_job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    async def status(self, tenant_id: str | None = None) -> QueueStatus:
        jobs = await self._jobs.list_jobs(tenant_id)
        counts = {status.value: 0 for status in RefreshStatus}
        for job in jobs:
            counts[job.status.value] += 1
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return QueueStatus(counts=counts, jobs=jobs)

    async def cleanup(
        self, keep_completed: int | None = None, keep_failed: int | None = None
    ) -> int:
        """Drop old finished jobs, keeping the newest of each kind."""

        keep_completed = (
            self._settings.keep_completed if keep_completed is None else keep_completed
        )
        keep_failed = self._settings.keep_failed if keep_failed is None else keep_failed
        jobs = sorted(await self._jobs.list_jobs(), key=lambda job: job.created_at, reverse=True)
        completed = [job.id for job in jobs if job.status in TERMINAL_SUCCESS]
        failed = [job.id for job in jobs if job.status is RefreshStatus.FAILED]
        removed = await self._jobs.delete(completed[keep_completed:] + failed[keep_failed:])
        logger.info("refresh jobs cleaned up", extra={"removed": removed})
        return removed

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
