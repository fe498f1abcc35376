"""Worker draining due refresh jobs with bounded concurrency."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from prometheus_client import Counter, Histogram, start_http_server

from channelhub.core.config import RefreshSettings, TelemetrySettings
from channelhub.core.domain import utcnow
from channelhub.utils.retry import exponential_backoff

from .engine import RefreshService
from .models import ChannelRefreshOutcome, RefreshJob, RefreshStatus
from .queue import REFRESH_QUEUE_DEPTH, RefreshJobStore, RefreshQueueBackend

logger = logging.getLogger(__name__)

REFRESH_JOBS = Counter(
    "credential_refresh_jobs_total",
    "Refresh job attempts by resulting status.",
    ["status"],
)

REFRESH_LATENCY = Histogram(
    "credential_refresh_latency_seconds",
    "Latency of a single channel token refresh.",
)

_METRICS_STARTED = False


def ensure_metrics_exporter(settings: TelemetrySettings) -> None:
    global _METRICS_STARTED
    if _METRICS_STARTED or not settings.metrics_port:
        return
    start_http_server(settings.metrics_port, addr=settings.metrics_host)
    _METRICS_STARTED = True
    logger.info(
        "metrics exporter started",
        extra={"host": settings.metrics_host, "port": settings.metrics_port},
    )


class RefreshWorker:
    """Runs due jobs; a channel never has two refreshes in flight."""

    def __init__(
        self,
        jobs: RefreshJobStore,
        queue: RefreshQueueBackend,
        service: RefreshService,
        settings: RefreshSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs = jobs
        self._queue = queue
        self._service = service
        self._settings = settings
        self._clock = clock
        self._semaphore = asyncio.Semaphore(settings.concurrency)
        self._in_flight: set[str] = set()
        self._shutdown = asyncio.Event()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def retry_delay(self, attempt: int) -> float:
        return exponential_backoff(
            attempt,
            base=self._settings.backoff_base_seconds,
            factor=2.0,
            max_delay=self._settings.backoff_max_seconds,
            jitter_ratio=0.0,
        )

    async def run_once(self) -> int:
        """Process every job due now; returns how many were executed."""

        job_ids = await self._queue.pop_due(self._clock(), self._settings.concurrency * 4)
        if not job_ids:
            return 0
        results = await asyncio.gather(*(self._run(job_id) for job_id in job_ids))
        REFRESH_QUEUE_DEPTH.set(await self._queue.size())
        return sum(1 for executed in results if executed)

    async def _run(self, job_id: str) -> bool:
        job = await self._jobs.get(job_id)
        if job is None or job.status is not RefreshStatus.PENDING:
            logger.warning(
                "dropping refresh queue entry without a pending job",
                extra={"job_id": job_id, "status": job.status.value if job else None},
            )
            return False

        if job.channel_id in self._in_flight:
            await self._queue.push(
                job.id, self._clock() + timedelta(seconds=self._settings.poll_interval_seconds)
            )
            logger.info(
                "channel refresh already running; deferring job",
                extra={"job_id": job.id, "channel_id": job.channel_id},
            )
            return False

        self._in_flight.add(job.channel_id)
        try:
            async with self._semaphore:
                await self._execute(job)
        finally:
            self._in_flight.discard(job.channel_id)
        return True

    async def _execute(self, job: RefreshJob) -> None:
        job.start(self._clock())
        await self._jobs.save(job)
        logger.info(
            "refresh job started",
            extra={"job_id": job.id, "channel_id": job.channel_id, "attempt": job.attempt_count},
        )

        started = time.perf_counter()
        try:
            outcome = await self._service.refresh_channel(job.channel_id)
        except Exception as exc:
            logger.exception(
                "refresh job crashed", extra={"job_id": job.id, "channel_id": job.channel_id}
            )
            outcome = ChannelRefreshOutcome(
                channel_id=job.channel_id,
                status=RefreshStatus.FAILED,
                error=str(exc) or type(exc).__name__,
                retryable=True,
            )
        finally:
            REFRESH_LATENCY.observe(time.perf_counter() - started)

        if outcome.status is RefreshStatus.SUCCESS:
            job.succeed()
        elif outcome.status is RefreshStatus.SKIPPED:
            job.skip(outcome.error or "skipped")
        else:
            job.fail(outcome.error or "refresh failed", retryable=outcome.retryable)

        REFRESH_JOBS.labels(job.status.value).inc()
        if job.can_retry:
            delay = self.retry_delay(job.attempt_count)
            job.requeue(self._clock() + timedelta(seconds=delay))
            await self._jobs.save(job)
            await self._queue.push(job.id, job.run_at)
            logger.warning(
                "refresh job will retry",
                extra={
                    "job_id": job.id,
                    "channel_id": job.channel_id,
                    "attempt": job.attempt_count,
                    "delay_seconds": delay,
                    "error": job.last_error,
                },
            )
            return

        await self._jobs.save(job)
        log = logger.info if job.status is not RefreshStatus.FAILED else logger.error
        log(
            "refresh job finished",
            extra={
                "job_id": job.id,
                "channel_id": job.channel_id,
                "status": job.status.value,
                "attempts": job.attempt_count,
                "error": job.last_error,
            },
        )

    async def start(self, telemetry: TelemetrySettings | None = None) -> None:
        logger.info("refresh worker starting", extra={"concurrency": self._settings.concurrency})
        if telemetry is not None:
            ensure_metrics_exporter(telemetry)
        while not self._shutdown.is_set():
            await self.run_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self._settings.poll_interval_seconds
                )
        logger.info("refresh worker stopped")

    async def stop(self) -> None:
        self._shutdown.set()
