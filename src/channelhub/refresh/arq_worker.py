"""ARQ worker integration for token refresh sweeps and queue draining."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from arq import Retry, cron
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from channelhub.core.config import AppSettings
from channelhub.core.db.session import create_engine_from_settings
from channelhub.core.logging import configure_logging
from channelhub.credentials.store import build_credential_store
from channelhub.utils.retry import exponential_backoff

from .engine import RefreshService, TokenRefresher
from .queue import RedisRefreshJobStore, RedisRefreshQueue, RefreshScheduler
from .worker import RefreshWorker, ensure_metrics_exporter

logger = logging.getLogger(__name__)

_SETTINGS = AppSettings.load()


async def startup(ctx: dict[str, Any]) -> None:
    """Initialise connections and shared dependencies."""

    settings = AppSettings.load()
    ctx["settings"] = settings

    configure_logging()
    ensure_metrics_exporter(settings.telemetry)

    redis_client = Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password,
    )
    client = httpx.AsyncClient(timeout=settings.http.send_timeout_seconds)
    engine = create_engine_from_settings(settings)
    store = build_credential_store(settings, engine)

    service = RefreshService(
        store,
        TokenRefresher(
            client,
            settings.meta,
            settings.tiktok,
            timeout=settings.http.send_timeout_seconds,
        ),
        settings.refresh,
    )
    prefix = settings.refresh.queue_name
    jobs = RedisRefreshJobStore(redis=redis_client, key=f"{prefix}:jobs")
    queue = RedisRefreshQueue(redis=redis_client, key=f"{prefix}:queue")

    ctx["redis"] = redis_client
    ctx["http_client"] = client
    ctx["scheduler"] = RefreshScheduler(
        jobs, queue, store.repository, service, settings.refresh
    )
    ctx["worker"] = RefreshWorker(jobs, queue, service, settings.refresh)
    logger.info("refresh worker ready", extra={"queue_name": prefix})


async def shutdown(ctx: dict[str, Any]) -> None:
    """Clean up allocated resources."""

    scheduler: RefreshScheduler | None = ctx.get("scheduler")
    if scheduler:
        scheduler.shutdown()

    client: httpx.AsyncClient | None = ctx.get("http_client")
    if client:
        await client.aclose()

    redis_client: Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()


async def sweep_tenant(
    ctx: dict[str, Any], tenant_id: str, threshold_minutes: int | None = None
) -> dict[str, Any]:
    """Queue refresh jobs for every expiring channel of ``tenant_id``."""

    scheduler: RefreshScheduler = ctx["scheduler"]
    settings: AppSettings = ctx["settings"]
    attempt = ctx.get("job_try", 1)
    try:
        report = await scheduler.schedule_batch(tenant_id, threshold_minutes)
    except RedisConnectionError as exc:
        if attempt >= settings.refresh.max_attempts:
            raise
        delay = exponential_backoff(
            attempt,
            base=settings.refresh.backoff_base_seconds,
            max_delay=settings.refresh.backoff_max_seconds,
        )
        logger.warning(
            "refresh sweep deferred",
            extra={"tenant_id": tenant_id, "attempt": attempt, "retry_in": round(delay, 2)},
        )
        raise Retry(defer=delay) from exc
    return {
        "tenant_id": tenant_id,
        "scheduled": report.scheduled,
        "skipped": report.skipped,
        "job_ids": report.job_ids,
        "errors": report.errors,
    }


async def drain_refresh_queue(ctx: dict[str, Any]) -> int:
    worker: RefreshWorker = ctx["worker"]
    return await worker.run_once()


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [sweep_tenant, drain_refresh_queue]
    cron_jobs = [cron(drain_refresh_queue, second={0, 15, 30, 45}, run_at_startup=True)]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = 60 * 5
    max_jobs = _SETTINGS.refresh.concurrency
    queue_name = _SETTINGS.refresh.queue_name
    redis_settings = _SETTINGS.redis.arq_settings()
