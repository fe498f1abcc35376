from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from channelhub.core.config import RefreshSettings
from channelhub.core.domain import utcnow
from channelhub.refresh.models import ChannelRefreshOutcome, RefreshJob, RefreshStatus
from channelhub.refresh.queue import InMemoryRefreshJobStore, InMemoryRefreshQueue
from channelhub.refresh.worker import RefreshWorker

pytestmark = pytest.mark.unit


class Clock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StubService:
    """Returns queued outcomes and records how many refreshes overlap per channel."""

    def __init__(self, *outcomes: ChannelRefreshOutcome | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []
        self.running: dict[str, int] = {}
        self.max_overlap = 0

    async def refresh_channel(self, channel_id: str) -> ChannelRefreshOutcome:
        self.calls.append(channel_id)
        self.running[channel_id] = self.running.get(channel_id, 0) + 1
        self.max_overlap = max(self.max_overlap, self.running[channel_id])
        try:
            await asyncio.sleep(0)
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.running[channel_id] -= 1


def _ok(channel_id: str = "ch-1") -> ChannelRefreshOutcome:
    return ChannelRefreshOutcome(channel_id, RefreshStatus.SUCCESS)


def _failed(retryable: bool, channel_id: str = "ch-1") -> ChannelRefreshOutcome:
    return ChannelRefreshOutcome(
        channel_id, RefreshStatus.FAILED, error="provider unavailable", retryable=retryable
    )


class Harness:
    def __init__(self, service: StubService, **settings) -> None:
        self.clock = Clock()
        self.jobs = InMemoryRefreshJobStore()
        self.queue = InMemoryRefreshQueue()
        self.service = service
        self.settings = RefreshSettings(**settings)
        self.worker = RefreshWorker(
            self.jobs, self.queue, service, self.settings, clock=self.clock
        )

    async def add_job(self, channel_id: str = "ch-1", job_id: str | None = None) -> RefreshJob:
        job = RefreshJob.create(
            channel_id, "tenant-1", max_attempts=self.settings.max_attempts, now=self.clock()
        )
        if job_id is not None:
            job = job.model_copy(update={"id": job_id})
        await self.jobs.save(job)
        await self.queue.push(job.id, job.run_at)
        return job


@pytest.mark.asyncio
async def test_successful_job_is_completed() -> None:
    harness = Harness(StubService(_ok()))
    job = await harness.add_job()

    executed = await harness.worker.run_once()

    stored = await harness.jobs.get(job.id)
    assert executed == 1
    assert stored.status is RefreshStatus.SUCCESS
    assert stored.attempt_count == 1
    assert await harness.queue.size() == 0
    assert harness.worker.in_flight == frozenset()


@pytest.mark.asyncio
async def test_retryable_failure_is_requeued_with_backoff() -> None:
    harness = Harness(StubService(_failed(True), _failed(True), _ok()), backoff_base_seconds=2)
    job = await harness.add_job()

    await harness.worker.run_once()
    stored = await harness.jobs.get(job.id)
    assert stored.status is RefreshStatus.PENDING
    assert stored.attempt_count == 1
    assert stored.run_at == harness.clock() + timedelta(seconds=2)
    assert await harness.worker.run_once() == 0

    harness.clock.advance(2)
    await harness.worker.run_once()
    stored = await harness.jobs.get(job.id)
    assert stored.run_at == harness.clock() + timedelta(seconds=4)

    harness.clock.advance(4)
    await harness.worker.run_once()
    stored = await harness.jobs.get(job.id)
    assert stored.status is RefreshStatus.SUCCESS
    assert stored.attempt_count == 3


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts() -> None:
    harness = Harness(
        StubService(*[_failed(True) for _ in range(5)]), max_attempts=3, backoff_base_seconds=1
    )
    job = await harness.add_job()

    for _ in range(6):
        await harness.worker.run_once()
        harness.clock.advance(60)

    stored = await harness.jobs.get(job.id)
    assert stored.status is RefreshStatus.FAILED
    assert stored.attempt_count == 3
    assert len(harness.service.calls) == 3
    assert await harness.queue.size() == 0


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried() -> None:
    harness = Harness(StubService(_failed(False)))
    job = await harness.add_job()

    await harness.worker.run_once()

    stored = await harness.jobs.get(job.id)
    assert stored.status is RefreshStatus.FAILED
    assert not stored.last_error_retryable
    assert await harness.queue.size() == 0


@pytest.mark.asyncio
async def test_skipped_channel_finishes_job() -> None:
    harness = Harness(
        StubService(ChannelRefreshOutcome("ch-1", RefreshStatus.SKIPPED, error="no token"))
    )
    job = await harness.add_job()

    await harness.worker.run_once()

    stored = await harness.jobs.get(job.id)
    assert stored.status is RefreshStatus.SKIPPED
    assert stored.last_error == "no token"


@pytest.mark.asyncio
async def test_unexpected_exception_is_a_retryable_failure() -> None:
    harness = Harness(StubService(RuntimeError("database went away")))
    job = await harness.add_job()

    await harness.worker.run_once()

    stored = await harness.jobs.get(job.id)
    assert stored.status is RefreshStatus.PENDING
    assert stored.last_error == "database went away"
    assert stored.last_error_retryable


@pytest.mark.asyncio
async def test_one_refresh_per_channel_at_a_time() -> None:
    harness = Harness(StubService(_ok(), _ok(), _ok("ch-2")), poll_interval_seconds=5)
    await harness.add_job("ch-1", job_id="job-a")
    await harness.add_job("ch-1", job_id="job-b")
    await harness.add_job("ch-2", job_id="job-c")

    executed = await harness.worker.run_once()

    assert executed == 2
    assert harness.service.max_overlap == 1
    assert sorted(harness.service.calls) == ["ch-1", "ch-2"]
    deferred = await harness.jobs.get("job-b")
    assert deferred.status is RefreshStatus.PENDING
    assert await harness.queue.pop_due(harness.clock(), 10) == []

    harness.clock.advance(5)
    assert await harness.worker.run_once() == 1
    assert (await harness.jobs.get("job-b")).status is RefreshStatus.SUCCESS


@pytest.mark.asyncio
async def test_stale_queue_entries_are_dropped() -> None:
    harness = Harness(StubService())
    await harness.queue.push("ghost", harness.clock())
    job = await harness.add_job()
    job.skip("cancelled")
    await harness.jobs.save(job)

    assert await harness.worker.run_once() == 0
    assert harness.service.calls == []


def test_retry_delay_is_exponential_and_capped() -> None:
    worker = RefreshWorker(
        InMemoryRefreshJobStore(),
        InMemoryRefreshQueue(),
        StubService(),
        RefreshSettings(backoff_base_seconds=2, backoff_max_seconds=10),
    )

    assert [worker.retry_delay(attempt) for attempt in range(1, 5)] == [2, 4, 8, 10]


@pytest.mark.asyncio
async def test_start_runs_until_stopped() -> None:
    harness = Harness(StubService(_ok()), poll_interval_seconds=0.1)
    job = await harness.add_job()

    task = asyncio.create_task(harness.worker.start())
    for _ in range(50):
        if (await harness.jobs.get(job.id)).status is RefreshStatus.SUCCESS:
            break
        await asyncio.sleep(0.01)
    await harness.worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert (await harness.jobs.get(job.id)).status is RefreshStatus.SUCCESS
