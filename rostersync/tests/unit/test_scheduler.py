from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from arq import Retry

from rostersync.core.config import get_settings
from rostersync.core.errors import ExternalFetchError, ReauthorizationRequiredError
from rostersync.domain.models import (
    INTEGRATION_STATUS_ERROR,
    SYNC_FREQUENCY_HOURLY,
    SYNC_FREQUENCY_MANUAL,
    SYNC_STATUS_SUCCESS,
    Integration,
)
from rostersync.domain.roster import SyncResult
from rostersync.services.integrations import locks
from rostersync.services.integrations.jobs import JOB_KIND_IMMEDIATE, JOB_KIND_SCHEDULED, InlineSyncJobQueue
from rostersync.services.integrations.scheduler import (
    SyncScheduler,
    ensure_utc,
    next_run_delay,
    scheduled_job_id,
)
from rostersync.services.integrations.sync import SyncOutcome
from rostersync.tests.utils.roster import create_test_integration


class _Clock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class _StubRunner:
    def __init__(self, errors: list[BaseException | None] | None = None) -> None:
        self.errors = list(errors or [])
        self.calls: list[str] = []

    async def __call__(self, integration: Integration, *, session_factory=None) -> SyncOutcome:
        self.calls.append(integration.id)
        error = self.errors.pop(0) if self.errors else None
        result = SyncResult()
        if error is not None:
            result.status = "ERROR"
            result.error_message = str(error)
        return SyncOutcome(log_id=f"log-{len(self.calls)}", result=result, error=error)


class _FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool:
        if nx and key in self.store:
            return False
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0


def _scheduler(session_factory, runner=None, clock=None) -> tuple[SyncScheduler, InlineSyncJobQueue, _Clock]:
    clock = clock or _Clock()
    queue = InlineSyncJobQueue(clock=clock)
    scheduler = SyncScheduler(queue, session_factory=session_factory, clock=clock, sync_runner=runner or _StubRunner())
    return scheduler, queue, clock


async def _stored(session_factory, integration_id: str) -> Integration:
    async with session_factory() as session:
        return await session.get(Integration, integration_id)


def test_frequency_delays() -> None:
    assert next_run_delay("hourly") == timedelta(hours=1)
    assert next_run_delay("DAILY") == timedelta(hours=24)
    assert next_run_delay("WEEKLY") == timedelta(days=7)
    assert next_run_delay(SYNC_FREQUENCY_MANUAL) is None


def test_ensure_utc_treats_naive_values_as_utc() -> None:
    naive = datetime(2026, 1, 1, 12, 0)
    assert ensure_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(None) is None


@pytest.mark.asyncio
async def test_daily_schedule_is_armed_once(session_factory) -> None:
    integration = await create_test_integration(session_factory, sync_enabled=True)
    scheduler, queue, clock = _scheduler(session_factory)

    first = await scheduler.schedule_sync_job(integration.id)
    second = await scheduler.schedule_sync_job(integration.id)

    expected_run = clock.now + timedelta(hours=24)
    assert first == scheduled_job_id(integration.id, expected_run)
    assert second == first
    assert queue.deferred_job_ids == [first]
    stored = await _stored(session_factory, integration.id)
    assert ensure_utc(stored.next_sync_at) == expected_run


@pytest.mark.asyncio
async def test_manual_and_disabled_integrations_are_not_scheduled(session_factory) -> None:
    manual = await create_test_integration(
        session_factory, organization_id="org-1", sync_enabled=True, sync_frequency=SYNC_FREQUENCY_MANUAL
    )
    disabled = await create_test_integration(session_factory, organization_id="org-2", sync_enabled=False)
    broken = await create_test_integration(
        session_factory, organization_id="org-3", sync_enabled=True, status=INTEGRATION_STATUS_ERROR
    )
    scheduler, queue, _ = _scheduler(session_factory)

    assert await scheduler.schedule_sync_job(manual.id) is None
    assert await scheduler.schedule_sync_job(disabled.id) is None
    assert await scheduler.schedule_sync_job(broken.id) is None
    assert await scheduler.schedule_sync_job("missing") is None
    assert queue.deferred_job_ids == []


@pytest.mark.asyncio
async def test_cancel_scheduled_removes_pending_job(session_factory) -> None:
    integration = await create_test_integration(session_factory, sync_enabled=True)
    scheduler, queue, _ = _scheduler(session_factory)
    await scheduler.schedule_sync_job(integration.id)

    removed = await scheduler.cancel_scheduled(integration.id)

    assert removed == 1
    assert queue.deferred_job_ids == []
    assert (await _stored(session_factory, integration.id)).next_sync_at is None


@pytest.mark.asyncio
async def test_trigger_immediate_runs_and_returns_result(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    runner = _StubRunner()
    scheduler, _, _ = _scheduler(session_factory, runner)

    first = await scheduler.trigger_immediate(integration.id)
    assert first is not None
    payload = await first.result(timeout=5)
    second = await scheduler.trigger_immediate(integration.id)
    assert second is not None
    await second.result(timeout=5)

    assert first.job_id.startswith(f"sync-immediate:{integration.id}:")
    assert first.job_id != second.job_id
    assert payload["status"] == SYNC_STATUS_SUCCESS
    assert payload["log_id"].startswith("log-")
    assert runner.calls == [integration.id, integration.id]


@pytest.mark.asyncio
async def test_successful_scheduled_run_rearms_next_run(session_factory) -> None:
    integration = await create_test_integration(session_factory, sync_enabled=True, sync_frequency=SYNC_FREQUENCY_HOURLY)
    scheduler, queue, clock = _scheduler(session_factory)
    first = await scheduler.schedule_sync_job(integration.id)

    clock.advance(timedelta(hours=1, minutes=1))
    handles = queue.run_due()
    assert [handle.job_id for handle in handles] == [first]
    await handles[0].result(timeout=5)

    next_id = scheduled_job_id(integration.id, clock.now + timedelta(hours=1))
    assert queue.deferred_job_ids == [next_id]
    stored = await _stored(session_factory, integration.id)
    assert ensure_utc(stored.next_sync_at) == clock.now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_scheduled_run_skips_when_sync_was_disabled(session_factory) -> None:
    integration = await create_test_integration(session_factory, sync_enabled=False)
    runner = _StubRunner()
    scheduler, _, _ = _scheduler(session_factory, runner)

    payload = await scheduler.execute_job(integration.id, JOB_KIND_SCHEDULED)

    assert payload == {"status": "skipped", "reason": "disabled"}
    assert runner.calls == []


@pytest.mark.asyncio
async def test_terminal_error_cancels_schedule_and_fails_job(session_factory) -> None:
    integration = await create_test_integration(session_factory, sync_enabled=True)
    runner = _StubRunner([ReauthorizationRequiredError("grant revoked")])
    scheduler, queue, _ = _scheduler(session_factory, runner)
    await scheduler.schedule_sync_job(integration.id)

    with pytest.raises(ReauthorizationRequiredError):
        await scheduler.execute_job(integration.id, JOB_KIND_IMMEDIATE)

    assert queue.deferred_job_ids == []
    assert (await _stored(session_factory, integration.id)).next_sync_at is None
    assert not locks.is_locally_locked(integration.id)


@pytest.mark.asyncio
async def test_retryable_error_raises_retry_with_backoff(session_factory, monkeypatch) -> None:
    monkeypatch.setenv("SYNC_RETRY_BACKOFF_S", "2")
    integration = await create_test_integration(session_factory)
    runner = _StubRunner([ExternalFetchError("upstream down"), ExternalFetchError("upstream down")])
    scheduler, _, _ = _scheduler(session_factory, runner)

    get_settings.cache_clear()
    with pytest.raises(Retry) as excinfo:
        await scheduler.execute_job(integration.id, JOB_KIND_IMMEDIATE, attempt=2)
    assert excinfo.value.defer_score == 4000

    with pytest.raises(ExternalFetchError):
        await scheduler.execute_job(integration.id, JOB_KIND_IMMEDIATE, attempt=3)


@pytest.mark.asyncio
async def test_inline_queue_retries_until_attempts_run_out(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    failure = ExternalFetchError("upstream down", status_code=503)
    runner = _StubRunner([failure, failure, failure])
    scheduler, _, _ = _scheduler(session_factory, runner)

    handle = await scheduler.trigger_immediate(integration.id)
    with pytest.raises(ExternalFetchError):
        await handle.result(timeout=5)

    assert len(runner.calls) == 3


@pytest.mark.asyncio
async def test_inline_queue_recovers_after_transient_failure(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    runner = _StubRunner([ExternalFetchError("blip", status_code=502)])
    scheduler, _, _ = _scheduler(session_factory, runner)

    handle = await scheduler.trigger_immediate(integration.id)
    payload = await handle.result(timeout=5)

    assert payload["status"] == SYNC_STATUS_SUCCESS
    assert len(runner.calls) == 2


@pytest.mark.asyncio
async def test_in_flight_run_is_skipped(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    runner = _StubRunner()
    scheduler, _, _ = _scheduler(session_factory, runner)
    locks._local_owners[integration.id] = "another-run"

    payload = await scheduler.execute_job(integration.id, JOB_KIND_IMMEDIATE)

    assert payload == {"status": "skipped", "reason": "in_flight"}
    assert runner.calls == []


@pytest.mark.asyncio
async def test_initialize_rearms_enabled_integrations(session_factory) -> None:
    daily = await create_test_integration(session_factory, organization_id="org-1", sync_enabled=True)
    hourly = await create_test_integration(
        session_factory, organization_id="org-2", sync_enabled=True, sync_frequency=SYNC_FREQUENCY_HOURLY
    )
    await create_test_integration(
        session_factory, organization_id="org-3", sync_enabled=True, sync_frequency=SYNC_FREQUENCY_MANUAL
    )
    await create_test_integration(session_factory, organization_id="org-4", sync_enabled=False)
    scheduler, queue, _ = _scheduler(session_factory)

    armed = await scheduler.initialize_scheduled_syncs()

    assert armed == 2
    owners = {job_id.split(":")[1] for job_id in queue.deferred_job_ids}
    assert owners == {daily.id, hourly.id}


@pytest.mark.asyncio
async def test_redis_lock_is_exclusive_and_released(monkeypatch) -> None:
    fake = _FakeRedis()

    async def _redis():
        return fake

    monkeypatch.setattr(locks, "get_resilience_redis", _redis)

    held = await locks.acquire_sync_lock("int-1")
    assert held is not None and held.local is False
    assert await locks.acquire_sync_lock("int-1") is None
    assert fake.ttls["rostersync:sync:lock:int-1"] == 2100

    await locks.release_sync_lock(held)
    assert fake.store == {}
    assert await locks.acquire_sync_lock("int-1") is not None


@pytest.mark.asyncio
async def test_redis_lock_is_not_released_by_stale_owner(monkeypatch) -> None:
    fake = _FakeRedis()

    async def _redis():
        return fake

    monkeypatch.setattr(locks, "get_resilience_redis", _redis)

    held = await locks.acquire_sync_lock("int-1")
    fake.store["rostersync:sync:lock:int-1"] = "newer-owner"

    await locks.release_sync_lock(held)

    assert fake.store["rostersync:sync:lock:int-1"] == "newer-owner"
