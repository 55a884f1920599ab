from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import Retry
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.config import get_settings
from rostersync.core.errors import IntegrationNotFoundError, is_retryable_sync_error
from rostersync.domain.models import (
    INTEGRATION_STATUS_ACTIVE,
    SYNC_FREQUENCY_DAILY,
    SYNC_FREQUENCY_HOURLY,
    SYNC_FREQUENCY_WEEKLY,
    Integration,
)
from rostersync.persistence.db import SessionLocal
from rostersync.persistence.repos import integrations as integrations_repo
from rostersync.services.integrations.jobs import (
    JOB_KIND_IMMEDIATE,
    JOB_KIND_SCHEDULED,
    ArqSyncJobQueue,
    InlineSyncJobQueue,
    SyncJobHandle,
    SyncJobQueue,
    SyncJobSpec,
)
from rostersync.services.integrations.locks import acquire_sync_lock, release_sync_lock
from rostersync.services.integrations.sync import SyncOutcome, run_sync


logger = logging.getLogger(__name__)

# MANUAL has no entry: it never self-schedules.
FREQUENCY_DELAYS: dict[str, timedelta] = {
    SYNC_FREQUENCY_HOURLY: timedelta(hours=1),
    SYNC_FREQUENCY_DAILY: timedelta(hours=24),
    SYNC_FREQUENCY_WEEKLY: timedelta(days=7),
}

SyncRunner = Callable[..., Awaitable[SyncOutcome]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def next_run_delay(frequency: str) -> timedelta | None:
    return FREQUENCY_DELAYS.get((frequency or "").upper())


def scheduled_job_id(integration_id: str, run_at: datetime) -> str:
    # One key per (integration, target time) so the same run is never queued twice.
    return f"sync:{integration_id}:{int(run_at.timestamp())}"


def immediate_job_id(integration_id: str, enqueued_at: datetime) -> str:
    return f"sync-immediate:{integration_id}:{int(enqueued_at.timestamp() * 1000)}:{uuid4().hex[:8]}"


def build_job_queue() -> SyncJobQueue:
    if get_settings().sync_execution_mode.lower() == "inline":
        return InlineSyncJobQueue()
    return ArqSyncJobQueue()


class SyncScheduler:
    """Arms, triggers and cancels sync jobs and executes them when they fire.

    The queue is an explicit service with its own start/stop lifecycle; the
    scheduler never reaches for module-level queue state.
    """

    def __init__(
        self,
        queue: SyncJobQueue,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
        sync_runner: SyncRunner | None = None,
    ) -> None:
        self.queue = queue
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or _utc_now
        self._sync_runner = sync_runner or run_sync
        queue.bind_runner(self.execute_job)

    async def _load(self, integration_id: str) -> Integration | None:
        async with self._session_factory() as session:
            return await integrations_repo.get_integration(session, integration_id)

    async def schedule_next(self, integration_id: str, frequency: str) -> str | None:
        delay = next_run_delay(frequency)
        if delay is None:
            return None
        async with self._session_factory() as session:
            integration = await integrations_repo.get_integration(session, integration_id)
            if integration is None:
                raise IntegrationNotFoundError(f"Integration {integration_id} not found")
            now = self._clock()
            armed_at = ensure_utc(integration.next_sync_at)
            if armed_at is not None and armed_at > now:
                existing = scheduled_job_id(integration_id, armed_at)
                if await self.queue.has_pending(existing):
                    # Already armed; scheduling again must not double the run.
                    return existing
            run_at = now + delay
            job_id = scheduled_job_id(integration_id, run_at)
            handle = await self.queue.enqueue(
                SyncJobSpec(
                    job_id=job_id,
                    integration_id=integration_id,
                    kind=JOB_KIND_SCHEDULED,
                    run_at=run_at,
                )
            )
            if handle is None:
                logger.info("sync_schedule_duplicate integration_id=%s job_id=%s", integration_id, job_id)
            await integrations_repo.set_next_sync_at(session, integration_id, run_at)
            await session.commit()
        logger.info(
            "sync_scheduled integration_id=%s frequency=%s run_at=%s",
            integration_id,
            frequency,
            run_at.isoformat(),
        )
        return job_id

    async def schedule_sync_job(self, integration_id: str) -> str | None:
        integration = await self._load(integration_id)
        if integration is None:
            logger.warning("sync_schedule_missing_integration integration_id=%s", integration_id)
            return None
        if not integration.sync_enabled or integration.status != INTEGRATION_STATUS_ACTIVE:
            return None
        return await self.schedule_next(integration_id, integration.sync_frequency)

    async def trigger_immediate(self, integration_id: str) -> SyncJobHandle | None:
        # Operator runs bypass the schedule and go to the priority queue.
        if await self._load(integration_id) is None:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        job_id = immediate_job_id(integration_id, self._clock())
        handle = await self.queue.enqueue(
            SyncJobSpec(
                job_id=job_id,
                integration_id=integration_id,
                kind=JOB_KIND_IMMEDIATE,
                priority=True,
            )
        )
        logger.info("sync_triggered integration_id=%s job_id=%s", integration_id, job_id)
        return handle

    async def cancel_scheduled(self, integration_id: str) -> int:
        removed = await self.queue.cancel_pending(integration_id)
        async with self._session_factory() as session:
            await integrations_repo.set_next_sync_at(session, integration_id, None)
            await session.commit()
        logger.info("sync_schedule_cancelled integration_id=%s removed=%s", integration_id, removed)
        return removed

    async def initialize_scheduled_syncs(self) -> int:
        # Re-arm schedules at process start; one bad row must not block the others.
        async with self._session_factory() as session:
            integrations = await integrations_repo.list_schedulable_integrations(session)
        armed = 0
        for integration in integrations:
            try:
                if await self.schedule_next(integration.id, integration.sync_frequency):
                    armed += 1
            except Exception as exc:  # noqa: BLE001 - keep re-arming the remaining integrations
                logger.error(
                    "sync_schedule_init_failed integration_id=%s error=%s",
                    integration.id,
                    type(exc).__name__,
                )
        logger.info("sync_schedules_initialized count=%s", armed)
        return armed

    async def execute_job(self, integration_id: str, kind: str, attempt: int = 1) -> dict[str, Any]:
        """Run one sync job and decide what happens next.

        Success re-arms the schedule while sync stays enabled. Terminal errors
        cancel pending runs and fail the job. Retryable errors raise arq's
        ``Retry`` with exponential backoff until the attempt budget runs out,
        after which the job fails without re-arming.
        """
        settings = get_settings()
        lock = await acquire_sync_lock(integration_id)
        if lock is None:
            logger.info("sync_job_skipped_in_flight integration_id=%s kind=%s", integration_id, kind)
            return {"status": "skipped", "reason": "in_flight"}
        try:
            integration = await self._load(integration_id)
            if integration is None:
                logger.warning("sync_job_missing_integration integration_id=%s", integration_id)
                return {"status": "skipped", "reason": "missing"}
            if kind == JOB_KIND_SCHEDULED and not integration.sync_enabled:
                return {"status": "skipped", "reason": "disabled"}
            outcome = await self._sync_runner(integration, session_factory=self._session_factory)
        finally:
            await release_sync_lock(lock)

        if outcome.error is None:
            current = await self._load(integration_id)
            if current is not None and current.sync_enabled:
                await self.schedule_next(integration_id, current.sync_frequency)
            return {
                "status": outcome.result.status,
                "log_id": outcome.log_id,
                "result": outcome.result.as_dict(),
            }

        error = outcome.error
        if not is_retryable_sync_error(error):
            # Automatic runs stay paused until an operator re-authorizes or fixes storage.
            await self.cancel_scheduled(integration_id)
            logger.error(
                "sync_job_terminal integration_id=%s log_id=%s error=%s",
                integration_id,
                outcome.log_id,
                type(error).__name__,
            )
            raise error
        if attempt < settings.sync_max_tries:
            defer_s = settings.sync_retry_backoff_s * (2 ** (attempt - 1))
            logger.warning(
                "sync_job_retrying integration_id=%s attempt=%s defer_s=%s",
                integration_id,
                attempt,
                defer_s,
            )
            raise Retry(defer=defer_s) from error
        logger.error(
            "sync_job_retries_exhausted integration_id=%s attempts=%s log_id=%s",
            integration_id,
            attempt,
            outcome.log_id,
        )
        raise error
