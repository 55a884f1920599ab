from __future__ import annotations

import logging
from typing import Any

from arq.connections import RedisSettings

from rostersync.core.config import get_settings
from rostersync.core.logging import configure_logging
from rostersync.services.integrations.jobs import ArqSyncJobQueue
from rostersync.services.integrations.scheduler import SyncScheduler


logger = logging.getLogger(__name__)


async def run_integration_sync(ctx, integration_id: str, kind: str) -> dict[str, Any]:
    # arq counts attempts in job_try; the scheduler turns that into retry decisions.
    scheduler: SyncScheduler = ctx["scheduler"]
    attempt = ctx.get("job_try", 1)
    return await scheduler.execute_job(integration_id, kind, attempt=attempt)


async def _boot(ctx, *, rearm: bool) -> None:
    # Each worker process owns one queue connection for rescheduling.
    configure_logging()
    queue = ArqSyncJobQueue()
    await queue.start()
    ctx["sync_queue"] = queue
    ctx["scheduler"] = SyncScheduler(queue)
    if rearm:
        await ctx["scheduler"].initialize_scheduled_syncs()
    logger.info("sync_worker_started")


async def _startup(ctx) -> None:
    await _boot(ctx, rearm=True)


async def _startup_priority(ctx) -> None:
    await _boot(ctx, rearm=False)


async def _shutdown(ctx) -> None:
    queue = ctx.get("sync_queue")
    if queue is not None:
        await queue.stop()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = settings.sync_max_tries
    max_jobs = settings.sync_worker_max_jobs
    job_timeout = settings.sync_job_timeout_s
    functions = [run_integration_sync]
    # The scheduled-queue worker re-arms schedules on boot.
    on_startup = _startup
    on_shutdown = _shutdown


class PriorityWorkerSettings(WorkerSettings):
    # Operator-triggered runs drain on their own queue.
    queue_name = WorkerSettings.settings.sync_priority_queue_name
    on_startup = _startup_priority
