from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import in_progress_key_prefix, job_key_prefix

from rostersync.core.config import get_settings


logger = logging.getLogger(__name__)

SYNC_JOB_FUNCTION = "run_integration_sync"
JOB_KIND_SCHEDULED = "scheduled"
JOB_KIND_IMMEDIATE = "immediate"

# (integration_id, kind, attempt) -> job result
SyncJobRunner = Callable[[str, str, int], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncJobSpec:
    job_id: str
    integration_id: str
    kind: str
    run_at: datetime | None = None
    priority: bool = False


@dataclass
class SyncJobHandle:
    """Observable handle for an enqueued sync job.

    ``result()`` waits for the job and re-raises its failure, so callers that
    kick off a run can see how it ended instead of relying on log lines.
    """

    job_id: str
    _wait: Callable[[float | None], Awaitable[Any]] = field(repr=False)

    async def result(self, timeout: float | None = None) -> Any:
        return await self._wait(timeout)


class SyncJobQueue(Protocol):
    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    def bind_runner(self, runner: SyncJobRunner) -> None:
        ...

    async def enqueue(self, spec: SyncJobSpec) -> SyncJobHandle | None:
        ...

    async def has_pending(self, job_id: str) -> bool:
        ...

    async def cancel_pending(self, integration_id: str) -> int:
        ...


def _owns_job(job_id: str, integration_id: str) -> bool:
    # Job ids embed the integration id as their second segment.
    parts = job_id.split(":")
    return len(parts) >= 3 and parts[1] == integration_id


class ArqSyncJobQueue:
    def __init__(
        self,
        *,
        redis_settings: RedisSettings | None = None,
        queue_name: str | None = None,
        priority_queue_name: str | None = None,
    ) -> None:
        settings = get_settings()
        self._redis_settings = redis_settings or RedisSettings.from_dsn(settings.redis_url)
        self.queue_name = queue_name or settings.sync_queue_name
        self.priority_queue_name = priority_queue_name or settings.sync_priority_queue_name
        self._pool: ArqRedis | None = None

    async def start(self) -> None:
        if self._pool is None:
            self._pool = await create_pool(self._redis_settings, default_queue_name=self.queue_name)

    async def stop(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    def bind_runner(self, runner: SyncJobRunner) -> None:
        # Workers execute jobs; the producer side never runs them.
        _ = runner

    def _require_pool(self) -> ArqRedis:
        if self._pool is None:
            raise RuntimeError("ArqSyncJobQueue.start() must be awaited before use")
        return self._pool

    async def enqueue(self, spec: SyncJobSpec) -> SyncJobHandle | None:
        pool = self._require_pool()
        job = await pool.enqueue_job(
            SYNC_JOB_FUNCTION,
            spec.integration_id,
            spec.kind,
            _job_id=spec.job_id,
            _queue_name=self.priority_queue_name if spec.priority else self.queue_name,
            _defer_until=spec.run_at,
        )
        if job is None:
            # arq rejects ids that are already queued or still hold a result.
            return None

        async def _wait(timeout: float | None) -> Any:
            return await job.result(timeout=timeout)

        return SyncJobHandle(job_id=job.job_id, _wait=_wait)

    async def _is_in_progress(self, job_id: str) -> bool:
        return bool(await self._require_pool().exists(in_progress_key_prefix + job_id))

    async def has_pending(self, job_id: str) -> bool:
        pool = self._require_pool()
        for queue_name in (self.queue_name, self.priority_queue_name):
            if await pool.zscore(queue_name, job_id) is not None:
                return not await self._is_in_progress(job_id)
        return False

    async def cancel_pending(self, integration_id: str) -> int:
        # Remove waiting and deferred jobs; a job already running finishes normally.
        pool = self._require_pool()
        removed = 0
        for queue_name in (self.queue_name, self.priority_queue_name):
            for raw in await pool.zrange(queue_name, 0, -1):
                job_id = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
                if not _owns_job(job_id, integration_id):
                    continue
                if await self._is_in_progress(job_id):
                    continue
                removed += int(await pool.zrem(queue_name, job_id))
                await pool.delete(job_key_prefix + job_id)
        return removed


@dataclass
class _InlineJob:
    spec: SyncJobSpec
    future: asyncio.Future[Any]


class InlineSyncJobQueue:
    """In-process queue for inline mode and tests.

    Immediate jobs start as tasks right away. Deferred jobs wait until
    ``run_due()`` is called with a time at or past their ``run_at``. arq's
    ``Retry`` is honored up to ``max_tries`` attempts.
    """

    def __init__(
        self,
        runner: SyncJobRunner | None = None,
        *,
        max_tries: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._runner = runner
        self._max_tries = max_tries or get_settings().sync_max_tries
        self._clock = clock or _utc_now
        self._deferred: dict[str, _InlineJob] = {}
        self._running: dict[str, asyncio.Task[Any]] = {}

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        # Let in-flight runs finish; cancellation never interrupts a run.
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        for job in self._deferred.values():
            job.future.cancel()
        self._deferred.clear()

    def bind_runner(self, runner: SyncJobRunner) -> None:
        self._runner = runner

    @property
    def deferred_job_ids(self) -> list[str]:
        return sorted(self._deferred)

    @property
    def running_job_ids(self) -> list[str]:
        return sorted(self._running)

    async def enqueue(self, spec: SyncJobSpec) -> SyncJobHandle | None:
        if spec.job_id in self._deferred or spec.job_id in self._running:
            return None
        loop = asyncio.get_running_loop()
        job = _InlineJob(spec=spec, future=loop.create_future())
        if spec.run_at is None or spec.run_at <= self._clock():
            self._launch(job)
        else:
            self._deferred[spec.job_id] = job
        return self._handle(job)

    def _handle(self, job: _InlineJob) -> SyncJobHandle:
        async def _wait(timeout: float | None) -> Any:
            return await asyncio.wait_for(asyncio.shield(job.future), timeout=timeout)

        return SyncJobHandle(job_id=job.spec.job_id, _wait=_wait)

    def _launch(self, job: _InlineJob) -> None:
        task = asyncio.create_task(self._execute(job.spec))
        self._running[job.spec.job_id] = task

        def _done(finished: asyncio.Task[Any]) -> None:
            self._running.pop(job.spec.job_id, None)
            if finished.cancelled():
                job.future.cancel()
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    "inline_sync_job_failed job_id=%s error=%s",
                    job.spec.job_id,
                    type(exc).__name__,
                )
                if not job.future.done():
                    job.future.set_exception(exc)
                    # Mark retrieved; the failure is already logged and the handle may be ignored.
                    job.future.exception()
                return
            if not job.future.done():
                job.future.set_result(finished.result())

        task.add_done_callback(_done)

    async def _execute(self, spec: SyncJobSpec) -> Any:
        if self._runner is None:
            raise RuntimeError("InlineSyncJobQueue has no runner bound")
        attempt = 1
        while True:
            try:
                return await self._runner(spec.integration_id, spec.kind, attempt)
            except Retry as exc:
                if attempt >= self._max_tries:
                    raise
                await asyncio.sleep((exc.defer_score or 0) / 1000.0)
                attempt += 1

    def run_due(self, now: datetime | None = None) -> list[SyncJobHandle]:
        # Start every deferred job whose run time has arrived.
        current = now or self._clock()
        due = [job for job in self._deferred.values() if job.spec.run_at and job.spec.run_at <= current]
        handles: list[SyncJobHandle] = []
        for job in sorted(due, key=lambda item: item.spec.run_at or current):
            self._deferred.pop(job.spec.job_id, None)
            self._launch(job)
            handles.append(self._handle(job))
        return handles

    async def has_pending(self, job_id: str) -> bool:
        return job_id in self._deferred

    async def cancel_pending(self, integration_id: str) -> int:
        removed = 0
        for job_id in list(self._deferred):
            if self._deferred[job_id].spec.integration_id == integration_id:
                self._deferred.pop(job_id).future.cancel()
                removed += 1
        return removed
