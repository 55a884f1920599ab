from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.domain.models import SYNC_STATUS_RUNNING, SyncLog


async def create_sync_log(
    session: AsyncSession,
    *,
    log_id: str,
    integration_id: str,
    started_at: datetime,
) -> SyncLog:
    # Provisional status until the run finalizes the row.
    log = SyncLog(
        id=log_id,
        integration_id=integration_id,
        status=SYNC_STATUS_RUNNING,
        started_at=started_at,
        people_added=0,
        people_updated=0,
        people_removed=0,
        groups_added=0,
        groups_updated=0,
        groups_skipped=0,
        metadata_json={},
    )
    session.add(log)
    return log


async def finalize_sync_log(
    session: AsyncSession,
    log_id: str,
    *,
    status: str,
    completed_at: datetime,
    duration_ms: int,
    counters: dict[str, int],
    error_message: str | None,
    metadata: dict[str, Any] | None,
) -> bool:
    # Guard on completed_at so a log can only be finalized once.
    result = await session.execute(
        update(SyncLog)
        .where(SyncLog.id == log_id, SyncLog.completed_at.is_(None))
        .values(
            status=status,
            completed_at=completed_at,
            duration_ms=duration_ms,
            error_message=error_message,
            metadata_json=metadata or {},
            **counters,
        )
    )
    return bool(result.rowcount)


async def get_sync_log(session: AsyncSession, log_id: str) -> SyncLog | None:
    result = await session.execute(select(SyncLog).where(SyncLog.id == log_id))
    return result.scalar_one_or_none()


async def list_sync_logs(
    session: AsyncSession,
    integration_id: str,
    *,
    offset: int = 0,
    limit: int = 50,
) -> list[SyncLog]:
    result = await session.execute(
        select(SyncLog)
        .where(SyncLog.integration_id == integration_id)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_sync_logs(session: AsyncSession, integration_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(SyncLog).where(SyncLog.integration_id == integration_id)
    )
    return int(result.scalar() or 0)
