from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from rostersync.core.config import get_settings
from rostersync.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

# Owner tokens for in-process locks, keyed by integration id.
_local_owners: dict[str, str] = {}


def _lock_key(integration_id: str) -> str:
    return f"{get_settings().sync_lock_redis_prefix}:{integration_id}"


@dataclass(slots=True)
class SyncLock:
    integration_id: str
    token: str
    redis: Any | None
    local: bool


async def acquire_sync_lock(integration_id: str) -> SyncLock | None:
    # One in-flight run per integration so two reconciliations never race on membership rows.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_resilience_redis()
    if redis is not None:
        ttl_s = max(5, int(settings.sync_lock_ttl_s))
        acquired = await redis.set(_lock_key(integration_id), token, nx=True, ex=ttl_s)
        if not acquired:
            return None
        return SyncLock(integration_id=integration_id, token=token, redis=redis, local=False)

    # Fall back to an in-process lock for inline mode and tests.
    if integration_id in _local_owners:
        return None
    _local_owners[integration_id] = token
    return SyncLock(integration_id=integration_id, token=token, redis=None, local=True)


async def release_sync_lock(lock: SyncLock) -> None:
    # Release only if we still own the token; an expired lock may belong to a newer run.
    if lock.local:
        if _local_owners.get(lock.integration_id) == lock.token:
            _local_owners.pop(lock.integration_id, None)
        return
    if lock.redis is None:
        return
    key = _lock_key(lock.integration_id)
    current = await lock.redis.get(key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(key)
    else:
        logger.warning("sync_lock_lost integration_id=%s", lock.integration_id)


def is_locally_locked(integration_id: str) -> bool:
    return integration_id in _local_owners
