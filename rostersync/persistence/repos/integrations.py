from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.domain.models import (
    INTEGRATION_STATUS_ACTIVE,
    INTEGRATION_STATUS_ERROR,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SUCCESS,
    ExternalGroupMapping,
    Integration,
    SyncLog,
    User,
)


async def create_integration(
    session: AsyncSession,
    *,
    integration_id: str,
    organization_id: str,
    provider: str,
    cipher_text: str,
    iv: str,
    tag: str,
    access_token: str,
    token_expires_at: datetime,
    sync_enabled: bool,
    sync_frequency: str,
    status: str = INTEGRATION_STATUS_ACTIVE,
) -> Integration:
    # Credentials are written together with the row so the cache never precedes the blob.
    integration = Integration(
        id=integration_id,
        organization_id=organization_id,
        provider=provider,
        status=status,
        sync_enabled=sync_enabled,
        sync_frequency=sync_frequency,
        credentials_cipher_text=cipher_text,
        credentials_iv=iv,
        credentials_tag=tag,
        access_token=access_token,
        token_expires_at=token_expires_at,
    )
    session.add(integration)
    return integration


async def get_integration(session: AsyncSession, integration_id: str) -> Integration | None:
    result = await session.execute(select(Integration).where(Integration.id == integration_id))
    return result.scalar_one_or_none()


async def get_integration_for_provider(
    session: AsyncSession, organization_id: str, provider: str
) -> Integration | None:
    result = await session.execute(
        select(Integration).where(
            Integration.organization_id == organization_id, Integration.provider == provider
        )
    )
    return result.scalar_one_or_none()


async def list_integrations(session: AsyncSession, organization_id: str) -> list[Integration]:
    result = await session.execute(
        select(Integration)
        .where(Integration.organization_id == organization_id)
        .order_by(Integration.created_at.desc(), Integration.id)
    )
    return list(result.scalars().all())


async def list_schedulable_integrations(session: AsyncSession) -> list[Integration]:
    # Only enabled, healthy integrations get their schedules re-armed at startup.
    result = await session.execute(
        select(Integration)
        .where(Integration.sync_enabled.is_(True), Integration.status == INTEGRATION_STATUS_ACTIVE)
        .order_by(Integration.id)
    )
    return list(result.scalars().all())


async def update_credentials(
    session: AsyncSession,
    integration_id: str,
    *,
    cipher_text: str,
    iv: str,
    tag: str,
    access_token: str,
    token_expires_at: datetime,
) -> int:
    # Single statement so blob and plaintext cache rotate together.
    result = await session.execute(
        update(Integration)
        .where(Integration.id == integration_id)
        .values(
            credentials_cipher_text=cipher_text,
            credentials_iv=iv,
            credentials_tag=tag,
            access_token=access_token,
            token_expires_at=token_expires_at,
        )
    )
    return int(result.rowcount or 0)


async def mark_sync_success(session: AsyncSession, integration_id: str, *, completed_at: datetime) -> None:
    await session.execute(
        update(Integration)
        .where(Integration.id == integration_id)
        .values(
            last_sync_at=completed_at,
            last_sync_status=SYNC_STATUS_SUCCESS,
            status=INTEGRATION_STATUS_ACTIVE,
        )
    )


async def mark_sync_error(session: AsyncSession, integration_id: str) -> None:
    await session.execute(
        update(Integration)
        .where(Integration.id == integration_id)
        .values(last_sync_status=SYNC_STATUS_ERROR, status=INTEGRATION_STATUS_ERROR)
    )


async def set_status(session: AsyncSession, integration_id: str, status: str) -> None:
    await session.execute(update(Integration).where(Integration.id == integration_id).values(status=status))


async def set_next_sync_at(session: AsyncSession, integration_id: str, next_sync_at: datetime | None) -> None:
    await session.execute(
        update(Integration).where(Integration.id == integration_id).values(next_sync_at=next_sync_at)
    )


async def update_settings(
    session: AsyncSession,
    integration_id: str,
    *,
    sync_enabled: bool | None = None,
    sync_frequency: str | None = None,
) -> None:
    values: dict[str, object] = {}
    if sync_enabled is not None:
        values["sync_enabled"] = sync_enabled
    if sync_frequency is not None:
        values["sync_frequency"] = sync_frequency
    if not values:
        return
    await session.execute(update(Integration).where(Integration.id == integration_id).values(**values))


async def delete_integration(session: AsyncSession, integration_id: str) -> int:
    # Delete dependents explicitly so the cascade holds even without FK enforcement.
    await session.execute(delete(ExternalGroupMapping).where(ExternalGroupMapping.integration_id == integration_id))
    await session.execute(delete(SyncLog).where(SyncLog.integration_id == integration_id))
    await session.execute(
        update(User).where(User.external_integration_id == integration_id).values(external_integration_id=None)
    )
    result = await session.execute(delete(Integration).where(Integration.id == integration_id))
    return int(result.rowcount or 0)
