from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.domain.models import ExternalGroupMapping


async def list_mappings(session: AsyncSession, integration_id: str) -> list[ExternalGroupMapping]:
    result = await session.execute(
        select(ExternalGroupMapping)
        .where(ExternalGroupMapping.integration_id == integration_id)
        .order_by(ExternalGroupMapping.external_group_name, ExternalGroupMapping.id)
    )
    return list(result.scalars().all())


async def get_mapping(
    session: AsyncSession, integration_id: str, mapping_id: str
) -> ExternalGroupMapping | None:
    # Scope lookups to the integration so operators cannot edit another org's mapping.
    result = await session.execute(
        select(ExternalGroupMapping).where(
            ExternalGroupMapping.id == mapping_id,
            ExternalGroupMapping.integration_id == integration_id,
        )
    )
    return result.scalar_one_or_none()


async def get_mapping_by_external_id(
    session: AsyncSession, integration_id: str, external_group_id: str
) -> ExternalGroupMapping | None:
    result = await session.execute(
        select(ExternalGroupMapping).where(
            ExternalGroupMapping.integration_id == integration_id,
            ExternalGroupMapping.external_group_id == external_group_id,
        )
    )
    return result.scalar_one_or_none()


async def create_mapping(
    session: AsyncSession,
    *,
    integration_id: str,
    external_group_id: str,
    external_group_name: str,
    external_group_type: str | None,
) -> ExternalGroupMapping:
    # New mappings start unlinked; only an operator sets group_id.
    mapping = ExternalGroupMapping(
        id=uuid4().hex,
        integration_id=integration_id,
        external_group_id=external_group_id,
        external_group_name=external_group_name,
        external_group_type=external_group_type,
        group_id=None,
        sync_members=True,
        sync_leaders=False,
    )
    session.add(mapping)
    return mapping


async def refresh_mapping_metadata(
    session: AsyncSession,
    mapping_id: str,
    *,
    external_group_name: str,
    external_group_type: str | None,
) -> None:
    # Never touches group_id: the operator link is preserved across syncs.
    await session.execute(
        update(ExternalGroupMapping)
        .where(ExternalGroupMapping.id == mapping_id)
        .values(external_group_name=external_group_name, external_group_type=external_group_type)
    )


async def list_member_sync_mappings(session: AsyncSession, integration_id: str) -> list[ExternalGroupMapping]:
    # Mapped groups with member sync enabled are the only person-sync inputs.
    result = await session.execute(
        select(ExternalGroupMapping)
        .where(
            ExternalGroupMapping.integration_id == integration_id,
            ExternalGroupMapping.group_id.is_not(None),
            ExternalGroupMapping.sync_members.is_(True),
        )
        .order_by(ExternalGroupMapping.external_group_name, ExternalGroupMapping.id)
    )
    return list(result.scalars().all())


async def list_mapped_group_ids(session: AsyncSession, integration_id: str) -> set[str]:
    result = await session.execute(
        select(ExternalGroupMapping.group_id).where(
            ExternalGroupMapping.integration_id == integration_id,
            ExternalGroupMapping.group_id.is_not(None),
        )
    )
    return {row[0] for row in result.fetchall() if row[0]}


async def set_mapping_group(session: AsyncSession, mapping_id: str, group_id: str | None) -> None:
    await session.execute(
        update(ExternalGroupMapping).where(ExternalGroupMapping.id == mapping_id).values(group_id=group_id)
    )


async def update_mapping_flags(
    session: AsyncSession,
    mapping_id: str,
    *,
    sync_members: bool | None = None,
    sync_leaders: bool | None = None,
) -> None:
    values: dict[str, bool] = {}
    if sync_members is not None:
        values["sync_members"] = sync_members
    if sync_leaders is not None:
        values["sync_leaders"] = sync_leaders
    if not values:
        return
    await session.execute(
        update(ExternalGroupMapping).where(ExternalGroupMapping.id == mapping_id).values(**values)
    )
