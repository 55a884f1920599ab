from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.domain.models import Group


async def create_group(
    session: AsyncSession,
    *,
    organization_id: str,
    name: str,
    description: str | None = None,
    group_id: str | None = None,
) -> Group:
    group = Group(
        id=group_id or uuid4().hex,
        organization_id=organization_id,
        name=name,
        description=description,
    )
    session.add(group)
    return group


async def get_group(session: AsyncSession, organization_id: str, group_id: str) -> Group | None:
    # Return None for cross-organization ids to keep 404 semantics.
    result = await session.execute(
        select(Group).where(Group.id == group_id, Group.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_groups_by_ids(session: AsyncSession, group_ids: list[str]) -> dict[str, Group]:
    if not group_ids:
        return {}
    result = await session.execute(select(Group).where(Group.id.in_(group_ids)))
    return {group.id: group for group in result.scalars().all()}


async def update_group_from_external(
    session: AsyncSession,
    group_id: str,
    *,
    name: str,
    description: str | None,
    external_id: str,
) -> None:
    await session.execute(
        update(Group)
        .where(Group.id == group_id)
        .values(name=name, description=description, external_id=external_id)
    )
