from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.domain.models import GroupMember


async def list_group_member_ids(session: AsyncSession, group_id: str) -> set[str]:
    result = await session.execute(select(GroupMember.user_id).where(GroupMember.group_id == group_id))
    return {row[0] for row in result.fetchall()}


async def list_user_group_ids(session: AsyncSession, user_ids: list[str]) -> dict[str, set[str]]:
    # Map each user to the groups they belong to for the removal pass.
    memberships: dict[str, set[str]] = {user_id: set() for user_id in user_ids}
    if not user_ids:
        return memberships
    result = await session.execute(
        select(GroupMember.user_id, GroupMember.group_id).where(GroupMember.user_id.in_(user_ids))
    )
    for user_id, group_id in result.fetchall():
        memberships.setdefault(user_id, set()).add(group_id)
    return memberships


async def add_membership(session: AsyncSession, *, user_id: str, group_id: str, role: str) -> GroupMember:
    membership = GroupMember(user_id=user_id, group_id=group_id, role=role)
    session.add(membership)
    return membership


async def remove_memberships(session: AsyncSession, group_id: str, user_ids: list[str]) -> int:
    if not user_ids:
        return 0
    result = await session.execute(
        delete(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id.in_(user_ids))
    )
    return int(result.rowcount or 0)


async def delete_user_memberships(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(delete(GroupMember).where(GroupMember.user_id == user_id))
    return int(result.rowcount or 0)
