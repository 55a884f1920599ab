from __future__ import annotations

from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.domain.models import User


def _fold_email(value: str) -> str:
    return value.strip().lower()


async def find_users_for_matching(
    session: AsyncSession,
    organization_id: str,
    *,
    external_ids: set[str],
    emails: set[str],
) -> list[User]:
    # Load only candidates that can match by external id or email.
    if not external_ids and not emails:
        return []
    clauses = []
    if external_ids:
        clauses.append(User.external_id.in_(sorted(external_ids)))
    if emails:
        # Legacy rows may hold mixed-case emails.
        clauses.append(func.lower(func.trim(User.email)).in_(sorted(emails)))
    result = await session.execute(
        select(User).where(User.organization_id == organization_id, or_(*clauses)).order_by(User.id)
    )
    return list(result.scalars().all())


async def create_user(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str,
    email: str,
    password_hash: str,
    role: str,
    first_name: str | None,
    last_name: str | None,
    external_id: str,
    external_data: dict[str, Any],
    external_integration_id: str,
) -> User:
    user = User(
        id=user_id,
        organization_id=organization_id,
        email=_fold_email(email),
        password_hash=password_hash,
        must_reset_password=True,
        role=role,
        first_name=first_name,
        last_name=last_name,
        is_active=True,
        external_id=external_id,
        external_data=external_data,
        external_integration_id=external_integration_id,
    )
    session.add(user)
    return user


async def update_user_fields(session: AsyncSession, user_id: str, values: dict[str, Any]) -> None:
    if not values:
        return
    if "email" in values:
        values = {**values, "email": _fold_email(values["email"])}
    await session.execute(update(User).where(User.id == user_id).values(**values))


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def list_sync_originated_users(session: AsyncSession, integration_id: str) -> list[User]:
    # Inactive accounts were already removed by an earlier run.
    result = await session.execute(
        select(User)
        .where(User.external_integration_id == integration_id, User.is_active.is_(True))
        .order_by(User.id)
    )
    return list(result.scalars().all())


async def deactivate_user(session: AsyncSession, user_id: str) -> None:
    await session.execute(update(User).where(User.id == user_id).values(is_active=False))
