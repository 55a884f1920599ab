from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.domain.models import (
    INTEGRATION_STATUS_ACTIVE,
    PROVIDER_PLANNING_CENTER,
    SYNC_FREQUENCY_DAILY,
    ExternalGroupMapping,
    Group,
    GroupMember,
    Integration,
    User,
)
from rostersync.domain.roster import OAuthCredentials
from rostersync.persistence.repos import group_mappings as mappings_repo
from rostersync.persistence.repos import groups as groups_repo
from rostersync.persistence.repos import integrations as integrations_repo
from rostersync.services.integrations.vault import seal_credentials


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_credentials(
    *,
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in_s: int = 3600,
) -> OAuthCredentials:
    return OAuthCredentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=_utc_now() + timedelta(seconds=expires_in_s),
        scope="people",
    )


async def create_test_integration(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    organization_id: str = "org-1",
    sync_enabled: bool = False,
    sync_frequency: str = SYNC_FREQUENCY_DAILY,
    status: str = INTEGRATION_STATUS_ACTIVE,
    provider: str = PROVIDER_PLANNING_CENTER,
    credentials: OAuthCredentials | None = None,
) -> Integration:
    # Seed an integration row with real encrypted credentials.
    credentials = credentials or make_credentials()
    sealed = seal_credentials(credentials)
    async with session_factory() as session:
        integration = await integrations_repo.create_integration(
            session,
            integration_id=uuid4().hex,
            organization_id=organization_id,
            provider=provider,
            cipher_text=sealed.cipher_text,
            iv=sealed.iv,
            tag=sealed.tag,
            access_token=credentials.access_token,
            token_expires_at=credentials.expires_at,
            sync_enabled=sync_enabled,
            sync_frequency=sync_frequency,
            status=status,
        )
        await session.commit()
    return integration


async def create_test_group(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    organization_id: str = "org-1",
    name: str = "Group",
) -> Group:
    async with session_factory() as session:
        group = await groups_repo.create_group(session, organization_id=organization_id, name=name)
        await session.commit()
    return group


async def create_linked_mapping(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    integration_id: str,
    external_group_id: str,
    external_group_name: str,
    group_id: str | None,
    external_group_type: str | None = None,
) -> ExternalGroupMapping:
    # Mimic an operator linking an external list to an internal group.
    async with session_factory() as session:
        mapping = await mappings_repo.create_mapping(
            session,
            integration_id=integration_id,
            external_group_id=external_group_id,
            external_group_name=external_group_name,
            external_group_type=external_group_type,
        )
        await session.flush()
        if group_id is not None:
            await mappings_repo.set_mapping_group(session, mapping.id, group_id)
        await session.commit()
    return mapping


async def create_test_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    email: str,
    organization_id: str = "org-1",
    external_id: str | None = None,
    external_integration_id: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    is_active: bool = True,
) -> User:
    async with session_factory() as session:
        user = User(
            id=uuid4().hex,
            organization_id=organization_id,
            email=email,
            password_hash="scrypt$16384$x$y",
            role="MEMBER",
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
            external_id=external_id,
            external_integration_id=external_integration_id,
        )
        session.add(user)
        await session.commit()
    return user


async def add_test_membership(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str,
    group_id: str,
) -> None:
    async with session_factory() as session:
        session.add(GroupMember(user_id=user_id, group_id=group_id, role="member"))
        await session.commit()
