from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import uuid4

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.errors import (
    ExternalFetchError,
    GroupNotFoundError,
    IntegrationNotFoundError,
    InvalidSyncSettingsError,
    MappingNotFoundError,
)
from rostersync.domain.models import (
    INTEGRATION_STATUS_ACTIVE,
    INTEGRATION_STATUS_ERROR,
    PROVIDER_PLANNING_CENTER,
    SYNC_FREQUENCIES,
    SYNC_FREQUENCY_DAILY,
    SYNC_FREQUENCY_MANUAL,
    ExternalGroupMapping,
    Integration,
    SyncLog,
)
from rostersync.persistence.db import SessionLocal
from rostersync.persistence.repos import group_mappings as mappings_repo
from rostersync.persistence.repos import groups as groups_repo
from rostersync.persistence.repos import integrations as integrations_repo
from rostersync.persistence.repos import sync_logs as sync_logs_repo
from rostersync.providers.roster.base import RosterProvider
from rostersync.providers.roster.factory import get_roster_provider
from rostersync.services.integrations import oauth, vault
from rostersync.services.integrations.jobs import SyncJobHandle
from rostersync.services.integrations.scheduler import SyncScheduler, ensure_utc


logger = logging.getLogger(__name__)

MAX_SYNC_LOG_PAGE = 200
_UNSET: Any = object()


def _iso(value: Any) -> str | None:
    normalized = ensure_utc(value)
    return normalized.isoformat() if normalized is not None else None


class IntegrationAdminService:
    """Operator-facing operations behind the admin HTTP layer.

    Every method opens its own short sessions; scheduling side effects go
    through the injected ``SyncScheduler``.
    """

    def __init__(
        self,
        scheduler: SyncScheduler,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        provider_factory: Callable[[Integration], RosterProvider] | None = None,
        token_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._session_factory = session_factory or SessionLocal
        self._provider_factory = provider_factory or self._default_provider
        self._token_client = token_client

    def _default_provider(self, integration: Integration) -> RosterProvider:
        return get_roster_provider(integration, session_factory=self._session_factory)

    async def _require_integration(self, session: AsyncSession, integration_id: str) -> Integration:
        integration = await integrations_repo.get_integration(session, integration_id)
        if integration is None:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        return integration

    def start_authorization(self, organization_id: str) -> str:
        return oauth.build_authorize_url(oauth.build_oauth_state(organization_id))

    async def complete_authorization(self, code: str, state: str) -> Integration:
        # The signed state is the only trusted source of the organization id.
        organization_id = oauth.parse_oauth_state(state)
        return await self.connect_integration(organization_id, code)

    async def connect_integration(self, organization_id: str, code: str) -> Integration:
        credentials = await oauth.exchange_code_for_credentials(code, client=self._token_client)
        async with self._session_factory() as session:
            existing = await integrations_repo.get_integration_for_provider(
                session, organization_id, PROVIDER_PLANNING_CENTER
            )
            if existing is not None:
                # Reconnect in place so mappings and logs stay attached.
                await vault.store_credentials(session, existing.id, credentials)
                await integrations_repo.set_status(session, existing.id, INTEGRATION_STATUS_ACTIVE)
                await session.commit()
                await session.refresh(existing)
                integration = existing
            else:
                sealed = vault.seal_credentials(credentials)
                integration = await integrations_repo.create_integration(
                    session,
                    integration_id=uuid4().hex,
                    organization_id=organization_id,
                    provider=PROVIDER_PLANNING_CENTER,
                    cipher_text=sealed.cipher_text,
                    iv=sealed.iv,
                    tag=sealed.tag,
                    access_token=credentials.access_token,
                    token_expires_at=credentials.expires_at,
                    sync_enabled=False,
                    sync_frequency=SYNC_FREQUENCY_DAILY,
                )
                await session.commit()
        logger.info(
            "integration_connected integration_id=%s organization_id=%s reconnected=%s",
            integration.id,
            organization_id,
            existing is not None,
        )

        provider = self._provider_factory(integration)
        try:
            if not await provider.test_connection():
                async with self._session_factory() as session:
                    await integrations_repo.set_status(session, integration.id, INTEGRATION_STATUS_ERROR)
                    await session.commit()
                integration.status = INTEGRATION_STATUS_ERROR
                logger.warning("integration_connection_test_failed integration_id=%s", integration.id)
                return integration
            try:
                lists = await provider.fetch_lists()
            except ExternalFetchError as exc:
                # The first sync creates the mappings if the initial listing fails.
                logger.warning(
                    "integration_initial_lists_failed integration_id=%s error=%s",
                    integration.id,
                    exc,
                )
                lists = []
        finally:
            await provider.aclose()

        async with self._session_factory() as session:
            seen: set[str] = set()
            for external in lists:
                if external.id in seen:
                    continue
                seen.add(external.id)
                if await mappings_repo.get_mapping_by_external_id(session, integration.id, external.id):
                    continue
                await mappings_repo.create_mapping(
                    session,
                    integration_id=integration.id,
                    external_group_id=external.id,
                    external_group_name=external.name,
                    external_group_type=external.list_type,
                )
            await session.commit()
        if existing is not None:
            await self._scheduler.schedule_sync_job(integration.id)
        return integration

    async def reauthorize_integration(self, integration_id: str, code: str) -> Integration:
        credentials = await oauth.exchange_code_for_credentials(code, client=self._token_client)
        async with self._session_factory() as session:
            await self._require_integration(session, integration_id)
            await vault.store_credentials(session, integration_id, credentials)
            await integrations_repo.set_status(session, integration_id, INTEGRATION_STATUS_ACTIVE)
            await session.commit()
        logger.info("integration_reauthorized integration_id=%s", integration_id)
        await self._scheduler.schedule_sync_job(integration_id)
        return await self.get_integration(integration_id)

    async def update_integration_settings(
        self,
        integration_id: str,
        *,
        sync_enabled: bool | None = None,
        sync_frequency: str | None = None,
    ) -> Integration:
        frequency = sync_frequency.upper() if sync_frequency is not None else None
        if frequency is not None and frequency not in SYNC_FREQUENCIES:
            raise InvalidSyncSettingsError(f"Unsupported sync frequency: {sync_frequency}")
        async with self._session_factory() as session:
            before = await self._require_integration(session, integration_id)
            previous_frequency = before.sync_frequency
            await integrations_repo.update_settings(
                session,
                integration_id,
                sync_enabled=sync_enabled,
                sync_frequency=frequency,
            )
            await session.commit()

        integration = await self.get_integration(integration_id)
        if not integration.sync_enabled or integration.sync_frequency == SYNC_FREQUENCY_MANUAL:
            await self._scheduler.cancel_scheduled(integration_id)
        else:
            if previous_frequency != integration.sync_frequency:
                # The pending run was computed for the old cadence.
                await self._scheduler.cancel_scheduled(integration_id)
            await self._scheduler.schedule_sync_job(integration_id)
        return await self.get_integration(integration_id)

    async def disconnect_integration(self, integration_id: str) -> None:
        await self._scheduler.cancel_scheduled(integration_id)
        async with self._session_factory() as session:
            deleted = await integrations_repo.delete_integration(session, integration_id)
            await session.commit()
        if not deleted:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        logger.info("integration_disconnected integration_id=%s", integration_id)

    async def list_integrations(self, organization_id: str) -> list[Integration]:
        async with self._session_factory() as session:
            return await integrations_repo.list_integrations(session, organization_id)

    async def get_integration(self, integration_id: str) -> Integration:
        async with self._session_factory() as session:
            return await self._require_integration(session, integration_id)

    async def list_group_mappings(self, integration_id: str) -> list[ExternalGroupMapping]:
        async with self._session_factory() as session:
            await self._require_integration(session, integration_id)
            return await mappings_repo.list_mappings(session, integration_id)

    async def _get_mapping(self, integration_id: str, mapping_id: str) -> ExternalGroupMapping:
        async with self._session_factory() as session:
            mapping = await mappings_repo.get_mapping(session, integration_id, mapping_id)
        if mapping is None:
            raise MappingNotFoundError(f"Mapping {mapping_id} not found")
        return mapping

    async def update_group_mapping(
        self,
        integration_id: str,
        mapping_id: str,
        *,
        group_id: str | None = _UNSET,
        sync_members: bool | None = None,
        sync_leaders: bool | None = None,
    ) -> ExternalGroupMapping:
        async with self._session_factory() as session:
            integration = await self._require_integration(session, integration_id)
            mapping = await mappings_repo.get_mapping(session, integration_id, mapping_id)
            if mapping is None:
                raise MappingNotFoundError(f"Mapping {mapping_id} not found")
            if group_id is not _UNSET:
                if group_id is not None:
                    # Links never cross organizations.
                    group = await groups_repo.get_group(session, integration.organization_id, group_id)
                    if group is None:
                        raise GroupNotFoundError(f"Group {group_id} not found")
                await mappings_repo.set_mapping_group(session, mapping_id, group_id)
            await mappings_repo.update_mapping_flags(
                session,
                mapping_id,
                sync_members=sync_members,
                sync_leaders=sync_leaders,
            )
            await session.commit()
        logger.info("group_mapping_updated integration_id=%s mapping_id=%s", integration_id, mapping_id)
        return await self._get_mapping(integration_id, mapping_id)

    async def link_group_mapping(self, integration_id: str, mapping_id: str, group_id: str) -> ExternalGroupMapping:
        return await self.update_group_mapping(integration_id, mapping_id, group_id=group_id)

    async def unlink_group_mapping(self, integration_id: str, mapping_id: str) -> ExternalGroupMapping:
        return await self.update_group_mapping(integration_id, mapping_id, group_id=None)

    async def trigger_sync(self, integration_id: str) -> SyncJobHandle | None:
        return await self._scheduler.trigger_immediate(integration_id)

    async def get_sync_status(self, integration_id: str) -> dict[str, Any]:
        integration = await self.get_integration(integration_id)
        return {
            "status": integration.status,
            "sync_enabled": integration.sync_enabled,
            "sync_frequency": integration.sync_frequency,
            "last_sync_at": _iso(integration.last_sync_at),
            "last_sync_status": integration.last_sync_status,
            "next_sync_at": _iso(integration.next_sync_at),
        }

    async def list_sync_logs(
        self,
        integration_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[SyncLog], int]:
        # Clamp paging so one request cannot pull the whole history.
        limit = max(1, min(int(limit), MAX_SYNC_LOG_PAGE))
        offset = max(0, int(offset))
        async with self._session_factory() as session:
            await self._require_integration(session, integration_id)
            logs = await sync_logs_repo.list_sync_logs(session, integration_id, offset=offset, limit=limit)
            total = await sync_logs_repo.count_sync_logs(session, integration_id)
        return logs, total
