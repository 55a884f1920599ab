from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.errors import ProviderConfigError
from rostersync.domain.models import PROVIDER_PLANNING_CENTER, Integration
from rostersync.providers.roster.base import RosterProvider
from rostersync.providers.roster.fake import FakeRosterProvider
from rostersync.providers.roster.planning_center import PlanningCenterRosterProvider


PROVIDER_FAKE = "FAKE"


def get_roster_provider(
    integration: Integration,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RosterProvider:
    provider = (integration.provider or "").upper()

    if provider == PROVIDER_PLANNING_CENTER:
        return PlanningCenterRosterProvider(integration, session_factory=session_factory)
    if provider == PROVIDER_FAKE:
        # Empty roster for local smoke runs without provider credentials.
        return FakeRosterProvider()

    raise ProviderConfigError(f"Unsupported roster provider: {integration.provider}")
