from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.config import get_settings
from rostersync.core.errors import ExternalFetchError, ReconciliationError
from rostersync.domain.models import (
    INTEGRATION_STATUS_ACTIVE,
    INTEGRATION_STATUS_ERROR,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SUCCESS,
    Integration,
)
from rostersync.domain.roster import ExternalList, ExternalPerson, SyncResult
from rostersync.persistence.db import SessionLocal
from rostersync.persistence.repos import group_mappings as mappings_repo
from rostersync.persistence.repos import groups as groups_repo
from rostersync.persistence.repos import integrations as integrations_repo
from rostersync.persistence.repos import memberships as memberships_repo
from rostersync.persistence.repos import sync_logs as sync_logs_repo
from rostersync.persistence.repos import users as users_repo
from rostersync.providers.roster.base import RosterProvider
from rostersync.providers.roster.factory import get_roster_provider
from rostersync.services.audit import sanitize_metadata
from rostersync.services.auth.passwords import generate_temporary_password, hash_password
from rostersync.services.integrations import reconcile


logger = logging.getLogger(__name__)

STAGE_STARTED = "STARTED"
STAGE_FETCHING_GROUPS = "FETCHING_GROUPS"
STAGE_FETCHING_PEOPLE = "FETCHING_PEOPLE"
STAGE_RECONCILING = "RECONCILING"
STAGE_FINALIZING = "FINALIZING"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncOutcome:
    # The job layer needs the original exception to decide on retries.
    log_id: str
    result: SyncResult
    error: BaseException | None = None
    stage: str = STAGE_STARTED


@dataclass(frozen=True)
class _PeopleTarget:
    group_id: str
    external_group_id: str
    external_group_name: str


async def _apply_groups(
    session: AsyncSession,
    integration: Integration,
    lists: list[ExternalList],
    result: SyncResult,
) -> None:
    mappings = await mappings_repo.list_mappings(session, integration.id)
    groups = await groups_repo.get_groups_by_ids(session, [m.group_id for m in mappings if m.group_id])
    plan = reconcile.plan_groups(
        lists,
        [
            reconcile.MappingSnapshot(
                id=m.id,
                external_group_id=m.external_group_id,
                external_group_name=m.external_group_name,
                external_group_type=m.external_group_type,
                group_id=m.group_id,
            )
            for m in mappings
        ],
        {
            group.id: reconcile.GroupSnapshot(
                id=group.id,
                name=group.name,
                description=group.description,
                external_id=group.external_id,
            )
            for group in groups.values()
        },
    )
    for external in plan.new_mappings:
        await mappings_repo.create_mapping(
            session,
            integration_id=integration.id,
            external_group_id=external.id,
            external_group_name=external.name,
            external_group_type=external.list_type,
        )
    for refresh in plan.mapping_refreshes:
        await mappings_repo.refresh_mapping_metadata(
            session,
            refresh.mapping_id,
            external_group_name=refresh.external_group_name,
            external_group_type=refresh.external_group_type,
        )
    for refresh in plan.group_refreshes:
        await groups_repo.update_group_from_external(
            session,
            refresh.group_id,
            name=refresh.name,
            description=refresh.description,
            external_id=refresh.external_id,
        )
    await session.commit()
    result.groups_added += plan.groups_added
    result.groups_updated += plan.groups_updated
    result.groups_skipped += plan.groups_skipped


async def _fetch_rosters(
    provider: RosterProvider,
    targets: list[_PeopleTarget],
    metadata: dict[str, Any],
) -> list[reconcile.GroupRoster]:
    # Fetches may overlap; the writes that follow stay serialized in one session.
    semaphore = asyncio.Semaphore(max(1, get_settings().sync_people_fetch_concurrency))

    async def _fetch(target: _PeopleTarget) -> list[ExternalPerson]:
        async with semaphore:
            return await provider.fetch_list_people(target.external_group_id)

    outcomes = await asyncio.gather(*(_fetch(target) for target in targets), return_exceptions=True)
    rosters: list[reconcile.GroupRoster] = []
    failed: list[dict[str, Any]] = []
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, ExternalFetchError):
            # One bad list must not block the rest of the roster.
            logger.warning(
                "sync_group_fetch_failed external_group_id=%s error=%s",
                target.external_group_id,
                outcome,
            )
            failed.append(
                {
                    "externalGroupId": target.external_group_id,
                    "name": target.external_group_name,
                    "error": str(outcome),
                }
            )
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        rosters.append(
            reconcile.GroupRoster(
                group_id=target.group_id,
                external_group_id=target.external_group_id,
                people=outcome,
            )
        )
    if failed:
        metadata["failedGroups"] = failed
    return rosters


async def _apply_people(
    session: AsyncSession,
    integration: Integration,
    rosters: list[reconcile.GroupRoster],
    result: SyncResult,
    metadata: dict[str, Any],
) -> None:
    settings = get_settings()
    external_ids: set[str] = set()
    emails: set[str] = set()
    for roster in rosters:
        for person in roster.people:
            email = reconcile.normalize_email(person.email)
            if email:
                external_ids.add(person.id)
                emails.add(email)
    users = await users_repo.find_users_for_matching(
        session,
        integration.organization_id,
        external_ids=external_ids,
        emails=emails,
    )
    current_members = {
        roster.group_id: await memberships_repo.list_group_member_ids(session, roster.group_id)
        for roster in rosters
    }
    plan = reconcile.plan_people(
        rosters,
        [
            reconcile.UserSnapshot(
                id=user.id,
                email=user.email,
                external_id=user.external_id,
                first_name=user.first_name,
                last_name=user.last_name,
                external_data=user.external_data,
                is_active=user.is_active,
                external_integration_id=user.external_integration_id,
            )
            for user in users
        ],
        current_members,
        integration_id=integration.id,
    )

    for create in plan.creates:
        # Provisioned accounts never learn this password; they must reset it.
        password = generate_temporary_password(settings.temp_password_length)
        password_hash = await asyncio.to_thread(hash_password, password)
        await users_repo.create_user(
            session,
            user_id=create.user_id,
            organization_id=integration.organization_id,
            email=create.email,
            password_hash=password_hash,
            role=settings.default_member_role,
            first_name=create.person.first_name,
            last_name=create.person.last_name,
            external_id=create.person.id,
            external_data=dict(create.person.attributes),
            external_integration_id=integration.id,
        )
    for update in plan.updates:
        await users_repo.update_user_fields(session, update.user_id, update.values)
    await session.flush()

    for change in plan.membership_adds:
        await memberships_repo.add_membership(
            session,
            user_id=change.user_id,
            group_id=change.group_id,
            role=settings.default_membership_role,
        )
    removals_by_group: dict[str, list[str]] = {}
    for change in plan.membership_removals:
        removals_by_group.setdefault(change.group_id, []).append(change.user_id)
    memberships_removed = 0
    for group_id, user_ids in removals_by_group.items():
        memberships_removed += await memberships_repo.remove_memberships(session, group_id, user_ids)
    await session.flush()

    # Removal pass over every active account this integration originated or claimed.
    synced_users = await users_repo.list_sync_originated_users(session, integration.id)
    synced_ids = [user.id for user in synced_users]
    mapped_group_ids = await mappings_repo.list_mapped_group_ids(session, integration.id)
    memberships_by_user = await memberships_repo.list_user_group_ids(session, synced_ids)
    removed = reconcile.plan_removals(synced_ids, memberships_by_user, mapped_group_ids)
    for user_id in removed:
        await memberships_repo.delete_user_memberships(session, user_id)
        await users_repo.deactivate_user(session, user_id)
    await session.commit()

    # Counters only reflect work that committed.
    result.people_added += plan.people_added
    result.people_updated += plan.people_updated
    result.people_removed += len(removed)
    metadata["membershipsAdded"] = len(plan.membership_adds)
    metadata["membershipsRemoved"] = memberships_removed
    if plan.skipped_no_email:
        metadata["peopleSkippedNoEmail"] = plan.skipped_no_email
    if plan.conflicts:
        metadata["conflicts"] = plan.conflicts


def _default_provider_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[Integration], RosterProvider]:
    def _factory(integration: Integration) -> RosterProvider:
        return get_roster_provider(integration, session_factory=session_factory)

    return _factory


async def run_sync(
    integration: Integration,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider_factory: Callable[[Integration], RosterProvider] | None = None,
) -> SyncOutcome:
    """Drive one end-to-end run and always leave a finalized sync log behind.

    Any failure aborts the remaining stages, flips the integration to ERROR and
    is returned on the outcome rather than raised, so callers can classify it.
    """
    factory = session_factory or SessionLocal
    make_provider = provider_factory or _default_provider_factory(factory)
    log_id = uuid4().hex
    started_at = _utc_now()
    start = time.monotonic()
    async with factory() as session:
        await sync_logs_repo.create_sync_log(
            session,
            log_id=log_id,
            integration_id=integration.id,
            started_at=started_at,
        )
        await session.commit()
    logger.info("sync_run_started integration_id=%s log_id=%s", integration.id, log_id)

    outcome = SyncOutcome(log_id=log_id, result=SyncResult())
    result = outcome.result
    metadata: dict[str, Any] = {}
    provider: RosterProvider | None = None
    try:
        provider = make_provider(integration)
        outcome.stage = STAGE_FETCHING_GROUPS
        lists = await provider.fetch_lists()
        metadata["listsFetched"] = len(lists)
        async with factory() as session:
            try:
                await _apply_groups(session, integration, lists, result)
                targets = [
                    _PeopleTarget(
                        group_id=str(mapping.group_id),
                        external_group_id=mapping.external_group_id,
                        external_group_name=mapping.external_group_name,
                    )
                    for mapping in await mappings_repo.list_member_sync_mappings(session, integration.id)
                ]
            except SQLAlchemyError as exc:
                raise ReconciliationError(f"Failed to apply group changes: {type(exc).__name__}") from exc

        outcome.stage = STAGE_FETCHING_PEOPLE
        rosters = await _fetch_rosters(provider, targets, metadata)

        outcome.stage = STAGE_RECONCILING
        async with factory() as session:
            try:
                await _apply_people(session, integration, rosters, result, metadata)
            except SQLAlchemyError as exc:
                raise ReconciliationError(f"Failed to apply roster changes: {type(exc).__name__}") from exc
    except Exception as exc:  # noqa: BLE001 - every failure must land in the sync log
        outcome.error = exc
        result.status = SYNC_STATUS_ERROR
        result.error_message = str(exc) or type(exc).__name__
        metadata["failedStage"] = outcome.stage
        logger.error(
            "sync_run_failed integration_id=%s stage=%s error=%s",
            integration.id,
            outcome.stage,
            type(exc).__name__,
        )
    finally:
        if provider is not None:
            await provider.aclose()

    outcome.stage = STAGE_FINALIZING
    completed_at = _utc_now()
    duration_ms = int((time.monotonic() - start) * 1000)
    result.metadata = sanitize_metadata(metadata)
    async with factory() as session:
        if outcome.error is None:
            await integrations_repo.mark_sync_success(session, integration.id, completed_at=completed_at)
        else:
            await integrations_repo.mark_sync_error(session, integration.id)
        finalized = await sync_logs_repo.finalize_sync_log(
            session,
            log_id,
            status=result.status,
            completed_at=completed_at,
            duration_ms=duration_ms,
            counters={
                "people_added": result.people_added,
                "people_updated": result.people_updated,
                "people_removed": result.people_removed,
                "groups_added": result.groups_added,
                "groups_updated": result.groups_updated,
                "groups_skipped": result.groups_skipped,
            },
            error_message=result.error_message,
            metadata=result.metadata,
        )
        await session.commit()
    if not finalized:
        logger.warning("sync_log_already_finalized log_id=%s", log_id)

    if outcome.error is None:
        integration.status = INTEGRATION_STATUS_ACTIVE
        integration.last_sync_status = SYNC_STATUS_SUCCESS
        integration.last_sync_at = completed_at
    else:
        integration.status = INTEGRATION_STATUS_ERROR
        integration.last_sync_status = SYNC_STATUS_ERROR
    outcome.stage = result.status
    logger.info(
        "sync_run_finished integration_id=%s status=%s duration_ms=%s people_added=%s "
        "people_updated=%s people_removed=%s groups_added=%s groups_updated=%s groups_skipped=%s",
        integration.id,
        result.status,
        duration_ms,
        result.people_added,
        result.people_updated,
        result.people_removed,
        result.groups_added,
        result.groups_updated,
        result.groups_skipped,
    )
    return outcome


async def perform_sync(
    integration: Integration,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider_factory: Callable[[Integration], RosterProvider] | None = None,
) -> SyncResult:
    outcome = await run_sync(
        integration,
        session_factory=session_factory,
        provider_factory=provider_factory,
    )
    return outcome.result
