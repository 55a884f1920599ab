from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable
from uuid import uuid4

from rostersync.domain.roster import ExternalList, ExternalPerson


# Pure planning only: callers load snapshots, apply the plan, and own the transaction.


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    email = value.strip().lower()
    return email or None


@dataclass(frozen=True)
class MappingSnapshot:
    id: str
    external_group_id: str
    external_group_name: str
    external_group_type: str | None
    group_id: str | None


@dataclass(frozen=True)
class GroupSnapshot:
    id: str
    name: str
    description: str | None
    external_id: str | None


@dataclass(frozen=True)
class UserSnapshot:
    id: str
    email: str
    external_id: str | None
    first_name: str | None
    last_name: str | None
    external_data: dict[str, Any] | None
    is_active: bool
    external_integration_id: str | None


@dataclass(frozen=True)
class MappingRefresh:
    mapping_id: str
    external_group_name: str
    external_group_type: str | None


@dataclass(frozen=True)
class GroupRefresh:
    group_id: str
    name: str
    description: str | None
    external_id: str


@dataclass
class GroupPlan:
    new_mappings: list[ExternalList] = field(default_factory=list)
    mapping_refreshes: list[MappingRefresh] = field(default_factory=list)
    group_refreshes: list[GroupRefresh] = field(default_factory=list)
    groups_added: int = 0
    groups_updated: int = 0
    groups_skipped: int = 0


@dataclass(frozen=True)
class GroupRoster:
    group_id: str
    external_group_id: str
    people: list[ExternalPerson]


@dataclass(frozen=True)
class PersonCreate:
    user_id: str
    email: str
    person: ExternalPerson


@dataclass(frozen=True)
class PersonUpdate:
    user_id: str
    values: dict[str, Any]


@dataclass(frozen=True)
class MembershipChange:
    group_id: str
    user_id: str


@dataclass
class PeoplePlan:
    creates: list[PersonCreate] = field(default_factory=list)
    updates: list[PersonUpdate] = field(default_factory=list)
    membership_adds: list[MembershipChange] = field(default_factory=list)
    membership_removals: list[MembershipChange] = field(default_factory=list)
    skipped_no_email: int = 0
    conflicts: list[dict[str, str]] = field(default_factory=list)

    @property
    def people_added(self) -> int:
        return len(self.creates)

    @property
    def people_updated(self) -> int:
        return len(self.updates)


def plan_groups(
    lists: list[ExternalList],
    mappings: list[MappingSnapshot],
    groups: dict[str, GroupSnapshot],
) -> GroupPlan:
    """Plan mapping creation and metadata refresh for the observed external lists.

    Mappings missing from ``lists`` are left alone; a page that omits a list is not
    proof the list was deleted. ``group_id`` is never part of the plan, so an
    operator-set link survives every run.
    """
    plan = GroupPlan()
    by_external = {mapping.external_group_id: mapping for mapping in mappings}
    seen: set[str] = set()
    for external in lists:
        if external.id in seen:
            continue
        seen.add(external.id)
        mapping = by_external.get(external.id)
        if mapping is None:
            plan.new_mappings.append(external)
            plan.groups_added += 1
            continue

        changed = False
        if mapping.external_group_name != external.name or mapping.external_group_type != external.list_type:
            plan.mapping_refreshes.append(
                MappingRefresh(
                    mapping_id=mapping.id,
                    external_group_name=external.name,
                    external_group_type=external.list_type,
                )
            )
            changed = True

        group = groups.get(mapping.group_id) if mapping.group_id else None
        if group is None:
            # Unlinked mappings feed nothing downstream.
            plan.groups_skipped += 1
            continue
        if (group.name, group.description, group.external_id) != (
            external.name,
            external.description,
            external.id,
        ):
            plan.group_refreshes.append(
                GroupRefresh(
                    group_id=group.id,
                    name=external.name,
                    description=external.description,
                    external_id=external.id,
                )
            )
            changed = True
        if changed:
            plan.groups_updated += 1
        else:
            plan.groups_skipped += 1
    return plan


def _person_changes(
    user: UserSnapshot,
    person: ExternalPerson,
    email: str,
    integration_id: str,
    email_owner: UserSnapshot | None,
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if user.first_name != person.first_name:
        values["first_name"] = person.first_name
    if user.last_name != person.last_name:
        values["last_name"] = person.last_name
    if (user.external_data or {}) != person.attributes:
        values["external_data"] = dict(person.attributes)
    if user.external_id != person.id:
        values["external_id"] = person.id
    if user.external_integration_id != integration_id:
        values["external_integration_id"] = integration_id
    if not user.is_active:
        values["is_active"] = True
    if normalize_email(user.email) != email and (email_owner is None or email_owner.id == user.id):
        values["email"] = email
    return values


def plan_people(
    rosters: list[GroupRoster],
    users: list[UserSnapshot],
    current_members: dict[str, set[str]],
    *,
    integration_id: str,
    id_factory: Callable[[], str] | None = None,
) -> PeoplePlan:
    """Plan person upserts and exact membership sets for each fetched roster.

    Matching goes by external id first. Email is a fallback that only claims an
    account with no external id; an email already held by a different external
    person is reported as a conflict and left untouched. Each external person
    is created or updated at most once per run even when listed in several
    groups.
    """
    make_id = id_factory or (lambda: uuid4().hex)
    plan = PeoplePlan()
    by_id = {user.id: user for user in users}
    by_external = {user.external_id: user.id for user in users if user.external_id}
    by_email: dict[str, str] = {}
    for user in users:
        email = normalize_email(user.email)
        if email:
            by_email.setdefault(email, user.id)
    resolved: dict[str, str] = {}
    # Several mappings may point at one group; its exact set is the union of their rosters.
    present_by_group: dict[str, set[str]] = {}

    for roster in rosters:
        present = present_by_group.setdefault(roster.group_id, set())
        existing = current_members.get(roster.group_id, set())
        for person in roster.people:
            email = normalize_email(person.email)
            if not email:
                plan.skipped_no_email += 1
                continue

            user_id = resolved.get(person.id)
            if user_id is None:
                user_id = by_external.get(person.id)
                if user_id is None and email in by_email:
                    candidate = by_id[by_email[email]]
                    if candidate.external_id and candidate.external_id != person.id:
                        plan.conflicts.append(
                            {"externalId": person.id, "reason": "email_owned_by_other_external_person"}
                        )
                        continue
                    user_id = candidate.id

                if user_id is None:
                    user_id = make_id()
                    plan.creates.append(PersonCreate(user_id=user_id, email=email, person=person))
                    by_id[user_id] = UserSnapshot(
                        id=user_id,
                        email=email,
                        external_id=person.id,
                        first_name=person.first_name,
                        last_name=person.last_name,
                        external_data=dict(person.attributes),
                        is_active=True,
                        external_integration_id=integration_id,
                    )
                    by_email[email] = user_id
                else:
                    user = by_id[user_id]
                    owner_id = by_email.get(email)
                    owner = by_id.get(owner_id) if owner_id else None
                    values = _person_changes(user, person, email, integration_id, owner)
                    if owner is not None and owner.id != user.id and normalize_email(user.email) != email:
                        plan.conflicts.append({"externalId": person.id, "reason": "email_in_use"})
                    if values:
                        plan.updates.append(PersonUpdate(user_id=user_id, values=values))
                        by_id[user_id] = replace(user, **values)
                        if "email" in values:
                            by_email[email] = user_id
                by_external[person.id] = user_id
                resolved[person.id] = user_id

            if user_id in present:
                continue
            present.add(user_id)
            if user_id not in existing:
                plan.membership_adds.append(MembershipChange(group_id=roster.group_id, user_id=user_id))

    for group_id, present in present_by_group.items():
        for stale in sorted(current_members.get(group_id, set()) - present):
            plan.membership_removals.append(MembershipChange(group_id=group_id, user_id=stale))
    return plan


def plan_removals(
    synced_user_ids: list[str],
    memberships_by_user: dict[str, set[str]],
    mapped_group_ids: set[str],
) -> list[str]:
    # A synced person outside every mapped group is deactivated, never deleted.
    return [
        user_id
        for user_id in synced_user_ids
        if not (memberships_by_user.get(user_id, set()) & mapped_group_ids)
    ]
