from __future__ import annotations

from dataclasses import asdict
from typing import Any

from rostersync.core.errors import ExternalFetchError
from rostersync.domain.roster import ExternalList, ExternalPerson


class FakeRosterProvider:
    def __init__(
        self,
        lists: list[ExternalList] | None = None,
        people_by_list: dict[str, list[ExternalPerson]] | None = None,
        *,
        failing_lists: set[str] | None = None,
        lists_error: Exception | None = None,
        connection_ok: bool = True,
    ) -> None:
        # Deterministic roster state lets tests drive sync runs without a network.
        self.lists = list(lists or [])
        self.people_by_list = dict(people_by_list or {})
        self.failing_lists = set(failing_lists or set())
        self.lists_error = lists_error
        self.connection_ok = connection_ok
        self.people_requests: list[str] = []
        self.closed = False

    async def fetch_all(self, resource: str, *, list_id: str | None = None) -> list[dict[str, Any]]:
        if resource == "lists":
            return [{"id": item.id, "attributes": asdict(item)} for item in await self.fetch_lists()]
        if resource == "list_people" and list_id:
            return [{"id": person.id, "attributes": asdict(person)} for person in await self.fetch_list_people(list_id)]
        raise ValueError(f"Unknown roster resource: {resource}")

    async def fetch_lists(self) -> list[ExternalList]:
        if self.lists_error is not None:
            raise self.lists_error
        return list(self.lists)

    async def fetch_list_people(self, list_id: str) -> list[ExternalPerson]:
        self.people_requests.append(list_id)
        if list_id in self.failing_lists:
            raise ExternalFetchError(f"Simulated failure for list {list_id}", status_code=503)
        return list(self.people_by_list.get(list_id, []))

    async def fetch_person(self, person_id: str) -> ExternalPerson:
        for people in self.people_by_list.values():
            for person in people:
                if person.id == person_id:
                    return person
        raise ExternalFetchError(f"Person {person_id} not found", status_code=404)

    async def test_connection(self) -> bool:
        return self.connection_ok

    async def aclose(self) -> None:
        self.closed = True
