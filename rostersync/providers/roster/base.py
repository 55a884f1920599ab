from __future__ import annotations

from typing import Any, Callable, Protocol

from rostersync.domain.models import Integration
from rostersync.domain.roster import ExternalList, ExternalPerson


class RosterProvider(Protocol):
    async def fetch_all(self, resource: str, *, list_id: str | None = None) -> list[dict[str, Any]]:
        ...

    async def fetch_lists(self) -> list[ExternalList]:
        ...

    async def fetch_list_people(self, list_id: str) -> list[ExternalPerson]:
        ...

    async def fetch_person(self, person_id: str) -> ExternalPerson:
        ...

    async def test_connection(self) -> bool:
        ...

    async def aclose(self) -> None:
        ...


RosterProviderFactory = Callable[[Integration], RosterProvider]
