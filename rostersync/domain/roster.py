from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from rostersync.domain.models import SYNC_STATUS_SUCCESS


@dataclass(frozen=True)
class OAuthCredentials:
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str
    token_type: str = "bearer"

    def to_payload(self) -> dict[str, Any]:
        # Serialize with ISO timestamps so the encrypted blob stays JSON.
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "scope": self.scope,
            "token_type": self.token_type,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> OAuthCredentials:
        expires_at = datetime.fromisoformat(str(payload["expires_at"]))
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload["refresh_token"]),
            expires_at=expires_at,
            scope=str(payload.get("scope") or ""),
            token_type=str(payload.get("token_type") or "bearer"),
        )

    def rotate(
        self,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> OAuthCredentials:
        # Providers may omit the refresh token on refresh; keep the previous one then.
        return OAuthCredentials(
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            scope=self.scope,
            token_type=self.token_type,
        )


@dataclass(frozen=True)
class ExternalList:
    id: str
    name: str
    list_type: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ExternalPerson:
    id: str
    email: str | None
    first_name: str | None = None
    last_name: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncResult:
    status: str = SYNC_STATUS_SUCCESS
    people_added: int = 0
    people_updated: int = 0
    people_removed: int = 0
    groups_added: int = 0
    groups_updated: int = 0
    groups_skipped: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
