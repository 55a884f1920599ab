from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Prefer JSONB on Postgres while keeping SQLite usable for local runs and tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")

INTEGRATION_STATUS_ACTIVE = "ACTIVE"
INTEGRATION_STATUS_ERROR = "ERROR"

SYNC_STATUS_RUNNING = "RUNNING"
SYNC_STATUS_SUCCESS = "SUCCESS"
SYNC_STATUS_ERROR = "ERROR"

SYNC_FREQUENCY_MANUAL = "MANUAL"
SYNC_FREQUENCY_HOURLY = "HOURLY"
SYNC_FREQUENCY_DAILY = "DAILY"
SYNC_FREQUENCY_WEEKLY = "WEEKLY"
SYNC_FREQUENCIES = (
    SYNC_FREQUENCY_MANUAL,
    SYNC_FREQUENCY_HOURLY,
    SYNC_FREQUENCY_DAILY,
    SYNC_FREQUENCY_WEEKLY,
)

PROVIDER_PLANNING_CENTER = "PLANNING_CENTER"


class Base(DeclarativeBase):
    pass


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", name="uq_integrations_organization_provider"),
        Index("ix_integrations_sync_enabled_status", "sync_enabled", "status"),
    )

    # One external provider connection per organization.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=INTEGRATION_STATUS_ACTIVE)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_frequency: Mapped[str] = mapped_column(String, default=SYNC_FREQUENCY_DAILY)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(String, nullable=True)
    next_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Encrypted credential blob is authoritative; the columns below are a plaintext cache.
    credentials_cipher_text: Mapped[str] = mapped_column(Text)
    credentials_iv: Mapped[str] = mapped_column(String)
    credentials_tag: Mapped[str] = mapped_column(String)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set when the group mirrors an external list.
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        # Emails are unique per organization regardless of case.
        Index("uq_users_organization_email_lower", "organization_id", text("lower(email)"), unique=True),
        Index("ix_users_organization_external_id", "organization_id", "external_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    # Sync-provisioned accounts get a hashed throwaway password and a forced reset.
    password_hash: Mapped[str] = mapped_column(String)
    must_reset_password: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String)
    # Deactivate instead of deleting so history survives roster removals.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_data: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # Integration that created or claimed this account; scopes the removal pass.
    external_integration_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("integrations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_group_members_user_group"),
    )

    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    group_id: Mapped[str] = mapped_column(
        String, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    role: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ExternalGroupMapping(Base):
    __tablename__ = "external_group_mappings"
    __table_args__ = (
        UniqueConstraint(
            "integration_id", "external_group_id", name="uq_external_group_mappings_external"
        ),
    )

    # Link an external list to at most one internal group; the link is operator-owned.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    integration_id: Mapped[str] = mapped_column(
        String, ForeignKey("integrations.id", ondelete="CASCADE"), index=True
    )
    external_group_id: Mapped[str] = mapped_column(String)
    external_group_name: Mapped[str] = mapped_column(String)
    external_group_type: Mapped[str | None] = mapped_column(String, nullable=True)
    group_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True
    )
    sync_members: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_leaders: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SyncLog(Base):
    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_integration_started", "integration_id", "started_at"),
    )

    # One audit row per run, finalized exactly once.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    integration_id: Mapped[str] = mapped_column(
        String, ForeignKey("integrations.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    people_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    people_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    people_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    groups_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    groups_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    groups_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
