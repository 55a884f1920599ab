"""create roster sync tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Store one provider connection per organization with encrypted credentials.
    op.create_table(
        "integrations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("sync_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("sync_frequency", sa.String(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(), nullable=True),
        sa.Column("next_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credentials_cipher_text", sa.Text(), nullable=False),
        sa.Column("credentials_iv", sa.String(), nullable=False),
        sa.Column("credentials_tag", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "provider", name="uq_integrations_organization_provider"),
    )
    op.create_index("ix_integrations_organization_id", "integrations", ["organization_id"], unique=False)
    op.create_index(
        "ix_integrations_sync_enabled_status",
        "integrations",
        ["sync_enabled", "status"],
        unique=False,
    )

    op.create_table(
        "groups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_groups_organization_id", "groups", ["organization_id"], unique=False)

    # Users keep external identity fields so later runs match instead of duplicating.
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("must_reset_password", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("external_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("external_integration_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["external_integration_id"], ["integrations.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"], unique=False)
    op.create_index(
        "uq_users_organization_email_lower",
        "users",
        ["organization_id", sa.text("lower(email)")],
        unique=True,
    )
    op.create_index(
        "ix_users_organization_external_id",
        "users",
        ["organization_id", "external_id"],
        unique=False,
    )
    op.create_index("ix_users_external_integration_id", "users", ["external_integration_id"], unique=False)

    op.create_table(
        "group_members",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("group_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "group_id"),
        sa.UniqueConstraint("user_id", "group_id", name="uq_group_members_user_group"),
    )
    op.create_index("ix_group_members_group_id", "group_members", ["group_id"], unique=False)

    # Operator-curated links from external lists to internal groups.
    op.create_table(
        "external_group_mappings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("external_group_id", sa.String(), nullable=False),
        sa.Column("external_group_name", sa.String(), nullable=False),
        sa.Column("external_group_type", sa.String(), nullable=True),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("sync_members", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("sync_leaders", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["integration_id"], ["integrations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "integration_id",
            "external_group_id",
            name="uq_external_group_mappings_external",
        ),
    )
    op.create_index(
        "ix_external_group_mappings_integration_id",
        "external_group_mappings",
        ["integration_id"],
        unique=False,
    )
    op.create_index(
        "ix_external_group_mappings_group_id",
        "external_group_mappings",
        ["group_id"],
        unique=False,
    )

    # Immutable per-run audit rows for operator history.
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("people_added", sa.Integer(), server_default="0", nullable=False),
        sa.Column("people_updated", sa.Integer(), server_default="0", nullable=False),
        sa.Column("people_removed", sa.Integer(), server_default="0", nullable=False),
        sa.Column("groups_added", sa.Integer(), server_default="0", nullable=False),
        sa.Column("groups_updated", sa.Integer(), server_default="0", nullable=False),
        sa.Column("groups_skipped", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["integration_id"], ["integrations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_sync_logs_integration_id", "sync_logs", ["integration_id"], unique=False)
    op.create_index(
        "ix_sync_logs_integration_started",
        "sync_logs",
        ["integration_id", "started_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_sync_logs_integration_started", table_name="sync_logs")
    op.drop_index("ix_sync_logs_integration_id", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_external_group_mappings_group_id", table_name="external_group_mappings")
    op.drop_index("ix_external_group_mappings_integration_id", table_name="external_group_mappings")
    op.drop_table("external_group_mappings")
    op.drop_index("ix_group_members_group_id", table_name="group_members")
    op.drop_table("group_members")
    op.drop_index("ix_users_external_integration_id", table_name="users")
    op.drop_index("ix_users_organization_external_id", table_name="users")
    op.drop_index("uq_users_organization_email_lower", table_name="users")
    op.drop_index("ix_users_organization_id", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_groups_organization_id", table_name="groups")
    op.drop_table("groups")
    op.drop_index("ix_integrations_sync_enabled_status", table_name="integrations")
    op.drop_index("ix_integrations_organization_id", table_name="integrations")
    op.drop_table("integrations")
