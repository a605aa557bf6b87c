"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=True),
        sa.Column("refresh_token", sa.String(), nullable=True),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "sub_accounts",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("installed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refresh_token", sa.String(), nullable=True),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_scopes", sa.String(), nullable=True),
        sa.Column("token_source", sa.String(), nullable=True),
        sa.Column("active_record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sub_accounts_account_id", "sub_accounts", ["account_id"])

    op.create_table(
        "account_sub_accounts",
        sa.Column("account_id", sa.String(), primary_key=True),
        sa.Column("sub_account_id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Lookup by sub-account when the owner is unknown during cascades.
    op.create_index("ix_account_sub_accounts_sub_account_id", "account_sub_accounts", ["sub_account_id"])

    op.create_table(
        "local_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("sub_account_id", sa.String(), nullable=True),
        sa.Column("active_record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_local_users_sub_account_id", "local_users", ["sub_account_id"])

    op.create_table(
        "sub_account_memberships",
        sa.Column("sub_account_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("platform_user_id", sa.String(), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sub_account_memberships_user_id", "sub_account_memberships", ["user_id"])

    op.create_table(
        "cached_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("sub_account_id", sa.String(), nullable=False),
        sa.Column("group_key", sa.String(), nullable=True),
        sa.Column("created_by_user_id", sa.String(), nullable=True),
        sa.Column("geohash", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("external_count", sa.Integer(), nullable=True),
        sa.Column("reconcile_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reconcile_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_cached_records_sub_account_id", "cached_records", ["sub_account_id"])
    op.create_index(
        "ix_cached_records_sub_account_group",
        "cached_records",
        ["sub_account_id", "group_key"],
    )

    op.create_table(
        "record_references",
        sa.Column(
            "record_id",
            sa.String(),
            sa.ForeignKey("cached_records.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("external_id", sa.String(), primary_key=True),
        sa.Column("sub_account_id", sa.String(), nullable=False),
    )
    op.create_index(
        "ix_record_references_sub_account_external",
        "record_references",
        ["sub_account_id", "external_id"],
    )

    op.create_table(
        "map_markers",
        sa.Column("sub_account_id", sa.String(), primary_key=True),
        sa.Column("geohash", sa.String(), primary_key=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "reconcile_groups",
        sa.Column("sub_account_id", sa.String(), primary_key=True),
        sa.Column("group_key", sa.String(), primary_key=True),
        sa.Column("pending", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_count", sa.Integer(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("reconcile_groups")
    op.drop_table("map_markers")
    op.drop_index("ix_record_references_sub_account_external", table_name="record_references")
    op.drop_table("record_references")
    op.drop_index("ix_cached_records_sub_account_group", table_name="cached_records")
    op.drop_index("ix_cached_records_sub_account_id", table_name="cached_records")
    op.drop_table("cached_records")
    op.drop_index("ix_sub_account_memberships_user_id", table_name="sub_account_memberships")
    op.drop_table("sub_account_memberships")
    op.drop_index("ix_local_users_sub_account_id", table_name="local_users")
    op.drop_table("local_users")
    op.drop_index("ix_account_sub_accounts_sub_account_id", table_name="account_sub_accounts")
    op.drop_table("account_sub_accounts")
    op.drop_index("ix_sub_accounts_account_id", table_name="sub_accounts")
    op.drop_table("sub_accounts")
    op.drop_table("accounts")
