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
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    # Parent tenant (agency) that granted OAuth access to the marketplace app.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String)
    scopes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    # Long-lived parent refresh token; rotates on every exchange.
    refresh_token: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SubAccount(Base):
    __tablename__ = "sub_accounts"

    # Child tenant (location) with its own scoped credentials.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Denormalized owner for query-by-parent; nullable for single sub-account installs.
    account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    installed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(String, nullable=True)
    # Token cache; mutated only by the resolver and the initial install write.
    access_token: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    token_scopes: Mapped[str | None] = mapped_column(String, nullable=True)
    # Track whether the cached token came from a direct grant or a parent mint.
    token_source: Mapped[str | None] = mapped_column(String, nullable=True)
    active_record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AccountSubAccount(Base):
    __tablename__ = "account_sub_accounts"

    # Parent-side mirror of each sub-account for agency dashboards.
    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    sub_account_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LocalUser(Base):
    __tablename__ = "local_users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Back-reference used to catch users that lost their membership row.
    sub_account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    active_record_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Membership(Base):
    __tablename__ = "sub_account_memberships"

    sub_account_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    # Platform-side identifier for the same person.
    platform_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CachedRecord(Base):
    __tablename__ = "cached_records"
    __table_args__ = (
        Index("ix_cached_records_sub_account_group", "sub_account_id", "group_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sub_account_id: Mapped[str] = mapped_column(String, index=True)
    # External batch id shared by records created together on the platform.
    group_key: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    geohash: Mapped[str | None] = mapped_column(String, nullable=True)
    # Raw payload as received; canonical fields above are derived once at ingestion.
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    external_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reconcile_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconcile_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RecordReference(Base):
    __tablename__ = "record_references"
    __table_args__ = (
        Index("ix_record_references_sub_account_external", "sub_account_id", "external_id"),
    )

    # One row per external identifier a cached record points at.
    record_id: Mapped[str] = mapped_column(
        String, ForeignKey("cached_records.id", ondelete="CASCADE"), primary_key=True
    )
    external_id: Mapped[str] = mapped_column(String, primary_key=True)
    sub_account_id: Mapped[str] = mapped_column(String)


class MapMarker(Base):
    __tablename__ = "map_markers"

    sub_account_id: Mapped[str] = mapped_column(String, primary_key=True)
    geohash: Mapped[str] = mapped_column(String, primary_key=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ReconcileGroup(Base):
    __tablename__ = "reconcile_groups"

    # Durable marker for a batch of records whose true deletion state is unknown.
    sub_account_id: Mapped[str] = mapped_column(String, primary_key=True)
    group_key: Mapped[str] = mapped_column(String, primary_key=True)
    pending: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Monotonic, capped by reconcile_max_attempts.
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
