"""SQLModel declarative models for channels, memberships and refresh jobs."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _new_id() -> str:
    return str(uuid4())


def created_at_field() -> Any:
    return Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
        ),
    )


def updated_at_field() -> Any:
    return Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        ),
    )


class Channel(SQLModel, table=True):
    """Configured messaging channel; credentials live inside ``meta``."""

    __tablename__ = "channels"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=64), nullable=False, index=True))
    type: str = Field(sa_column=Column(String(length=32), nullable=False))
    display_name: str = Field(
        default="", sa_column=Column(String(length=120), nullable=False, default="")
    )
    status: str = Field(
        default="ACTIVE", sa_column=Column(String(length=16), nullable=False, default="ACTIVE")
    )
    meta_json: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("meta", JSON, nullable=False),
    )
    row_version: int = Field(
        default=1, sa_column=Column("version", Integer, nullable=False, default=1)
    )


class TenantMembership(SQLModel, table=True):
    """Role a user holds inside a tenant."""

    __tablename__ = "tenant_memberships"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    created_at: datetime = created_at_field()

    tenant_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    user_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    role: str = Field(sa_column=Column(String(length=16), nullable=False))

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_membership_tenant_user"),
    )


class RefreshJobRecord(SQLModel, table=True):
    """Persisted state of a credential refresh job."""

    __tablename__ = "refresh_jobs"

    id: str = Field(primary_key=True, max_length=128)
    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    channel_id: str = Field(sa_column=Column(String(length=64), nullable=False, index=True))
    tenant_id: str = Field(sa_column=Column(String(length=64), nullable=False, index=True))
    status: str = Field(
        default="pending",
        sa_column=Column(String(length=16), nullable=False, default="pending"),
    )
    attempt_count: int = Field(default=0, nullable=False)
    max_attempts: int = Field(default=3, nullable=False)
    run_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    last_attempt_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_error_retryable: bool = Field(default=False, nullable=False)
    channel_snapshot: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )


metadata = SQLModel.metadata
