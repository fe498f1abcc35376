"""Create channel, membership and refresh job tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_channel_credentials"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "channels",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_channels_tenant_id", "channels", ["tenant_id"])
    op.create_index("ix_channels_type_status", "channels", ["type", "status"])

    op.create_table(
        "tenant_memberships",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_membership_tenant_user"),
    )

    op.create_table(
        "refresh_jobs",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("channel_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "last_error_retryable", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("channel_snapshot", sa.JSON(), nullable=False),
    )
    op.create_index("ix_refresh_jobs_channel_id", "refresh_jobs", ["channel_id"])
    op.create_index("ix_refresh_jobs_tenant_id", "refresh_jobs", ["tenant_id"])
    op.create_index("ix_refresh_jobs_status_run_at", "refresh_jobs", ["status", "run_at"])


def downgrade() -> None:
    op.drop_index("ix_refresh_jobs_status_run_at", table_name="refresh_jobs")
    op.drop_index("ix_refresh_jobs_tenant_id", table_name="refresh_jobs")
    op.drop_index("ix_refresh_jobs_channel_id", table_name="refresh_jobs")
    op.drop_table("refresh_jobs")
    op.drop_table("tenant_memberships")
    op.drop_index("ix_channels_type_status", table_name="channels")
    op.drop_index("ix_channels_tenant_id", table_name="channels")
    op.drop_table("channels")
