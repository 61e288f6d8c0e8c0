"""Baseline schema for provider calendar profiles and session bookings."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "0001_session_calendar_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "provider_profiles" not in existing_tables:
        op.create_table(
            "provider_profiles",
            sa.Column("provider_id", sa.String(), primary_key=True),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("calendar_id", sa.String(length=255), nullable=True),
            sa.Column("delegated_account_email", sa.String(length=255), nullable=True),
            sa.Column(
                "calendar_permissions_configured",
                sa.Boolean(),
                nullable=False,
                server_default=sa.false(),
            ),
            sa.Column(
                "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
            ),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )

    if "session_bookings" not in existing_tables:
        op.create_table(
            "session_bookings",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("appointment_id", sa.String(), nullable=False),
            sa.Column("provider_id", sa.String(), nullable=True),
            sa.Column("session_type", sa.String(length=128), nullable=True),
            sa.Column("event_id", sa.String(length=1024), nullable=True),
            sa.Column("calendar_id", sa.String(length=255), nullable=True),
            sa.Column("conference_url", sa.Text(), nullable=True),
            sa.Column("start_time", sa.DateTime(), nullable=False),
            sa.Column("end_time", sa.DateTime(), nullable=False),
            sa.Column(
                "status", sa.String(length=32), nullable=False, server_default="SCHEDULED"
            ),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index(
            "ix_session_bookings_appointment_id",
            "session_bookings",
            ["appointment_id"],
            unique=True,
        )
        op.create_index(
            "ix_session_bookings_provider_id", "session_bookings", ["provider_id"]
        )
        op.create_index("ix_session_bookings_event_id", "session_bookings", ["event_id"])
        op.create_index(
            "ix_session_bookings_created_at", "session_bookings", ["created_at"]
        )


def downgrade() -> None:
    op.drop_index("ix_session_bookings_created_at", table_name="session_bookings")
    op.drop_index("ix_session_bookings_event_id", table_name="session_bookings")
    op.drop_index("ix_session_bookings_provider_id", table_name="session_bookings")
    op.drop_index("ix_session_bookings_appointment_id", table_name="session_bookings")
    op.drop_table("session_bookings")
    op.drop_table("provider_profiles")
