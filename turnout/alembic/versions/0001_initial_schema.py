"""Initial Turnout schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=True),
        sa.Column("max_attendees", sa.Integer(), nullable=True),
        sa.Column(
            "waitlist_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("waitlist_limit", sa.Integer(), nullable=True),
        sa.Column("going_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("waitlisted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "attendees",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column(
            "attendee_type", sa.String(length=32), nullable=False, server_default="primary"
        ),
        sa.Column(
            "rsvp_status", sa.String(length=16), nullable=False, server_default="pending"
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["events.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_attendees_primary_per_user",
        "attendees",
        ["event_id", "user_id"],
        unique=True,
        sqlite_where=sa.text("attendee_type = 'primary' AND is_deleted = 0"),
        postgresql_where=sa.text("attendee_type = 'primary' AND NOT is_deleted"),
    )
    op.create_index(
        "ix_attendees_event_status", "attendees", ["event_id", "rsvp_status"]
    )


def downgrade() -> None:
    op.drop_index("ix_attendees_event_status", table_name="attendees")
    op.drop_index("uq_attendees_primary_per_user", table_name="attendees")
    op.drop_table("attendees")
    op.drop_table("events")
