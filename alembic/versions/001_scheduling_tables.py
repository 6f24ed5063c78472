"""Add scheduling tables for slots, working hours, meetings, and status history.

Revision ID: 001_scheduling_tables
Revises:
Create Date: 2026-10-19

Creates four tables:
- availability_slots: Recruiter-declared windows, unique per (recruiter_id, start_time)
- recruiter_schedules: Working hours used for direct booking
- meetings: Booked meetings, unique per (recruiter_id, scheduled_time) and slot_id
- meeting_status_history: Append-only status change log

No foreign key constraints (application-level referential integrity via
the stores). The unique constraints are what serialize concurrent
reservations, so they must exist in every environment.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_scheduling_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── availability_slots ───────────────────────────────────────────────

    op.create_table(
        "availability_slots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("recruiter_id", sa.String(100), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("recruiter_id", "start_time", name="uq_slot_recruiter_start"),
    )
    op.create_index("ix_slot_status_start", "availability_slots", ["status", "start_time"])

    # ── recruiter_schedules ──────────────────────────────────────────────

    op.create_table(
        "recruiter_schedules",
        sa.Column("recruiter_id", sa.String(100), primary_key=True),
        sa.Column("work_start_hour", sa.Integer(), nullable=False),
        sa.Column("work_end_hour", sa.Integer(), nullable=False),
        sa.Column(
            "timezone",
            sa.String(64),
            server_default=sa.text("'UTC'"),
            nullable=False,
        ),
        sa.Column(
            "direct_booking_enabled",
            sa.Boolean(),
            server_default=sa.true(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    # ── meetings ─────────────────────────────────────────────────────────

    op.create_table(
        "meetings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("recruiter_id", sa.String(100), nullable=False),
        sa.Column("student_id", sa.String(100), nullable=False),
        sa.Column("slot_id", sa.Uuid(), nullable=True),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("agenda", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'scheduled'"),
            nullable=False,
        ),
        sa.Column("external_meeting_link", sa.String(500), nullable=True),
        sa.Column("calendar_event_id", sa.String(300), nullable=True),
        sa.Column(
            "invite_attempts",
            sa.Integer(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column("invite_last_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "recruiter_id", "scheduled_time", name="uq_meeting_recruiter_time"
        ),
        sa.UniqueConstraint("slot_id", name="uq_meeting_slot"),
    )
    op.create_index("ix_meeting_student_status", "meetings", ["student_id", "status"])
    op.create_index("ix_meeting_recruiter_time", "meetings", ["recruiter_id", "scheduled_time"])

    # ── meeting_status_history ───────────────────────────────────────────

    op.create_table(
        "meeting_status_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("meeting_id", sa.Uuid(), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("actor_id", sa.String(100), nullable=False),
        sa.Column("actor_role", sa.String(20), nullable=False),
        sa.Column(
            "changed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index(
        "ix_history_meeting", "meeting_status_history", ["meeting_id", "changed_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_history_meeting", table_name="meeting_status_history")
    op.drop_table("meeting_status_history")
    op.drop_index("ix_meeting_recruiter_time", table_name="meetings")
    op.drop_index("ix_meeting_student_status", table_name="meetings")
    op.drop_table("meetings")
    op.drop_table("recruiter_schedules")
    op.drop_index("ix_slot_status_start", table_name="availability_slots")
    op.drop_table("availability_slots")
