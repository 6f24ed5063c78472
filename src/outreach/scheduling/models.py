"""Scheduling persistence models.

Four SQLAlchemy models:
- AvailabilitySlotModel: Recruiter-declared availability windows
- RecruiterScheduleModel: Declared working hours for direct booking
- MeetingModel: Meetings created by reservation, with invite bookkeeping
- MeetingStatusHistoryModel: Append-only status change log

Double-booking protection lives here, not in application code: the unique
constraints on (recruiter_id, start_time) and (recruiter_id, scheduled_time)
serialize concurrent reservations for the same key across processes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.outreach.core.database import Base, UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AvailabilitySlotModel(Base):
    """Recruiter-declared availability window.

    Status moves pending -> booked via compare-and-swap in the reservation
    transaction, or pending -> cancelled. Both other states are terminal.
    """

    __tablename__ = "availability_slots"
    __table_args__ = (
        UniqueConstraint(
            "recruiter_id",
            "start_time",
            name="uq_slot_recruiter_start",
        ),
        Index("ix_slot_status_start", "status", "start_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recruiter_id: Mapped[str] = mapped_column(String(100), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class RecruiterScheduleModel(Base):
    """Working hours a recruiter opens for direct (slot-less) booking."""

    __tablename__ = "recruiter_schedules"

    recruiter_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    work_start_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    work_end_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    direct_booking_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class MeetingModel(Base):
    """Meeting created atomically with slot reservation or direct booking.

    A cancelled meeting keeps its row, so its (recruiter_id, scheduled_time)
    key stays consumed.

    Meetings created by the admin assignment console also hold
    assigned_student_id while active, so a student gets at most one.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        UniqueConstraint(
            "recruiter_id",
            "scheduled_time",
            name="uq_meeting_recruiter_time",
        ),
        UniqueConstraint("slot_id", name="uq_meeting_slot"),
        # One active assignment per student; cleared when the meeting leaves
        # scheduled/confirmed. NULLs never collide.
        UniqueConstraint("assigned_student_id", name="uq_meeting_assigned_student"),
        Index("ix_meeting_student_status", "student_id", "status"),
        Index("ix_meeting_recruiter_time", "recruiter_id", "scheduled_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recruiter_id: Mapped[str] = mapped_column(String(100), nullable=False)
    student_id: Mapped[str] = mapped_column(String(100), nullable=False)
    slot_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    assigned_student_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scheduled_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    agenda: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")
    external_meeting_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    calendar_event_id: Mapped[str | None] = mapped_column(String(300), nullable=True)
    invite_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invite_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class MeetingStatusHistoryModel(Base):
    """Append-only record of every meeting status change."""

    __tablename__ = "meeting_status_history"
    __table_args__ = (Index("ix_history_meeting", "meeting_id", "changed_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    meeting_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
