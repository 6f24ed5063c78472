"""Pydantic v2 schemas for the interview scheduling domain.

Defines the data contracts for availability slots, recruiter working hours,
meetings, status history, availability intervals, participants, and the
read projections (meeting pages and stats) consumed by the API layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, computed_field


# ── Enums ────────────────────────────────────────────────────────────────────


class SlotStatus(str, Enum):
    """Consumption state of a recruiter-declared availability slot."""

    PENDING = "pending"
    BOOKED = "booked"
    CANCELLED = "cancelled"


class MeetingStatus(str, Enum):
    """Lifecycle status of a meeting."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


ACTIVE_MEETING_STATUSES: frozenset[MeetingStatus] = frozenset(
    {MeetingStatus.SCHEDULED, MeetingStatus.CONFIRMED}
)


class ActorRole(str, Enum):
    """Role of the identity issuing a command."""

    ADMIN = "admin"
    RECRUITER = "recruiter"
    STUDENT = "student"
    SYSTEM = "system"


class MeetingFilter(str, Enum):
    """Interview list view filters."""

    UPCOMING = "upcoming"
    ALL = "all"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class AvailabilitySource(str, Enum):
    """Where a bookable interval came from."""

    DECLARED = "declared"
    DIRECT = "direct"


# ── Identity ─────────────────────────────────────────────────────────────────


class Actor(BaseModel):
    """Request-scoped identity passed explicitly into every core command."""

    id: str
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


class ParticipantProfile(BaseModel):
    """Denormalized display fields for a recruiter or student (read-only)."""

    id: str
    name: str
    email: str | None = None
    organization: str | None = Field(
        None, description="Company for recruiters, university for students"
    )
    status: str | None = Field(None, description="Roster status, e.g. 'waitlist'")


# ── Time Intervals ───────────────────────────────────────────────────────────


class TimeInterval(BaseModel):
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    def overlaps(self, other_start: datetime, other_end: datetime) -> bool:
        return self.start < other_end and self.end > other_start


class AvailableInterval(TimeInterval):
    """A bookable interval returned to the public booking view."""

    source: AvailabilitySource
    slot_id: uuid.UUID | None = None


# ── Slots & Schedules ────────────────────────────────────────────────────────


class AvailabilitySlot(BaseModel):
    """A recruiter-declared time window eligible for booking."""

    id: uuid.UUID
    recruiter_id: str
    start_time: datetime
    duration: int = Field(description="Length in minutes")
    timezone: str
    status: SlotStatus = SlotStatus.PENDING
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration)


class SlotCreate(BaseModel):
    """Request schema for declaring availability."""

    recruiter_id: str
    start_time: datetime
    duration: int = 30
    timezone: str | None = None


class RecruiterSchedule(BaseModel):
    """Declared working hours used for direct booking."""

    recruiter_id: str
    work_start_hour: int = Field(ge=0, le=23)
    work_end_hour: int = Field(ge=1, le=24)
    timezone: str = "UTC"
    direct_booking_enabled: bool = True


# ── Meetings ─────────────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """A confirmed booking between a recruiter and a student."""

    id: uuid.UUID
    recruiter_id: str
    student_id: str
    slot_id: uuid.UUID | None = None
    scheduled_time: datetime
    duration: int
    title: str
    agenda: str | None = None
    status: MeetingStatus = MeetingStatus.SCHEDULED
    external_meeting_link: str | None = None
    calendar_event_id: str | None = None
    invite_attempts: int = 0
    invite_last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def end_time(self) -> datetime:
        return self.scheduled_time + timedelta(minutes=self.duration)


class MeetingCreate(BaseModel):
    """Internal schema for inserting a meeting inside a reservation."""

    recruiter_id: str
    student_id: str
    slot_id: uuid.UUID | None = None
    scheduled_time: datetime
    duration: int
    title: str
    agenda: str | None = None
    assigned: bool = Field(
        default=False, description="Created by the assignment console; one active per student"
    )


class MeetingStatusChange(BaseModel):
    """One entry in a meeting's append-only status history."""

    id: uuid.UUID
    meeting_id: uuid.UUID
    from_status: MeetingStatus | None = None
    to_status: MeetingStatus
    actor_id: str
    actor_role: ActorRole
    changed_at: datetime


class MeetingPage(BaseModel):
    """Paginated meeting list."""

    items: list[Meeting] = Field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


class MeetingStats(BaseModel):
    """Aggregate counts for a recruiter's meetings."""

    total: int = 0
    upcoming: int = 0
    today: int = 0
    completed: int = 0
    cancelled: int = 0
    next_meeting: Meeting | None = None


# ── Calendar ─────────────────────────────────────────────────────────────────


class CalendarInvite(BaseModel):
    """Result of a successful calendar invite creation."""

    link: str | None = None
    event_id: str
