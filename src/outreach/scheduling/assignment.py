"""Admin assignment console: pair a waitlisted student with a pending slot."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from src.outreach.scheduling.booking import BookingEngine
from src.outreach.scheduling.errors import InvalidStateError, SlotUnavailableError
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.policy import ensure_admin
from src.outreach.scheduling.schemas import (
    Actor,
    AvailabilitySlot,
    Meeting,
    ParticipantProfile,
    SlotStatus,
)
from src.outreach.scheduling.slot_store import SlotStore
from src.outreach.services.roster import RosterDirectory

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentWorkflow:
    """Lists assignable slots and students and confirms pairings.

    Confirmation goes through BookingEngine.reserve(), so two admins racing
    on one slot get exactly one meeting and one SlotUnavailableError. The
    reservation also claims the student's single active assignment, so two
    admins placing one student on different slots get one meeting and one
    InvalidStateError.

    Args:
        slot_store: SlotStore for pending slots.
        meeting_store: MeetingStore used to filter out students already booked.
        booking: BookingEngine performing the reservation.
        roster: RosterDirectory providing the waitlist.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        slot_store: SlotStore,
        meeting_store: MeetingStore,
        booking: BookingEngine,
        roster: RosterDirectory,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._slots = slot_store
        self._meetings = meeting_store
        self._booking = booking
        self._roster = roster
        self._clock = clock or _utcnow

    async def list_pending_slots(self) -> list[AvailabilitySlot]:
        """Pending slots across all recruiters that have not started yet."""
        return await self._slots.list_slots(start=self._clock(), statuses=[SlotStatus.PENDING])

    async def list_unassigned_students(self) -> list[ParticipantProfile]:
        """Waitlisted students without a scheduled or confirmed meeting."""
        waitlisted = await self._roster.list_waitlisted_students()
        booked = await self._meetings.students_with_active_meetings(s.id for s in waitlisted)
        return [s for s in waitlisted if s.id not in booked]

    async def confirm_assignment(
        self,
        actor: Actor,
        slot_id: uuid.UUID | str,
        student_id: str,
        agenda: str | None = None,
    ) -> Meeting:
        """Book a pending slot for a waitlisted student.

        Raises:
            PermissionDeniedError: Actor is not an admin.
            SlotUnavailableError: Slot missing, not pending, or lost to a race.
            InvalidStateError: Student is not on the unassigned waitlist, or
                another assignment for the student committed first.
        """
        ensure_admin(actor)

        slot = await self._slots.get_slot(slot_id)
        if slot is None or slot.status != SlotStatus.PENDING:
            raise SlotUnavailableError(
                "Slot is no longer available for assignment",
                slot_id=str(slot_id),
            )

        unassigned = {s.id for s in await self.list_unassigned_students()}
        if student_id not in unassigned:
            raise InvalidStateError(
                "Student is not waitlisted or already has a meeting",
                student_id=student_id,
            )

        meeting = await self._booking.reserve(
            actor,
            recruiter_id=slot.recruiter_id,
            student_id=student_id,
            start_time=slot.start_time,
            duration=slot.duration,
            agenda=agenda,
            assigned=True,
        )
        logger.info(
            "assignment_confirmed",
            meeting_id=str(meeting.id),
            slot_id=str(slot.id),
            student_id=student_id,
            actor_id=actor.id,
        )
        return meeting
