"""Meeting status lifecycle -- the single entry point for status changes.

Meeting status transitions are validated against VALID_TRANSITIONS and
against the clock (a meeting cannot be completed before it ends or marked
no-show before it starts). The write is a compare-and-swap on the status
the caller observed, so two actors racing on one meeting cannot both win.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.outreach.core.monitoring import status_transitions_total
from src.outreach.scheduling.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from src.outreach.scheduling.events import SchedulingEventPublisher, SchedulingEventType
from src.outreach.scheduling.invites import InviteDispatcher
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.schemas import (
    Actor,
    ActorRole,
    Meeting,
    MeetingStatus,
    MeetingStatusChange,
)

logger = structlog.get_logger(__name__)

# ── Meeting Status Transition Rules ───────────────────────────────────────────

# Maps each status to the set of statuses it can transition TO.
VALID_TRANSITIONS: dict[MeetingStatus, set[MeetingStatus]] = {
    MeetingStatus.SCHEDULED: {MeetingStatus.CONFIRMED, MeetingStatus.CANCELLED},
    MeetingStatus.CONFIRMED: {
        MeetingStatus.COMPLETED,
        MeetingStatus.CANCELLED,
        MeetingStatus.NO_SHOW,
    },
    MeetingStatus.COMPLETED: set(),  # Terminal
    MeetingStatus.CANCELLED: set(),  # Terminal
    MeetingStatus.NO_SHOW: set(),  # Terminal
}


def validate_status_transition(from_status: MeetingStatus, to_status: MeetingStatus) -> None:
    """Validate that a meeting status transition is allowed.

    A same-status request is not a no-op: it is rejected so clients learn
    their view is stale.

    Raises:
        InvalidTransitionError: If transition is not allowed.
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise InvalidTransitionError(
            from_status.value,
            to_status.value,
            f"Invalid status transition: {from_status.value} -> {to_status.value}. "
            f"Allowed from {from_status.value}: "
            f"{', '.join(sorted(s.value for s in allowed)) or 'none'}",
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeetingLifecycleController:
    """Applies validated status transitions to meetings.

    Args:
        meeting_store: MeetingStore holding the meetings.
        invite_dispatcher: Optional dispatcher used to clean up calendar
            events when a meeting is cancelled.
        publisher: Optional change-feed publisher.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        meeting_store: MeetingStore,
        invite_dispatcher: InviteDispatcher | None = None,
        publisher: SchedulingEventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._meetings = meeting_store
        self._invites = invite_dispatcher
        self._publisher = publisher
        self._clock = clock or _utcnow

    async def get_meeting(self, meeting_id: uuid.UUID | str) -> Meeting:
        meeting = await self._meetings.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}", meeting_id=str(meeting_id))
        return meeting

    async def get_history(self, meeting_id: uuid.UUID | str) -> list[MeetingStatusChange]:
        await self.get_meeting(meeting_id)
        return await self._meetings.get_history(meeting_id)

    def _ensure_can_update(self, actor: Actor, meeting: Meeting) -> None:
        if actor.is_privileged:
            return
        if actor.role == ActorRole.RECRUITER and actor.id == meeting.recruiter_id:
            return
        raise PermissionDeniedError(
            f"Actor {actor.id} ({actor.role.value}) cannot update meeting {meeting.id}",
            meeting_id=str(meeting.id),
        )

    def _ensure_timing(self, meeting: Meeting, new_status: MeetingStatus, now: datetime) -> None:
        if new_status == MeetingStatus.COMPLETED:
            ends_at = meeting.scheduled_time + timedelta(minutes=meeting.duration)
            if now < ends_at:
                raise InvalidStateError(
                    "A meeting cannot be completed before it ends",
                    meeting_id=str(meeting.id),
                    ends_at=ends_at.isoformat(),
                )
        elif new_status == MeetingStatus.NO_SHOW and now < meeting.scheduled_time:
            raise InvalidStateError(
                "A meeting cannot be marked no-show before it starts",
                meeting_id=str(meeting.id),
                scheduled_time=meeting.scheduled_time.isoformat(),
            )

    async def apply_status(
        self,
        actor: Actor,
        meeting_id: uuid.UUID | str,
        new_status: MeetingStatus,
    ) -> Meeting:
        """Move a meeting to new_status.

        A rejected call leaves the meeting and its history untouched.

        Raises:
            NotFoundError: Meeting does not exist.
            PermissionDeniedError: Actor may not update this meeting.
            InvalidTransitionError: Pair not in VALID_TRANSITIONS, or a
                concurrent writer changed the status first.
            InvalidStateError: Timing precondition not met.
        """
        meeting = await self.get_meeting(meeting_id)
        self._ensure_can_update(actor, meeting)
        validate_status_transition(meeting.status, new_status)
        self._ensure_timing(meeting, new_status, self._clock())

        updated = await self._meetings.transition_status(
            meeting.id, meeting.status, new_status, actor
        )
        if updated is None:
            fresh = await self.get_meeting(meeting.id)
            logger.info(
                "status_transition_lost_race",
                meeting_id=str(meeting.id),
                expected=meeting.status.value,
                actual=fresh.status.value,
            )
            raise InvalidTransitionError(
                fresh.status.value,
                new_status.value,
                f"Meeting status changed concurrently (now {fresh.status.value})",
            )

        status_transitions_total.labels(
            from_status=meeting.status.value,
            to_status=new_status.value,
        ).inc()
        logger.info(
            "meeting_status_changed",
            meeting_id=str(updated.id),
            from_status=meeting.status.value,
            to_status=new_status.value,
            actor_id=actor.id,
            actor_role=actor.role.value,
        )

        if new_status == MeetingStatus.CANCELLED and self._invites is not None:
            self._invites.schedule_cancel(updated)

        if self._publisher is not None:
            await self._publisher.publish_change(
                SchedulingEventType.MEETING_STATUS_CHANGED,
                recruiter_id=updated.recruiter_id,
                entity_id=str(updated.id),
                data={"from_status": meeting.status.value, "to_status": new_status.value},
            )
        return updated
