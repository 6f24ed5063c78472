"""Booking engine -- availability computation and the atomic reservation.

Availability is recomputed from storage (and the calendar's free/busy data)
on every call. Reservation is a single database transaction:

    slot path:   claim slot pending -> booked (compare-and-swap)
                 insert meeting + creation history row
    direct path: insert meeting + creation history row

followed, in both paths, by an in-transaction overlap check against other
meetings (and, for direct bookings, declared slots). The unique constraints
on (recruiter_id, start_time) and (recruiter_id, scheduled_time) serialize
racing reservations of the same key. Intervals that intersect without
sharing a start time have no common key, so on PostgreSQL each reservation
first takes a transaction-scoped advisory lock on the recruiter; the overlap
check then sees every committed competitor. SQLite serializes writers on
its own.

The calendar invite is created after commit by InviteDispatcher and can
never roll the reservation back.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from time import perf_counter
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from src.outreach.config import Settings, get_settings
from src.outreach.core.database import SessionFactory
from src.outreach.core.monitoring import reservation_duration_seconds, reservations_total
from src.outreach.scheduling.errors import (
    ExternalServiceError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    ReservationTimeoutError,
    SchedulingError,
    SlotUnavailableError,
)
from src.outreach.scheduling.events import SchedulingEventPublisher, SchedulingEventType
from src.outreach.scheduling.invites import InviteDispatcher
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.policy import ensure_can_book_for
from src.outreach.scheduling.schemas import (
    Actor,
    AvailabilitySlot,
    AvailabilitySource,
    AvailableInterval,
    Meeting,
    MeetingCreate,
    ParticipantProfile,
    RecruiterSchedule,
    SlotStatus,
    TimeInterval,
)
from src.outreach.scheduling.slot_store import SlotStore
from src.outreach.services.calendar import CalendarCollaborator
from src.outreach.services.roster import RosterDirectory

logger = structlog.get_logger(__name__)

DEFAULT_TITLE = "Interview"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "reservation_retrying",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


def _overlaps_any(start: datetime, end: datetime, intervals: list[TimeInterval]) -> bool:
    return any(i.overlaps(start, end) for i in intervals)


def _default_title(
    recruiter: ParticipantProfile | None, student: ParticipantProfile | None
) -> str:
    if recruiter and student and recruiter.name and student.name:
        return f"Meeting: {recruiter.name} & {student.name}"
    return DEFAULT_TITLE


class BookingEngine:
    """Computes bookable time and reserves it without double-booking.

    Args:
        session_factory: Async callable yielding AsyncSession instances.
        slot_store: SlotStore for declared slots and working hours.
        meeting_store: MeetingStore for meetings.
        calendar: Optional calendar collaborator (free/busy lookups).
        roster: Optional roster directory (default titles).
        invite_dispatcher: Optional dispatcher for post-commit invites.
        publisher: Optional change-feed publisher.
        settings: Settings override (defaults to get_settings()).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        slot_store: SlotStore,
        meeting_store: MeetingStore,
        calendar: CalendarCollaborator | None = None,
        roster: RosterDirectory | None = None,
        invite_dispatcher: InviteDispatcher | None = None,
        publisher: SchedulingEventPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._slots = slot_store
        self._meetings = meeting_store
        self._calendar = calendar
        self._roster = roster
        self._invites = invite_dispatcher
        self._publisher = publisher
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow

    # ── Working-hours grid ───────────────────────────────────────────────

    @staticmethod
    def _day_window(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz).astimezone(
            timezone.utc
        )
        return start, end

    @staticmethod
    def _work_window(day: date, schedule: RecruiterSchedule) -> tuple[datetime, datetime]:
        tz = ZoneInfo(schedule.timezone)
        start = datetime.combine(day, time(hour=schedule.work_start_hour), tzinfo=tz)
        if schedule.work_end_hour >= 24:
            end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        else:
            end = datetime.combine(day, time(hour=schedule.work_end_hour), tzinfo=tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def _grid(self, day: date, schedule: RecruiterSchedule) -> list[datetime]:
        """Candidate start instants on the working-hours grid for a local day."""
        step = timedelta(minutes=self._settings.SLOT_GRANULARITY_MINUTES)
        start, end = self._work_window(day, schedule)
        candidates = []
        cursor = start
        while cursor + step <= end:
            candidates.append(cursor)
            cursor += step
        return candidates

    def _on_grid(self, start_time: datetime, schedule: RecruiterSchedule) -> bool:
        local_day = start_time.astimezone(ZoneInfo(schedule.timezone)).date()
        return start_time in self._grid(local_day, schedule)

    async def _busy_intervals(
        self, recruiter_id: str, start: datetime, end: datetime
    ) -> list[TimeInterval]:
        if self._calendar is None:
            return []
        return await self._calendar.get_busy_intervals(recruiter_id, start, end)

    # ── Availability ─────────────────────────────────────────────────────

    async def get_available_slots(self, recruiter_id: str, day: date) -> list[AvailableInterval]:
        """Bookable intervals for a recruiter on a local calendar day.

        The day is interpreted in the recruiter's schedule timezone. Declared
        pending slots are always considered; working-hours candidates are
        added when direct booking is enabled and the busy lookup succeeds.

        Returns:
            Intervals sorted by start.
        """
        schedule = await self._slots.get_schedule(recruiter_id)
        window_start, window_end = self._day_window(day, ZoneInfo(schedule.timezone))
        # Slots starting late in the day may run past midnight
        horizon = window_end + timedelta(minutes=self._settings.MAX_SLOT_DURATION_MINUTES)

        meetings = await self._meetings.list_overlapping_meetings(
            recruiter_id, window_start, horizon
        )
        meeting_intervals = [
            TimeInterval(start=m.scheduled_time, end=m.end_time) for m in meetings
        ]

        declared = await self._slots.list_slots(
            recruiter_id=recruiter_id,
            start=window_start,
            end=window_end,
            statuses=[SlotStatus.PENDING],
        )
        available = [
            AvailableInterval(
                start=slot.start_time,
                end=slot.end_time,
                source=AvailabilitySource.DECLARED,
                slot_id=slot.id,
            )
            for slot in declared
            if not _overlaps_any(slot.start_time, slot.end_time, meeting_intervals)
        ]

        if schedule.direct_booking_enabled:
            available.extend(
                await self._direct_candidates(
                    recruiter_id, day, schedule, window_start, horizon, meeting_intervals
                )
            )

        available.sort(key=lambda i: i.start)
        return available

    async def _direct_candidates(
        self,
        recruiter_id: str,
        day: date,
        schedule: RecruiterSchedule,
        window_start: datetime,
        horizon: datetime,
        meeting_intervals: list[TimeInterval],
    ) -> list[AvailableInterval]:
        try:
            busy = await self._busy_intervals(recruiter_id, window_start, horizon)
        except ExternalServiceError as exc:
            logger.warning(
                "availability_busy_lookup_failed",
                recruiter_id=recruiter_id,
                day=day.isoformat(),
                error=exc.message,
            )
            return []

        slots = await self._slots.list_overlapping_slots(recruiter_id, window_start, horizon)
        blocked = (
            meeting_intervals
            + [TimeInterval(start=s.start_time, end=s.end_time) for s in slots]
            + busy
        )

        now = self._clock()
        step = timedelta(minutes=self._settings.SLOT_GRANULARITY_MINUTES)
        return [
            AvailableInterval(start=start, end=start + step, source=AvailabilitySource.DIRECT)
            for start in self._grid(day, schedule)
            if start >= now and not _overlaps_any(start, start + step, blocked)
        ]

    # ── Reservation ──────────────────────────────────────────────────────

    async def reserve(
        self,
        actor: Actor,
        recruiter_id: str,
        student_id: str,
        start_time: datetime,
        duration: int | None = None,
        title: str | None = None,
        agenda: str | None = None,
        assigned: bool = False,
    ) -> Meeting:
        """Reserve exactly the requested time for a student.

        Never substitutes a different time. With ``assigned`` the meeting also
        claims the student's single active assignment in the same transaction.

        Raises:
            SlotUnavailableError: The time is no longer (or never was) free.
            NotFoundError: Recruiter or student is not on the roster.
            InvalidStateError: ``assigned`` and the student already holds an
                active assignment.
            InvalidRequestError: Naive datetime or duration not matching the slot.
            ExternalServiceError: Roster or busy lookup failed.
            ReservationTimeoutError: Commit not confirmed in time.
            PermissionDeniedError: Actor may not book for this student.
        """
        ensure_can_book_for(actor, recruiter_id, student_id)
        if start_time.tzinfo is None:
            raise InvalidRequestError("start_time must be timezone-aware")
        start_utc = start_time.astimezone(timezone.utc)
        recruiter, student = await self._resolve_participants(recruiter_id, student_id)

        slot = await self._slots.find_slot(recruiter_id, start_utc)
        if slot is not None:
            source = AvailabilitySource.DECLARED
            duration = self._check_slot_candidate(slot, duration)
        else:
            source = AvailabilitySource.DIRECT
            duration = await self._check_direct_candidate(recruiter_id, start_utc, duration)

        data = MeetingCreate(
            recruiter_id=recruiter_id,
            student_id=student_id,
            slot_id=slot.id if slot is not None else None,
            scheduled_time=start_utc,
            duration=duration,
            title=title or _default_title(recruiter, student),
            agenda=agenda,
            assigned=assigned,
        )

        started = perf_counter()
        try:
            meeting = await asyncio.wait_for(
                self._commit_with_retry(data, actor),
                timeout=self._settings.RESERVATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            reservations_total.labels(source=source.value, outcome="timeout").inc()
            logger.error(
                "reservation_timeout",
                recruiter_id=recruiter_id,
                start_time=start_utc.isoformat(),
                timeout=self._settings.RESERVATION_TIMEOUT_SECONDS,
            )
            raise ReservationTimeoutError(
                "Reservation was not confirmed in time; check the meeting list before retrying",
                recruiter_id=recruiter_id,
                start_time=start_utc.isoformat(),
            ) from exc
        except SchedulingError as exc:
            reservations_total.labels(source=source.value, outcome=exc.code).inc()
            raise
        finally:
            reservation_duration_seconds.observe(perf_counter() - started)

        reservations_total.labels(source=source.value, outcome="success").inc()
        logger.info(
            "reservation_committed",
            meeting_id=str(meeting.id),
            recruiter_id=recruiter_id,
            student_id=student_id,
            scheduled_time=meeting.scheduled_time.isoformat(),
            source=source.value,
            actor_id=actor.id,
        )

        if self._invites is not None:
            self._invites.schedule(meeting)
        if self._publisher is not None:
            await self._publisher.publish_change(
                SchedulingEventType.MEETING_CREATED,
                recruiter_id=recruiter_id,
                entity_id=str(meeting.id),
                data={
                    "scheduled_time": meeting.scheduled_time.isoformat(),
                    "slot_id": str(meeting.slot_id) if meeting.slot_id else None,
                },
            )
        return meeting

    def _check_slot_candidate(self, slot: AvailabilitySlot, duration: int | None) -> int:
        if slot.status != SlotStatus.PENDING:
            raise SlotUnavailableError(
                f"Slot is {slot.status.value}",
                slot_id=str(slot.id),
                start_time=slot.start_time.isoformat(),
            )
        if duration is not None and duration != slot.duration:
            raise InvalidRequestError(
                f"Requested duration {duration} does not match slot duration {slot.duration}",
                slot_id=str(slot.id),
            )
        return slot.duration

    async def _check_direct_candidate(
        self, recruiter_id: str, start_utc: datetime, duration: int | None
    ) -> int:
        granularity = self._settings.SLOT_GRANULARITY_MINUTES
        duration = granularity if duration is None else duration
        end_utc = start_utc + timedelta(minutes=duration)
        details = {"recruiter_id": recruiter_id, "start_time": start_utc.isoformat()}

        schedule = await self._slots.get_schedule(recruiter_id)
        if not schedule.direct_booking_enabled:
            raise SlotUnavailableError("No open slot at this time", **details)
        if duration != granularity:
            raise SlotUnavailableError(
                f"Direct bookings are {granularity} minutes long", **details
            )
        if not self._on_grid(start_utc, schedule):
            raise SlotUnavailableError("Time is outside the recruiter's working hours", **details)
        if start_utc < self._clock():
            raise SlotUnavailableError("Time is in the past", **details)
        if await self._meetings.list_overlapping_meetings(recruiter_id, start_utc, end_utc):
            raise SlotUnavailableError("Time overlaps an existing meeting", **details)
        if await self._slots.list_overlapping_slots(recruiter_id, start_utc, end_utc):
            raise SlotUnavailableError("Time overlaps a declared slot", **details)

        busy = await self._busy_intervals(recruiter_id, start_utc, end_utc)
        if _overlaps_any(start_utc, end_utc, busy):
            raise SlotUnavailableError("Recruiter calendar is busy at this time", **details)
        return duration

    async def _resolve_participants(
        self, recruiter_id: str, student_id: str
    ) -> tuple[ParticipantProfile | None, ParticipantProfile | None]:
        """Roster profiles for both participants; (None, None) without a roster."""
        if self._roster is None:
            return None, None
        recruiter = await self._roster.get_recruiter(recruiter_id)
        if recruiter is None:
            raise NotFoundError(f"Recruiter not found: {recruiter_id}", recruiter_id=recruiter_id)
        student = await self._roster.get_student(student_id)
        if student is None:
            raise NotFoundError(f"Student not found: {student_id}", student_id=student_id)
        return recruiter, student

    async def _commit_with_retry(self, data: MeetingCreate, actor: Actor) -> Meeting:
        """Run the commit, retrying exactly once on a transient storage error."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(0.05),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._commit(data, actor)
        raise AssertionError("unreachable")

    async def _commit(self, data: MeetingCreate, actor: Actor) -> Meeting:
        async for session in self._session_factory():
            try:
                meeting = await self._reserve_in_session(session, data, actor)
                await session.commit()
            except BaseException:
                # Release the connection (and any SQLite write lock) before surfacing
                await session.rollback()
                raise
            return meeting
        raise AssertionError("session factory yielded no session")

    @staticmethod
    async def _lock_recruiter(session: AsyncSession, recruiter_id: str) -> None:
        """Serialize one recruiter's reservations on PostgreSQL.

        Held until the transaction ends. SQLite needs no lock: its first
        write already excludes other writers.
        """
        if session.get_bind().dialect.name != "postgresql":
            return
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"reserve:{recruiter_id}"},
        )

    async def _reserve_in_session(
        self, session: AsyncSession, data: MeetingCreate, actor: Actor
    ) -> Meeting:
        unavailable = {
            "recruiter_id": data.recruiter_id,
            "start_time": data.scheduled_time.isoformat(),
        }
        end_utc = data.scheduled_time + timedelta(minutes=data.duration)

        await self._lock_recruiter(session, data.recruiter_id)
        if data.slot_id is not None and not await self._slots.claim_slot(session, data.slot_id):
            raise SlotUnavailableError("Slot was just taken", **unavailable)

        try:
            meeting = await self._meetings.insert_meeting(session, data, actor)
        except IntegrityError as exc:
            if data.assigned and "assigned_student" in str(exc.orig):
                raise InvalidStateError(
                    "Student already has an active assigned meeting",
                    student_id=data.student_id,
                ) from exc
            raise SlotUnavailableError("Time was just taken", **unavailable) from exc

        if await self._meetings.overlap_exists(
            session, data.recruiter_id, data.scheduled_time, end_utc, exclude_id=meeting.id
        ):
            raise SlotUnavailableError("Time overlaps another meeting", **unavailable)
        if data.slot_id is None and await self._slots.overlap_exists(
            session, data.recruiter_id, data.scheduled_time, end_utc
        ):
            raise SlotUnavailableError("Time overlaps a declared slot", **unavailable)
        return meeting
