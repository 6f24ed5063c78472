"""Meeting repository -- async persistence for meetings and their status history.

Provides MeetingStore with the session_factory callable pattern. The store
is the only writer of meeting rows, but it does not decide which status
transitions are legal: MeetingLifecycleController validates transitions and
then calls transition_status(), which performs a compare-and-swap on the
current status and appends a history row in the same transaction.

Meeting creation happens inside the BookingEngine reservation transaction
through insert_meeting(), which takes the caller's session so the slot claim
and the meeting insert commit or roll back together.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.outreach.core.database import SessionFactory
from src.outreach.scheduling.errors import parse_entity_id
from src.outreach.scheduling.models import MeetingModel, MeetingStatusHistoryModel
from src.outreach.scheduling.schemas import (
    ACTIVE_MEETING_STATUSES,
    Actor,
    ActorRole,
    CalendarInvite,
    Meeting,
    MeetingCreate,
    MeetingFilter,
    MeetingPage,
    MeetingStats,
    MeetingStatus,
    MeetingStatusChange,
)

logger = structlog.get_logger(__name__)

_ACTIVE_VALUES = [s.value for s in ACTIVE_MEETING_STATUSES]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema."""
    return Meeting(
        id=model.id,
        recruiter_id=model.recruiter_id,
        student_id=model.student_id,
        slot_id=model.slot_id,
        scheduled_time=model.scheduled_time,
        duration=model.duration,
        title=model.title,
        agenda=model.agenda,
        status=MeetingStatus(model.status),
        external_meeting_link=model.external_meeting_link,
        calendar_event_id=model.calendar_event_id,
        invite_attempts=model.invite_attempts or 0,
        invite_last_error=model.invite_last_error,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_change(model: MeetingStatusHistoryModel) -> MeetingStatusChange:
    return MeetingStatusChange(
        id=model.id,
        meeting_id=model.meeting_id,
        from_status=MeetingStatus(model.from_status) if model.from_status else None,
        to_status=MeetingStatus(model.to_status),
        actor_id=model.actor_id,
        actor_role=ActorRole(model.actor_role),
        changed_at=model.changed_at,
    )


def _history_row(
    meeting_id: uuid.UUID,
    from_status: MeetingStatus | None,
    to_status: MeetingStatus,
    actor: Actor,
) -> MeetingStatusHistoryModel:
    return MeetingStatusHistoryModel(
        id=uuid.uuid4(),
        meeting_id=meeting_id,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value,
        actor_id=actor.id,
        actor_role=actor.role.value,
        changed_at=datetime.now(timezone.utc),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingStore:
    """Persistent record of meetings and their status history.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Creation (inside reservation transaction) ───────────────────────

    async def insert_meeting(
        self, session: AsyncSession, data: MeetingCreate, actor: Actor
    ) -> Meeting:
        """Insert a scheduled meeting and its creation history row.

        Flushes but does not commit; the caller owns the transaction. A
        duplicate (recruiter_id, scheduled_time), slot_id, or active
        assigned_student_id raises IntegrityError from the flush.
        """
        now = datetime.now(timezone.utc)
        scheduled_time = data.scheduled_time.astimezone(timezone.utc)
        model = MeetingModel(
            id=uuid.uuid4(),
            recruiter_id=data.recruiter_id,
            student_id=data.student_id,
            slot_id=data.slot_id,
            assigned_student_id=data.student_id if data.assigned else None,
            scheduled_time=scheduled_time,
            end_time=scheduled_time + timedelta(minutes=data.duration),
            duration=data.duration,
            title=data.title,
            agenda=data.agenda,
            status=MeetingStatus.SCHEDULED.value,
            invite_attempts=0,
            created_at=now,
            updated_at=now,
        )
        session.add(model)
        await session.flush()
        session.add(_history_row(model.id, None, MeetingStatus.SCHEDULED, actor))
        await session.flush()
        return _model_to_meeting(model)

    async def overlap_exists(
        self,
        session: AsyncSession,
        recruiter_id: str,
        start: datetime,
        end: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> bool:
        """Whether any meeting intersects [start, end), in the caller's transaction.

        Cancelled meetings count: their time stays consumed.
        """
        stmt = select(MeetingModel.id).where(
            MeetingModel.recruiter_id == recruiter_id,
            MeetingModel.scheduled_time < end,
            MeetingModel.end_time > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(MeetingModel.id != exclude_id)
        result = await session.execute(stmt.limit(1))
        return result.first() is not None

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_meeting(self, meeting_id: uuid.UUID | str) -> Meeting | None:
        """Get a meeting by ID, or None if not found."""
        async for session in self._session_factory():
            model = await session.get(MeetingModel, parse_entity_id(meeting_id, "Meeting"))
            if model is None:
                return None
            return _model_to_meeting(model)

    async def get_history(self, meeting_id: uuid.UUID | str) -> list[MeetingStatusChange]:
        """Status history for a meeting, oldest first."""
        meeting_uuid = parse_entity_id(meeting_id, "Meeting")
        async for session in self._session_factory():
            stmt = (
                select(MeetingStatusHistoryModel)
                .where(MeetingStatusHistoryModel.meeting_id == meeting_uuid)
                .order_by(MeetingStatusHistoryModel.changed_at)
            )
            result = await session.execute(stmt)
            return [_model_to_change(m) for m in result.scalars().all()]

    async def list_overlapping_meetings(
        self, recruiter_id: str, start: datetime, end: datetime
    ) -> list[Meeting]:
        """Meetings in any status whose interval intersects [start, end)."""
        async for session in self._session_factory():
            stmt = (
                select(MeetingModel)
                .where(
                    MeetingModel.recruiter_id == recruiter_id,
                    MeetingModel.scheduled_time < end,
                    MeetingModel.end_time > start,
                )
                .order_by(MeetingModel.scheduled_time)
            )
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]

    async def list_meetings(
        self,
        meeting_filter: MeetingFilter,
        now: datetime,
        recruiter_id: str | None = None,
        student_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> MeetingPage:
        """Paginated meeting list for the interview list view.

        Upcoming meetings sort soonest first; every other filter sorts most
        recent first.
        """
        conditions = []
        if recruiter_id is not None:
            conditions.append(MeetingModel.recruiter_id == recruiter_id)
        if student_id is not None:
            conditions.append(MeetingModel.student_id == student_id)

        order = MeetingModel.scheduled_time.desc()
        if meeting_filter == MeetingFilter.UPCOMING:
            conditions.append(MeetingModel.scheduled_time >= now)
            conditions.append(MeetingModel.status.in_(_ACTIVE_VALUES))
            order = MeetingModel.scheduled_time.asc()
        elif meeting_filter != MeetingFilter.ALL:
            conditions.append(MeetingModel.status == meeting_filter.value)

        async for session in self._session_factory():
            count_stmt = select(func.count()).select_from(MeetingModel).where(*conditions)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(MeetingModel)
                .where(*conditions)
                .order_by(order)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await session.execute(stmt)
            items = [_model_to_meeting(m) for m in result.scalars().all()]
            return MeetingPage(items=items, page=page, limit=limit, total=total)

    async def students_with_active_meetings(self, student_ids: Iterable[str]) -> set[str]:
        """Subset of student_ids holding a scheduled or confirmed meeting."""
        ids = list(student_ids)
        if not ids:
            return set()
        async for session in self._session_factory():
            stmt = select(MeetingModel.student_id).where(
                MeetingModel.student_id.in_(ids),
                MeetingModel.status.in_(_ACTIVE_VALUES),
            )
            result = await session.execute(stmt)
            return set(result.scalars().all())

    async def get_stats(
        self, recruiter_id: str, now: datetime, tz_name: str = "UTC"
    ) -> MeetingStats:
        """Aggregate counts and the next upcoming meeting for a recruiter.

        "today" is the current calendar date in tz_name.
        """
        tz = ZoneInfo(tz_name)
        local_today = now.astimezone(tz).date()
        day_start = datetime.combine(local_today, time.min, tzinfo=tz).astimezone(timezone.utc)
        day_end = day_start + timedelta(days=1)

        def _count(*conditions):
            return (
                select(func.count())
                .select_from(MeetingModel)
                .where(MeetingModel.recruiter_id == recruiter_id, *conditions)
            )

        async for session in self._session_factory():
            total = (await session.execute(_count())).scalar_one()
            upcoming = (
                await session.execute(
                    _count(
                        MeetingModel.scheduled_time >= now,
                        MeetingModel.status.in_(_ACTIVE_VALUES),
                    )
                )
            ).scalar_one()
            today = (
                await session.execute(
                    _count(
                        MeetingModel.scheduled_time >= day_start,
                        MeetingModel.scheduled_time < day_end,
                    )
                )
            ).scalar_one()
            completed = (
                await session.execute(
                    _count(MeetingModel.status == MeetingStatus.COMPLETED.value)
                )
            ).scalar_one()
            cancelled = (
                await session.execute(
                    _count(MeetingModel.status == MeetingStatus.CANCELLED.value)
                )
            ).scalar_one()

            next_stmt = (
                select(MeetingModel)
                .where(
                    MeetingModel.recruiter_id == recruiter_id,
                    MeetingModel.scheduled_time >= now,
                    MeetingModel.status.in_(_ACTIVE_VALUES),
                )
                .order_by(MeetingModel.scheduled_time)
                .limit(1)
            )
            next_model = (await session.execute(next_stmt)).scalar_one_or_none()

            return MeetingStats(
                total=total,
                upcoming=upcoming,
                today=today,
                completed=completed,
                cancelled=cancelled,
                next_meeting=_model_to_meeting(next_model) if next_model else None,
            )

    # ── Status (called by MeetingLifecycleController only) ──────────────

    async def transition_status(
        self,
        meeting_id: uuid.UUID | str,
        from_status: MeetingStatus,
        to_status: MeetingStatus,
        actor: Actor,
    ) -> Meeting | None:
        """Compare-and-swap a meeting's status and append a history row.

        Returns:
            The updated Meeting, or None if the meeting was no longer in
            from_status (a concurrent writer won). Nothing is written in
            that case.
        """
        meeting_uuid = parse_entity_id(meeting_id, "Meeting")
        values = {"status": to_status.value, "updated_at": datetime.now(timezone.utc)}
        if to_status not in ACTIVE_MEETING_STATUSES:
            # Student returns to the assignment pool
            values["assigned_student_id"] = None
        async for session in self._session_factory():
            stmt = (
                update(MeetingModel)
                .where(
                    MeetingModel.id == meeting_uuid,
                    MeetingModel.status == from_status.value,
                )
                .values(**values)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                return None

            session.add(_history_row(meeting_uuid, from_status, to_status, actor))
            await session.commit()

            model = await session.get(MeetingModel, meeting_uuid, populate_existing=True)
            return _model_to_meeting(model)

    # ── Calendar Invite Bookkeeping ─────────────────────────────────────

    async def attach_invite(
        self, meeting_id: uuid.UUID | str, invite: CalendarInvite
    ) -> Meeting | None:
        """Attach the calendar link and event ID. Status is never touched.

        Conditional on the meeting still being scheduled or confirmed and
        having no event yet, so an invite finishing after a cancellation
        (or a second invite for the same meeting) is never recorded.

        Returns:
            The updated Meeting, or None if no row matched.
        """
        meeting_uuid = parse_entity_id(meeting_id, "Meeting")
        async for session in self._session_factory():
            stmt = (
                update(MeetingModel)
                .where(
                    MeetingModel.id == meeting_uuid,
                    MeetingModel.status.in_(_ACTIVE_VALUES),
                    MeetingModel.calendar_event_id.is_(None),
                )
                .values(
                    external_meeting_link=invite.link,
                    calendar_event_id=invite.event_id,
                    invite_attempts=MeetingModel.invite_attempts + 1,
                    invite_last_error=None,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()

            model = await session.get(MeetingModel, meeting_uuid, populate_existing=True)
            return _model_to_meeting(model)

    async def record_invite_failure(
        self, meeting_id: uuid.UUID | str, error: str
    ) -> Meeting:
        """Count a failed invite attempt so the backfill job can retry it.

        Raises:
            ValueError: If meeting not found.
        """
        meeting_uuid = parse_entity_id(meeting_id, "Meeting")
        async for session in self._session_factory():
            model = await session.get(MeetingModel, meeting_uuid)
            if model is None:
                raise ValueError(f"Meeting not found: id={meeting_id}")

            model.invite_attempts = (model.invite_attempts or 0) + 1
            model.invite_last_error = error[:2000]
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def list_pending_invites(
        self,
        now: datetime,
        max_attempts: int,
        limit: int = 50,
        grace: timedelta = timedelta(minutes=10),
    ) -> list[Meeting]:
        """Active future meetings still missing a calendar event.

        A meeting whose first attempt has not finished yet is skipped unless
        it was created more than `grace` ago (the process died mid-dispatch).
        """
        async for session in self._session_factory():
            stmt = (
                select(MeetingModel)
                .where(
                    MeetingModel.calendar_event_id.is_(None),
                    MeetingModel.status.in_(_ACTIVE_VALUES),
                    MeetingModel.scheduled_time >= now,
                    MeetingModel.invite_attempts < max_attempts,
                    or_(
                        MeetingModel.invite_attempts >= 1,
                        MeetingModel.created_at <= now - grace,
                    ),
                )
                .order_by(MeetingModel.scheduled_time)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()]
