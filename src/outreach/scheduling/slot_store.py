"""Slot repository -- async persistence for availability slots and working hours.

Provides SlotStore with the session_factory callable pattern. Uniqueness of
(recruiter_id, start_time) is left to the database: a duplicate declaration
surfaces as IntegrityError and is translated to ConflictError, never
pre-checked with a read.

Status changes are compare-and-swap UPDATEs guarded on the current status so
that two sessions racing on the same slot cannot both win.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.outreach.config import Settings, get_settings
from src.outreach.core.database import SessionFactory
from src.outreach.scheduling.errors import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    parse_entity_id,
)
from src.outreach.scheduling.events import SchedulingEventPublisher, SchedulingEventType
from src.outreach.scheduling.models import AvailabilitySlotModel, RecruiterScheduleModel
from src.outreach.scheduling.policy import ensure_recruiter_access
from src.outreach.scheduling.schemas import (
    Actor,
    AvailabilitySlot,
    RecruiterSchedule,
    SlotStatus,
)

logger = structlog.get_logger(__name__)


def _model_to_slot(model: AvailabilitySlotModel) -> AvailabilitySlot:
    """Convert AvailabilitySlotModel to AvailabilitySlot schema."""
    return AvailabilitySlot(
        id=model.id,
        recruiter_id=model.recruiter_id,
        start_time=model.start_time,
        duration=model.duration,
        timezone=model.timezone,
        status=SlotStatus(model.status),
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_schedule(model: RecruiterScheduleModel) -> RecruiterSchedule:
    return RecruiterSchedule(
        recruiter_id=model.recruiter_id,
        work_start_hour=model.work_start_hour,
        work_end_hour=model.work_end_hour,
        timezone=model.timezone,
        direct_booking_enabled=model.direct_booking_enabled,
    )


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidRequestError(f"Unknown timezone: {name}") from exc
    return name


class SlotStore:
    """Persistent record of recruiter availability and its consumption state.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        publisher: Optional change-feed publisher for slot mutations.
        settings: Settings override (defaults to get_settings()).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        publisher: SchedulingEventPublisher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._settings = settings or get_settings()

    # ── Slots ────────────────────────────────────────────────────────────

    async def declare_slot(
        self,
        actor: Actor,
        recruiter_id: str,
        start_time: datetime,
        duration: int,
        timezone_name: str | None = None,
    ) -> AvailabilitySlot:
        """Declare a pending availability slot.

        Args:
            actor: Identity issuing the command.
            recruiter_id: Recruiter who owns the slot.
            start_time: Timezone-aware slot start.
            duration: Slot length in minutes.
            timezone_name: Display timezone for the slot.

        Returns:
            The persisted AvailabilitySlot in pending state.

        Raises:
            ConflictError: If (recruiter_id, start_time) already exists.
            InvalidRequestError: If start_time is naive or duration out of range.
        """
        ensure_recruiter_access(actor, recruiter_id)
        if start_time.tzinfo is None:
            raise InvalidRequestError("start_time must be timezone-aware")
        s = self._settings
        if not s.MIN_SLOT_DURATION_MINUTES <= duration <= s.MAX_SLOT_DURATION_MINUTES:
            raise InvalidRequestError(
                f"Duration must be between {s.MIN_SLOT_DURATION_MINUTES} and "
                f"{s.MAX_SLOT_DURATION_MINUTES} minutes",
                duration=duration,
            )
        tz_name = validate_timezone(timezone_name or s.DEFAULT_SLOT_TIMEZONE)
        start_utc = start_time.astimezone(timezone.utc)

        async for session in self._session_factory():
            model = AvailabilitySlotModel(
                id=uuid.uuid4(),
                recruiter_id=recruiter_id,
                start_time=start_utc,
                end_time=start_utc + timedelta(minutes=duration),
                duration=duration,
                timezone=tz_name,
                status=SlotStatus.PENDING.value,
                created_at=datetime.now(timezone.utc),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.info(
                    "slot_declare_conflict",
                    recruiter_id=recruiter_id,
                    start_time=start_utc.isoformat(),
                )
                raise ConflictError(
                    "A slot already exists for this recruiter at this time",
                    recruiter_id=recruiter_id,
                    start_time=start_utc.isoformat(),
                ) from exc
            slot = _model_to_slot(model)

        logger.info(
            "slot_declared",
            slot_id=str(slot.id),
            recruiter_id=recruiter_id,
            start_time=slot.start_time.isoformat(),
            duration=duration,
            actor_id=actor.id,
        )
        await self._publish(SchedulingEventType.SLOT_DECLARED, slot)
        return slot

    async def get_slot(self, slot_id: uuid.UUID | str) -> AvailabilitySlot | None:
        """Get a slot by ID, or None if it does not exist."""
        async for session in self._session_factory():
            model = await session.get(AvailabilitySlotModel, parse_entity_id(slot_id, "Slot"))
            if model is None:
                return None
            return _model_to_slot(model)

    async def find_slot(
        self, recruiter_id: str, start_time: datetime
    ) -> AvailabilitySlot | None:
        """Get the slot occupying (recruiter_id, start_time) in any status."""
        async for session in self._session_factory():
            stmt = select(AvailabilitySlotModel).where(
                AvailabilitySlotModel.recruiter_id == recruiter_id,
                AvailabilitySlotModel.start_time == start_time.astimezone(timezone.utc),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_slot(model)

    async def list_slots(
        self,
        recruiter_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        statuses: list[SlotStatus] | None = None,
    ) -> list[AvailabilitySlot]:
        """List slots filtered by recruiter, [start, end) window, and status.

        Returns:
            Slots ordered by start_time.
        """
        async for session in self._session_factory():
            stmt = select(AvailabilitySlotModel)
            if recruiter_id is not None:
                stmt = stmt.where(AvailabilitySlotModel.recruiter_id == recruiter_id)
            if start is not None:
                stmt = stmt.where(AvailabilitySlotModel.start_time >= start)
            if end is not None:
                stmt = stmt.where(AvailabilitySlotModel.start_time < end)
            if statuses:
                stmt = stmt.where(
                    AvailabilitySlotModel.status.in_([s.value for s in statuses])
                )
            stmt = stmt.order_by(AvailabilitySlotModel.start_time)
            result = await session.execute(stmt)
            return [_model_to_slot(m) for m in result.scalars().all()]

    async def list_overlapping_slots(
        self,
        recruiter_id: str,
        start: datetime,
        end: datetime,
    ) -> list[AvailabilitySlot]:
        """Non-cancelled slots whose interval intersects [start, end)."""
        async for session in self._session_factory():
            stmt = (
                select(AvailabilitySlotModel)
                .where(
                    AvailabilitySlotModel.recruiter_id == recruiter_id,
                    AvailabilitySlotModel.status != SlotStatus.CANCELLED.value,
                    AvailabilitySlotModel.start_time < end,
                    AvailabilitySlotModel.end_time > start,
                )
                .order_by(AvailabilitySlotModel.start_time)
            )
            result = await session.execute(stmt)
            return [_model_to_slot(m) for m in result.scalars().all()]

    async def cancel_slot(self, actor: Actor, slot_id: uuid.UUID | str) -> AvailabilitySlot:
        """Cancel a pending slot.

        Raises:
            NotFoundError: If the slot does not exist.
            InvalidStateError: If the slot is not pending.
        """
        slot_uuid = parse_entity_id(slot_id, "Slot")
        async for session in self._session_factory():
            model = await session.get(AvailabilitySlotModel, slot_uuid)
            if model is None:
                raise NotFoundError(f"Slot not found: {slot_id}")
            ensure_recruiter_access(actor, model.recruiter_id)

            stmt = (
                update(AvailabilitySlotModel)
                .where(
                    AvailabilitySlotModel.id == slot_uuid,
                    AvailabilitySlotModel.status == SlotStatus.PENDING.value,
                )
                .values(
                    status=SlotStatus.CANCELLED.value,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                await session.refresh(model)
                raise InvalidStateError(
                    f"Only pending slots can be cancelled (slot is {model.status})",
                    slot_id=str(slot_uuid),
                    status=model.status,
                )
            await session.commit()
            await session.refresh(model)
            slot = _model_to_slot(model)

        logger.info("slot_cancelled", slot_id=str(slot.id), actor_id=actor.id)
        await self._publish(SchedulingEventType.SLOT_CANCELLED, slot)
        return slot

    async def claim_slot(self, session: AsyncSession, slot_id: uuid.UUID) -> bool:
        """Compare-and-swap pending -> booked inside the caller's transaction.

        Returns:
            True if this session won the slot, False if it was no longer pending.
        """
        stmt = (
            update(AvailabilitySlotModel)
            .where(
                AvailabilitySlotModel.id == slot_id,
                AvailabilitySlotModel.status == SlotStatus.PENDING.value,
            )
            .values(
                status=SlotStatus.BOOKED.value,
                updated_at=datetime.now(timezone.utc),
            )
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def overlap_exists(
        self,
        session: AsyncSession,
        recruiter_id: str,
        start: datetime,
        end: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> bool:
        """Whether a non-cancelled slot intersects [start, end), in the caller's transaction."""
        stmt = select(AvailabilitySlotModel.id).where(
            AvailabilitySlotModel.recruiter_id == recruiter_id,
            AvailabilitySlotModel.status != SlotStatus.CANCELLED.value,
            AvailabilitySlotModel.start_time < end,
            AvailabilitySlotModel.end_time > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(AvailabilitySlotModel.id != exclude_id)
        result = await session.execute(stmt.limit(1))
        return result.first() is not None

    # ── Working Hours ────────────────────────────────────────────────────

    def default_schedule(self, recruiter_id: str) -> RecruiterSchedule:
        s = self._settings
        return RecruiterSchedule(
            recruiter_id=recruiter_id,
            work_start_hour=s.DEFAULT_WORK_START_HOUR,
            work_end_hour=s.DEFAULT_WORK_END_HOUR,
            timezone=s.DEFAULT_SCHEDULE_TIMEZONE,
            direct_booking_enabled=s.DIRECT_BOOKING_ENABLED,
        )

    async def get_schedule(self, recruiter_id: str) -> RecruiterSchedule:
        """Get a recruiter's working hours, falling back to configured defaults."""
        async for session in self._session_factory():
            model = await session.get(RecruiterScheduleModel, recruiter_id)
            if model is None:
                return self.default_schedule(recruiter_id)
            return _model_to_schedule(model)

    async def set_schedule(self, actor: Actor, schedule: RecruiterSchedule) -> RecruiterSchedule:
        """Create or replace a recruiter's working hours."""
        ensure_recruiter_access(actor, schedule.recruiter_id)
        if schedule.work_start_hour >= schedule.work_end_hour:
            raise InvalidRequestError("work_start_hour must be before work_end_hour")
        validate_timezone(schedule.timezone)

        async for session in self._session_factory():
            model = await session.get(RecruiterScheduleModel, schedule.recruiter_id)
            if model is None:
                model = RecruiterScheduleModel(recruiter_id=schedule.recruiter_id)
                session.add(model)
            model.work_start_hour = schedule.work_start_hour
            model.work_end_hour = schedule.work_end_hour
            model.timezone = schedule.timezone
            model.direct_booking_enabled = schedule.direct_booking_enabled
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            saved = _model_to_schedule(model)

        logger.info(
            "recruiter_schedule_saved",
            recruiter_id=saved.recruiter_id,
            work_start_hour=saved.work_start_hour,
            work_end_hour=saved.work_end_hour,
            timezone=saved.timezone,
        )
        return saved

    # ── Change Feed ──────────────────────────────────────────────────────

    async def _publish(self, event_type: SchedulingEventType, slot: AvailabilitySlot) -> None:
        if self._publisher is None:
            return
        await self._publisher.publish_change(
            event_type,
            recruiter_id=slot.recruiter_id,
            entity_id=str(slot.id),
            data={
                "start_time": slot.start_time.isoformat(),
                "status": slot.status.value,
            },
        )
