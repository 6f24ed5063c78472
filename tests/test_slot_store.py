"""Tests for SlotStore: declaration, uniqueness, cancellation, working hours.

Runs against a real SQLite file so the (recruiter_id, start_time) unique
constraint and the pending -> cancelled compare-and-swap are exercised.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.outreach.scheduling.errors import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    SlotUnavailableError,
)
from src.outreach.scheduling.events import SchedulingEventPublisher, STREAM_KEY
from src.outreach.scheduling.schemas import RecruiterSchedule, SlotStatus
from src.outreach.scheduling.slot_store import SlotStore
from tests.conftest import ADMIN, OTHER_RECRUITER, RECRUITER, student

START = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


# ── Declaration ──────────────────────────────────────────────────────────────


class TestDeclareSlot:
    """Tests for SlotStore.declare_slot."""

    @pytest.mark.asyncio
    async def test_declare_returns_pending_slot(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)

        assert slot.status == SlotStatus.PENDING
        assert slot.recruiter_id == "rec-1"
        assert slot.start_time == START
        assert slot.end_time == START + timedelta(minutes=30)
        assert slot.timezone == "America/New_York"  # configured default

    @pytest.mark.asyncio
    async def test_start_time_normalized_to_utc(self, services):
        """An offset start is stored as the same instant in UTC."""
        eastern = datetime(2025, 3, 10, 11, 0, tzinfo=timezone(timedelta(hours=-4)))
        slot = await services.slot_store.declare_slot(
            RECRUITER, "rec-1", eastern, 45, timezone_name="America/New_York"
        )
        assert slot.start_time == START
        assert slot.start_time.tzinfo == timezone.utc

    @pytest.mark.asyncio
    async def test_duplicate_start_raises_conflict(self, services):
        await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)

        with pytest.raises(ConflictError) as exc_info:
            await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 60)
        assert exc_info.value.code == "slot_conflict"

    @pytest.mark.asyncio
    async def test_same_start_for_different_recruiters_allowed(self, services):
        await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)
        slot = await services.slot_store.declare_slot(OTHER_RECRUITER, "rec-2", START, 30)
        assert slot.recruiter_id == "rec-2"

    @pytest.mark.asyncio
    async def test_naive_datetime_rejected(self, services):
        with pytest.raises(InvalidRequestError):
            await services.slot_store.declare_slot(
                RECRUITER, "rec-1", datetime(2025, 3, 10, 15, 0), 30
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [0, 10, 241])
    async def test_duration_out_of_range_rejected(self, services, duration):
        with pytest.raises(InvalidRequestError):
            await services.slot_store.declare_slot(RECRUITER, "rec-1", START, duration)

    @pytest.mark.asyncio
    async def test_unknown_timezone_rejected(self, services):
        with pytest.raises(InvalidRequestError, match="Unknown timezone"):
            await services.slot_store.declare_slot(
                RECRUITER, "rec-1", START, 30, timezone_name="Mars/Olympus_Mons"
            )

    @pytest.mark.asyncio
    async def test_recruiter_cannot_declare_for_another(self, services):
        with pytest.raises(PermissionDeniedError):
            await services.slot_store.declare_slot(OTHER_RECRUITER, "rec-1", START, 30)

    @pytest.mark.asyncio
    async def test_student_cannot_declare(self, services):
        with pytest.raises(PermissionDeniedError):
            await services.slot_store.declare_slot(student(), "rec-1", START, 30)

    @pytest.mark.asyncio
    async def test_admin_can_declare_for_any_recruiter(self, services):
        slot = await services.slot_store.declare_slot(ADMIN, "rec-2", START, 30)
        assert slot.recruiter_id == "rec-2"


# ── Reads ────────────────────────────────────────────────────────────────────


class TestListSlots:
    """Tests for get_slot, find_slot, and list_slots."""

    @pytest.mark.asyncio
    async def test_list_filters_by_window_and_status(self, services):
        store = services.slot_store
        first = await store.declare_slot(RECRUITER, "rec-1", START, 30)
        second = await store.declare_slot(RECRUITER, "rec-1", START + timedelta(hours=1), 30)
        await store.declare_slot(RECRUITER, "rec-1", START + timedelta(days=1), 30)
        await store.cancel_slot(RECRUITER, second.id)

        in_day = await store.list_slots(
            recruiter_id="rec-1", start=START, end=START + timedelta(hours=12)
        )
        assert [s.id for s in in_day] == [first.id, second.id]

        pending = await store.list_slots(
            recruiter_id="rec-1",
            start=START,
            end=START + timedelta(hours=12),
            statuses=[SlotStatus.PENDING],
        )
        assert [s.id for s in pending] == [first.id]

    @pytest.mark.asyncio
    async def test_find_slot_by_recruiter_and_start(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)

        found = await services.slot_store.find_slot("rec-1", START)
        assert found is not None
        assert found.id == slot.id
        assert await services.slot_store.find_slot("rec-2", START) is None

    @pytest.mark.asyncio
    async def test_get_slot_missing_returns_none(self, services):
        assert await services.slot_store.get_slot(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_get_slot_with_malformed_id_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.slot_store.get_slot("not-a-uuid")


# ── Cancellation ─────────────────────────────────────────────────────────────


class TestCancelSlot:
    """Tests for SlotStore.cancel_slot."""

    @pytest.mark.asyncio
    async def test_cancel_pending_slot(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)

        cancelled = await services.slot_store.cancel_slot(RECRUITER, slot.id)

        assert cancelled.status == SlotStatus.CANCELLED
        stored = await services.slot_store.get_slot(slot.id)
        assert stored.status == SlotStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_twice_raises_invalid_state(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)
        await services.slot_store.cancel_slot(RECRUITER, slot.id)

        with pytest.raises(InvalidStateError):
            await services.slot_store.cancel_slot(RECRUITER, slot.id)

    @pytest.mark.asyncio
    async def test_cancel_booked_slot_raises_invalid_state(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)
        await services.booking_engine.reserve(student(), "rec-1", "stu-1", START)

        with pytest.raises(InvalidStateError):
            await services.slot_store.cancel_slot(RECRUITER, slot.id)
        assert (await services.slot_store.get_slot(slot.id)).status == SlotStatus.BOOKED

    @pytest.mark.asyncio
    async def test_cancelled_slot_never_becomes_booked(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)
        await services.slot_store.cancel_slot(RECRUITER, slot.id)

        with pytest.raises(SlotUnavailableError):
            await services.booking_engine.reserve(student(), "rec-1", "stu-1", START)
        assert (await services.slot_store.get_slot(slot.id)).status == SlotStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_start_still_conflicts(self, services):
        """A cancelled slot keeps its (recruiter, start) key."""
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)
        await services.slot_store.cancel_slot(RECRUITER, slot.id)

        with pytest.raises(ConflictError):
            await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)

    @pytest.mark.asyncio
    async def test_cancel_unknown_slot_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.slot_store.cancel_slot(RECRUITER, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_other_recruiter_cannot_cancel(self, services):
        slot = await services.slot_store.declare_slot(RECRUITER, "rec-1", START, 30)

        with pytest.raises(PermissionDeniedError):
            await services.slot_store.cancel_slot(OTHER_RECRUITER, slot.id)
        assert (await services.slot_store.get_slot(slot.id)).status == SlotStatus.PENDING


# ── Working Hours ────────────────────────────────────────────────────────────


class TestSchedule:
    """Tests for get_schedule / set_schedule."""

    @pytest.mark.asyncio
    async def test_default_schedule_from_settings(self, services):
        schedule = await services.slot_store.get_schedule("rec-1")
        assert schedule.work_start_hour == 9
        assert schedule.work_end_hour == 17
        assert schedule.timezone == "UTC"
        assert schedule.direct_booking_enabled is True

    @pytest.mark.asyncio
    async def test_set_schedule_persists_and_replaces(self, services):
        store = services.slot_store
        await store.set_schedule(
            RECRUITER,
            RecruiterSchedule(
                recruiter_id="rec-1", work_start_hour=8, work_end_hour=12, timezone="Europe/Paris"
            ),
        )
        await store.set_schedule(
            RECRUITER,
            RecruiterSchedule(
                recruiter_id="rec-1",
                work_start_hour=10,
                work_end_hour=18,
                timezone="Europe/Paris",
                direct_booking_enabled=False,
            ),
        )

        schedule = await store.get_schedule("rec-1")
        assert (schedule.work_start_hour, schedule.work_end_hour) == (10, 18)
        assert schedule.timezone == "Europe/Paris"
        assert schedule.direct_booking_enabled is False

    @pytest.mark.asyncio
    async def test_inverted_hours_rejected(self, services):
        with pytest.raises(InvalidRequestError):
            await services.slot_store.set_schedule(
                RECRUITER,
                RecruiterSchedule(recruiter_id="rec-1", work_start_hour=17, work_end_hour=9),
            )

    @pytest.mark.asyncio
    async def test_other_recruiter_cannot_set_schedule(self, services):
        with pytest.raises(PermissionDeniedError):
            await services.slot_store.set_schedule(
                OTHER_RECRUITER,
                RecruiterSchedule(recruiter_id="rec-1", work_start_hour=9, work_end_hour=17),
            )


# ── Change Feed ──────────────────────────────────────────────────────────────


class TestSlotEvents:
    """Slot mutations are appended to the change feed."""

    @pytest.mark.asyncio
    async def test_declare_and_cancel_publish(self, session_factory, settings):
        redis = AsyncMock()
        redis.xadd.return_value = "1-0"
        store = SlotStore(
            session_factory, publisher=SchedulingEventPublisher(redis), settings=settings
        )

        slot = await store.declare_slot(RECRUITER, "rec-1", START, 30)
        await store.cancel_slot(RECRUITER, slot.id)

        assert redis.xadd.await_count == 2
        first_call, second_call = redis.xadd.await_args_list
        assert first_call.args[0] == STREAM_KEY
        assert first_call.args[1]["event_type"] == "slot.declared"
        assert first_call.args[1]["entity_id"] == str(slot.id)
        assert second_call.args[1]["event_type"] == "slot.cancelled"

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_declaration(self, session_factory, settings):
        redis = AsyncMock()
        redis.xadd.side_effect = ConnectionError("redis down")
        store = SlotStore(
            session_factory, publisher=SchedulingEventPublisher(redis), settings=settings
        )

        slot = await store.declare_slot(RECRUITER, "rec-1", START, 30)

        assert (await store.get_slot(slot.id)).status == SlotStatus.PENDING
