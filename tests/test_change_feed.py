"""Tests for the scheduling change feed on Redis Streams."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from src.outreach.main import attach_services
from src.outreach.scheduling.events import (
    STREAM_KEY,
    SchedulingEvent,
    SchedulingEventPublisher,
    SchedulingEventType,
)
from src.outreach.scheduling.schemas import MeetingStatus
from tests.conftest import ADMIN, RECRUITER, student


class TestSchedulingEvent:
    def test_stream_dict_is_flat_strings(self):
        event = SchedulingEvent(
            event_type=SchedulingEventType.MEETING_CREATED,
            recruiter_id="rec-1",
            entity_id="m-1",
            data={"slot_id": None, "scheduled_time": "2025-03-10T15:00:00+00:00"},
        )

        fields = event.to_stream_dict()

        assert all(isinstance(v, str) for v in fields.values())
        assert json.loads(fields["data"])["slot_id"] is None

    def test_from_stream_dict_restores_event(self):
        original = SchedulingEvent(
            event_type=SchedulingEventType.SLOT_CANCELLED,
            recruiter_id="rec-1",
            entity_id="s-1",
            timestamp=datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc),
            data={"status": "cancelled"},
        )

        restored = SchedulingEvent.from_stream_dict(original.to_stream_dict())

        assert restored == original


class TestPublisher:
    @pytest.mark.asyncio
    async def test_publish_appends_to_stream(self):
        redis = AsyncMock()
        redis.xadd.return_value = "1700000000000-0"
        publisher = SchedulingEventPublisher(redis, maxlen=500)

        message_id = await publisher.publish_change(
            SchedulingEventType.SLOT_DECLARED, recruiter_id="rec-1", entity_id="s-1"
        )

        assert message_id == "1700000000000-0"
        call = redis.xadd.await_args
        assert call.args[0] == STREAM_KEY
        assert call.kwargs == {"maxlen": 500, "approximate": True}

    @pytest.mark.asyncio
    async def test_publish_failure_returns_none(self):
        redis = AsyncMock()
        redis.xadd.side_effect = ConnectionError("refused")

        result = await SchedulingEventPublisher(redis).publish_change(
            SchedulingEventType.SLOT_DECLARED, recruiter_id="rec-1", entity_id="s-1"
        )

        assert result is None

    @pytest.mark.asyncio
    async def test_read_since_is_exclusive(self):
        event = SchedulingEvent(
            event_type=SchedulingEventType.MEETING_STATUS_CHANGED,
            recruiter_id="rec-1",
            entity_id="m-1",
        )
        redis = AsyncMock()
        redis.xrange.return_value = [("2-0", event.to_stream_dict())]
        publisher = SchedulingEventPublisher(redis)

        entries = await publisher.read_since("1-0", count=10)

        redis.xrange.assert_awaited_once_with(STREAM_KEY, min="(1-0", count=10)
        assert entries[0][0] == "2-0"
        assert entries[0][1].event_id == event.event_id

    @pytest.mark.asyncio
    async def test_read_from_start(self):
        redis = AsyncMock()
        redis.xrange.return_value = []

        assert await SchedulingEventPublisher(redis).read_since() == []
        redis.xrange.assert_awaited_once_with(STREAM_KEY, min="-", count=100)


class TestServicesPublish:
    """Booking and lifecycle commands emit feed entries."""

    @pytest.mark.asyncio
    async def test_reservation_and_status_change_published(
        self, session_factory, settings, clock
    ):
        redis = AsyncMock()
        redis.xadd.return_value = "1-0"
        state = SimpleNamespace()
        attach_services(
            state,
            session_factory,
            settings,
            publisher=SchedulingEventPublisher(redis),
            clock=clock,
        )

        await state.slot_store.declare_slot(
            RECRUITER, "rec-1", datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc), 30
        )
        meeting = await state.booking_engine.reserve(
            student(), "rec-1", "stu-1", datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)
        )
        await state.lifecycle.apply_status(ADMIN, meeting.id, MeetingStatus.CONFIRMED)

        types = [c.args[1]["event_type"] for c in redis.xadd.await_args_list]
        assert types == ["slot.declared", "meeting.created", "meeting.status_changed"]
