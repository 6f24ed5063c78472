"""Tests for the Google Calendar collaborator.

All tests use mocked Google APIs -- no real credentials needed.
Validates auth caching, event insertion with a Meet conference request,
free/busy parsing, deletion, and error wrapping via asyncio.to_thread.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from src.outreach.scheduling.errors import ExternalServiceError
from src.outreach.services.calendar import (
    CALENDAR_SCOPES,
    CalendarAuthManager,
    GoogleCalendarService,
    invite_event_id,
)
from tests.conftest import FakeRoster

START = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def mock_credentials():
    """Mock Google service account credentials."""
    with patch(
        "src.outreach.services.calendar.service_account.Credentials"
    ) as mock_creds_cls:
        mock_creds = MagicMock()
        mock_creds.with_subject.return_value = mock_creds
        mock_creds_cls.from_service_account_file.return_value = mock_creds
        yield mock_creds_cls


@pytest.fixture
def mock_build():
    """Mock googleapiclient.discovery.build."""
    with patch("src.outreach.services.calendar.build") as mock_build_fn:
        yield mock_build_fn


@pytest.fixture
def calendar_api():
    """Calendar v3 service double returned by the auth manager."""
    return MagicMock()


@pytest.fixture
def calendar_service(calendar_api):
    auth_manager = MagicMock()
    auth_manager.get_calendar_service.return_value = calendar_api
    return GoogleCalendarService(auth_manager, FakeRoster(), timezone_name="UTC")


# ── Auth ─────────────────────────────────────────────────────────────────────


class TestCalendarAuthManager:
    def test_builds_delegated_service(self, mock_credentials, mock_build):
        manager = CalendarAuthManager("/fake/service-account.json")

        manager.get_calendar_service("rita@acme.example")

        mock_credentials.from_service_account_file.assert_called_once_with(
            "/fake/service-account.json", scopes=CALENDAR_SCOPES
        )
        mock_credentials.from_service_account_file.return_value.with_subject.assert_called_once_with(
            "rita@acme.example"
        )
        assert mock_build.call_args.args == ("calendar", "v3")
        assert mock_build.call_args.kwargs["cache_discovery"] is False

    def test_service_cached_per_user(self, mock_credentials, mock_build):
        manager = CalendarAuthManager("/fake/service-account.json")

        first = manager.get_calendar_service("rita@acme.example")
        second = manager.get_calendar_service("rita@acme.example")
        manager.get_calendar_service("ravi@acme.example")

        assert first is second
        assert mock_build.call_count == 2


# ── Invites ──────────────────────────────────────────────────────────────────


class TestCreateInvite:
    @pytest.mark.asyncio
    async def test_inserts_event_with_meet_link(self, calendar_service, calendar_api):
        insert = calendar_api.events.return_value.insert
        insert.return_value.execute.return_value = {
            "id": "evt-123",
            "htmlLink": "https://calendar.google.com/event?eid=evt-123",
            "conferenceData": {
                "entryPoints": [
                    {"entryPointType": "phone", "uri": "tel:+1-555"},
                    {"entryPointType": "video", "uri": "https://meet.google.com/abc-defg-hij"},
                ]
            },
        }

        invite = await calendar_service.create_invite(
            meeting_id="m-1",
            recruiter_id="rec-1",
            student_id="stu-1",
            start_time=START,
            duration=30,
            title="Meeting: Rita Recruiter & Student 1",
            agenda="Intro",
        )

        assert invite.event_id == "evt-123"
        assert invite.link == "https://meet.google.com/abc-defg-hij"

        kwargs = insert.call_args.kwargs
        assert kwargs["calendarId"] == "primary"
        assert kwargs["conferenceDataVersion"] == 1
        assert kwargs["sendUpdates"] == "all"
        body = kwargs["body"]
        assert body["id"] == invite_event_id("m-1")
        assert body["summary"] == "Meeting: Rita Recruiter & Student 1"
        assert body["end"]["dateTime"] == "2025-03-10T15:30:00+00:00"
        assert [a["email"] for a in body["attendees"]] == [
            "rita@acme.example",
            "stu1@uni.example",
        ]
        assert body["extendedProperties"]["private"]["meeting_id"] == "m-1"
        assert (
            body["conferenceData"]["createRequest"]["conferenceSolutionKey"]["type"]
            == "hangoutsMeet"
        )

    @pytest.mark.asyncio
    async def test_falls_back_to_html_link(self, calendar_service, calendar_api):
        calendar_api.events.return_value.insert.return_value.execute.return_value = {
            "id": "evt-9",
            "htmlLink": "https://calendar.google.com/event?eid=evt-9",
        }

        invite = await calendar_service.create_invite(
            "m-9", "rec-1", "stu-1", START, 30, "Interview"
        )

        assert invite.link == "https://calendar.google.com/event?eid=evt-9"

    def test_event_id_is_stable_base32hex(self):
        event_id = invite_event_id("6f93c1d2-0000-4000-8000-000000000001")

        assert event_id == invite_event_id("6f93c1d2-0000-4000-8000-000000000001")
        assert event_id != invite_event_id("m-2")
        assert set(event_id) <= set("0123456789abcdefghijklmnopqrstuv")

    @pytest.mark.asyncio
    async def test_existing_event_returned_on_conflict(self, calendar_service, calendar_api):
        events = calendar_api.events.return_value
        events.insert.return_value.execute.side_effect = HttpError(
            MagicMock(status=409, reason="Conflict"), b"The requested identifier already exists."
        )
        events.get.return_value.execute.return_value = {
            "id": invite_event_id("m-1"),
            "htmlLink": "https://calendar.google.com/event?eid=m1",
        }

        invite = await calendar_service.create_invite("m-1", "rec-1", "stu-1", START, 30, "Interview")

        assert invite.event_id == invite_event_id("m-1")
        events.get.assert_called_once_with(calendarId="primary", eventId=invite_event_id("m-1"))

    @pytest.mark.asyncio
    async def test_other_http_errors_wrapped(self, calendar_service, calendar_api):
        events = calendar_api.events.return_value
        events.insert.return_value.execute.side_effect = HttpError(
            MagicMock(status=500, reason="Backend Error"), b"backend"
        )

        with pytest.raises(ExternalServiceError):
            await calendar_service.create_invite("m-1", "rec-1", "stu-1", START, 30, "Interview")
        events.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_failure_wrapped(self, calendar_service, calendar_api):
        calendar_api.events.return_value.insert.return_value.execute.side_effect = RuntimeError(
            "quota exceeded"
        )

        with pytest.raises(ExternalServiceError, match="quota exceeded"):
            await calendar_service.create_invite("m-1", "rec-1", "stu-1", START, 30, "Interview")

    @pytest.mark.asyncio
    async def test_unknown_recruiter_fails_before_api_call(self, calendar_service, calendar_api):
        with pytest.raises(ExternalServiceError):
            await calendar_service.create_invite(
                "m-1", "rec-404", "stu-1", START, 30, "Interview"
            )
        calendar_api.events.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_deletes_event(self, calendar_service, calendar_api):
        await calendar_service.cancel_invite("rec-1", "evt-123")

        calendar_api.events.return_value.delete.assert_called_once_with(
            calendarId="primary", eventId="evt-123", sendUpdates="all"
        )


# ── Free/Busy ────────────────────────────────────────────────────────────────


class TestBusyIntervals:
    @pytest.mark.asyncio
    async def test_parses_busy_blocks(self, calendar_service, calendar_api):
        calendar_api.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {
                "rita@acme.example": {
                    "busy": [
                        {"start": "2025-03-10T10:00:00Z", "end": "2025-03-10T11:00:00Z"},
                    ]
                }
            }
        }

        busy = await calendar_service.get_busy_intervals(
            "rec-1", START.replace(hour=0), START.replace(hour=23)
        )

        assert len(busy) == 1
        assert busy[0].start == datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)
        assert busy[0].end == datetime(2025, 3, 10, 11, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_calendar_errors_raise(self, calendar_service, calendar_api):
        calendar_api.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {"rita@acme.example": {"errors": [{"reason": "notFound"}]}}
        }

        with pytest.raises(ExternalServiceError):
            await calendar_service.get_busy_intervals("rec-1", START, START.replace(hour=16))
