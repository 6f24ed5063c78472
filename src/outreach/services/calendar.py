"""Google Calendar collaborator for interview invites and free/busy lookups.

Uses a service account with domain-wide delegation: events are inserted
into the recruiter's own calendar (the service account impersonates the
recruiter) with the student as attendee and a Google Meet conference
request attached. Participant emails are resolved through the roster.

Event ids are derived from the meeting id, so a repeated create_invite for
one meeting resolves to the existing event instead of a second invitation.

All Google API calls are synchronous and wrapped in asyncio.to_thread()
to avoid blocking the event loop. Every failure surfaces as
ExternalServiceError; callers decide whether that is fatal.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from src.outreach.scheduling.errors import ExternalServiceError
from src.outreach.scheduling.schemas import CalendarInvite, TimeInterval
from src.outreach.services.roster import RosterDirectory

logger = structlog.get_logger(__name__)

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


def invite_event_id(meeting_id: str) -> str:
    """Deterministic Calendar event id for a meeting.

    Event ids are limited to base32hex characters (a-v, 0-9); a hex digest
    satisfies that.
    """
    return hashlib.sha1(meeting_id.encode("utf-8")).hexdigest()


class CalendarCollaborator(Protocol):
    """External calendar used for invites and busy-time lookups."""

    async def create_invite(
        self,
        meeting_id: str,
        recruiter_id: str,
        student_id: str,
        start_time: datetime,
        duration: int,
        title: str,
        agenda: str | None = None,
    ) -> CalendarInvite: ...

    async def get_busy_intervals(
        self, recruiter_id: str, start: datetime, end: datetime
    ) -> list[TimeInterval]: ...

    async def cancel_invite(self, recruiter_id: str, event_id: str) -> None: ...


class CalendarAuthManager:
    """Builds and caches delegated Calendar API v3 service instances.

    Caches one service per impersonated email to avoid repeated credential
    builds and HTTP connection overhead.
    """

    def __init__(self, service_account_file: str) -> None:
        self._service_account_file = service_account_file
        self._service_cache: dict[str, Any] = {}

    def _build_credentials(self, user_email: str) -> service_account.Credentials:
        credentials = service_account.Credentials.from_service_account_file(
            self._service_account_file,
            scopes=CALENDAR_SCOPES,
        )
        return credentials.with_subject(user_email)

    def get_calendar_service(self, user_email: str) -> Any:
        """Get a cached Calendar API v3 service for the delegated user."""
        cache_key = f"calendar:{user_email}"

        if cache_key not in self._service_cache:
            logger.info("building_calendar_service", user_email=user_email)
            credentials = self._build_credentials(user_email)
            self._service_cache[cache_key] = build(
                "calendar", "v3", credentials=credentials, cache_discovery=False
            )

        return self._service_cache[cache_key]


class GoogleCalendarService:
    """Google Calendar v3 adapter implementing CalendarCollaborator.

    Args:
        auth_manager: CalendarAuthManager for delegated service instances.
        roster: RosterDirectory used to resolve participant emails.
        timezone_name: Timezone written into event start/end blocks.
    """

    def __init__(
        self,
        auth_manager: CalendarAuthManager,
        roster: RosterDirectory,
        timezone_name: str = "UTC",
    ) -> None:
        self._auth_manager = auth_manager
        self._roster = roster
        self._timezone = timezone_name

    async def _recruiter_email(self, recruiter_id: str) -> str:
        recruiter = await self._roster.get_recruiter(recruiter_id)
        if recruiter is None or not recruiter.email:
            raise ExternalServiceError(
                f"No calendar email on roster for recruiter {recruiter_id}",
                recruiter_id=recruiter_id,
            )
        return recruiter.email

    # ── Invites ─────────────────────────────────────────────────────────

    async def create_invite(
        self,
        meeting_id: str,
        recruiter_id: str,
        student_id: str,
        start_time: datetime,
        duration: int,
        title: str,
        agenda: str | None = None,
    ) -> CalendarInvite:
        """Insert an event with a Meet link into the recruiter's calendar.

        Raises:
            ExternalServiceError: On roster resolution or Calendar API failure.
        """
        recruiter_email = await self._recruiter_email(recruiter_id)
        student = await self._roster.get_student(student_id)
        attendees = [{"email": recruiter_email}]
        if student is not None and student.email:
            attendees.append({"email": student.email})

        event_id = invite_event_id(meeting_id)
        end_time = start_time + timedelta(minutes=duration)
        body = {
            "id": event_id,
            "summary": title,
            "description": agenda or "",
            "start": {"dateTime": start_time.isoformat(), "timeZone": self._timezone},
            "end": {"dateTime": end_time.isoformat(), "timeZone": self._timezone},
            "attendees": attendees,
            "conferenceData": {
                "createRequest": {
                    "requestId": f"meet-{event_id}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
            "extendedProperties": {"private": {"meeting_id": meeting_id}},
        }

        def _insert() -> dict:
            events = self._auth_manager.get_calendar_service(recruiter_email).events()
            try:
                return events.insert(
                    calendarId="primary",
                    body=body,
                    conferenceDataVersion=1,
                    sendUpdates="all",
                ).execute()
            except HttpError as exc:
                # 409: this meeting's event already exists
                if exc.resp.status != 409:
                    raise
                logger.info("calendar_invite_exists", meeting_id=meeting_id, event_id=event_id)
                return events.get(calendarId="primary", eventId=event_id).execute()

        try:
            event = await asyncio.to_thread(_insert)
        except Exception as exc:
            logger.warning(
                "calendar_invite_failed",
                meeting_id=meeting_id,
                recruiter_id=recruiter_id,
                error=str(exc),
            )
            raise ExternalServiceError(
                f"Calendar invite creation failed: {exc}",
                meeting_id=meeting_id,
            ) from exc

        link = self.get_meet_url(event) or event.get("htmlLink")
        logger.info(
            "calendar_invite_created",
            meeting_id=meeting_id,
            event_id=event.get("id"),
        )
        return CalendarInvite(link=link, event_id=event["id"])

    async def cancel_invite(self, recruiter_id: str, event_id: str) -> None:
        """Delete an event from the recruiter's calendar, notifying attendees."""
        recruiter_email = await self._recruiter_email(recruiter_id)

        def _delete() -> None:
            service = self._auth_manager.get_calendar_service(recruiter_email)
            service.events().delete(
                calendarId="primary",
                eventId=event_id,
                sendUpdates="all",
            ).execute()

        try:
            await asyncio.to_thread(_delete)
        except Exception as exc:
            raise ExternalServiceError(
                f"Calendar event deletion failed: {exc}",
                event_id=event_id,
            ) from exc
        logger.info("calendar_invite_cancelled", event_id=event_id)

    # ── Free/Busy ───────────────────────────────────────────────────────

    async def get_busy_intervals(
        self, recruiter_id: str, start: datetime, end: datetime
    ) -> list[TimeInterval]:
        """Busy periods on the recruiter's primary calendar within [start, end)."""
        recruiter_email = await self._recruiter_email(recruiter_id)

        def _query() -> dict:
            service = self._auth_manager.get_calendar_service(recruiter_email)
            return (
                service.freebusy()
                .query(
                    body={
                        "timeMin": start.isoformat(),
                        "timeMax": end.isoformat(),
                        "items": [{"id": recruiter_email}],
                    }
                )
                .execute()
            )

        try:
            result = await asyncio.to_thread(_query)
        except Exception as exc:
            raise ExternalServiceError(
                f"Free/busy lookup failed: {exc}",
                recruiter_id=recruiter_id,
            ) from exc

        calendar = result.get("calendars", {}).get(recruiter_email, {})
        if calendar.get("errors"):
            raise ExternalServiceError(
                "Free/busy lookup returned errors",
                recruiter_id=recruiter_id,
                errors=calendar["errors"],
            )
        return [
            TimeInterval(
                start=datetime.fromisoformat(b["start"].replace("Z", "+00:00")),
                end=datetime.fromisoformat(b["end"].replace("Z", "+00:00")),
            )
            for b in calendar.get("busy", [])
        ]

    @staticmethod
    def get_meet_url(event: dict) -> str | None:
        """Extract the Google Meet URL from an event's conference entry points."""
        conference = event.get("conferenceData", {})
        for ep in conference.get("entryPoints", []):
            if ep.get("entryPointType") == "video":
                return ep.get("uri")
        return None
