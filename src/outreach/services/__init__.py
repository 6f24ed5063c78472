"""External collaborators: Google Calendar and the roster directory."""

from src.outreach.services.calendar import (
    CalendarAuthManager,
    CalendarCollaborator,
    GoogleCalendarService,
)
from src.outreach.services.roster import HttpRosterClient, RosterDirectory

__all__ = [
    "CalendarAuthManager",
    "CalendarCollaborator",
    "GoogleCalendarService",
    "HttpRosterClient",
    "RosterDirectory",
]
