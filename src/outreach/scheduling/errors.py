"""Scheduling error taxonomy.

Every error carries a stable ``code`` that the API layer returns to clients
so the booking page and admin console can tell "re-pick a time" apart from
"retry the same request".
"""

from __future__ import annotations

import uuid
from typing import Any


class SchedulingError(Exception):
    """Base class for all scheduling core errors."""

    code: str = "scheduling_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ConflictError(SchedulingError):
    """A slot already exists for the (recruiter, start time) pair."""

    code = "slot_conflict"


class InvalidStateError(SchedulingError):
    """The entity is not in a state that permits the requested mutation."""

    code = "invalid_state"


class InvalidTransitionError(SchedulingError):
    """A meeting status transition is not in the transition table."""

    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, message: str | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Invalid status transition: {from_status} -> {to_status}",
            from_status=from_status,
            to_status=to_status,
        )


class SlotUnavailableError(SchedulingError):
    """The requested time is no longer free. Re-fetch availability and re-prompt."""

    code = "slot_unavailable"


class ReservationTimeoutError(SchedulingError, TimeoutError):
    """The reservation commit was not confirmed within the configured bound."""

    code = "reservation_timeout"


class ExternalServiceError(SchedulingError):
    """A collaborator (calendar, roster) call failed."""

    code = "external_service_error"


class NotFoundError(SchedulingError):
    """The referenced slot, meeting, recruiter, or student does not exist."""

    code = "not_found"


class PermissionDeniedError(SchedulingError):
    """The actor is not allowed to perform the operation."""

    code = "forbidden"


class InvalidRequestError(SchedulingError):
    """The request is malformed (naive datetime, out-of-range duration, ...)."""

    code = "invalid_request"


def parse_entity_id(value: object, kind: str) -> uuid.UUID:
    """Parse a slot or meeting id; an unparseable id names nothing, so it is not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise NotFoundError(f"{kind} not found: {value}") from exc
