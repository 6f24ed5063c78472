"""FastAPI dependency injection for the request actor and scheduling services.

Services are built once in the application lifespan and stored on
app.state; these dependencies hand them to endpoints and answer 503 when a
service was not initialized.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.outreach.core.security import actor_from_token
from src.outreach.scheduling.assignment import AssignmentWorkflow
from src.outreach.scheduling.booking import BookingEngine
from src.outreach.scheduling.lifecycle import MeetingLifecycleController
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.schemas import Actor
from src.outreach.scheduling.slot_store import SlotStore
from src.outreach.services.roster import RosterDirectory


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def get_actor(request: Request) -> Actor:
    """Extract the actor from the bearer JWT.

    Raises:
        HTTPException(401): If no valid token is provided.
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor_from_token(token)


async def get_optional_actor(request: Request) -> Actor | None:
    """Actor from the bearer JWT if present; None for anonymous public requests."""
    token = _bearer_token(request)
    if token is None:
        return None
    return actor_from_token(token)


def _get_state(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_slot_store(request: Request) -> SlotStore:
    return _get_state(request, "slot_store", "Slot store")


def get_meeting_store(request: Request) -> MeetingStore:
    return _get_state(request, "meeting_store", "Meeting store")


def get_booking_engine(request: Request) -> BookingEngine:
    return _get_state(request, "booking_engine", "Booking engine")


def get_lifecycle(request: Request) -> MeetingLifecycleController:
    return _get_state(request, "lifecycle", "Meeting lifecycle")


def get_assignment(request: Request) -> AssignmentWorkflow:
    return _get_state(
        request, "assignment", "Assignment workflow (roster service may not be configured)"
    )


def get_roster(request: Request) -> RosterDirectory:
    return _get_state(request, "roster", "Roster directory")


def get_clock(request: Request) -> Callable[[], datetime]:
    """Clock shared with the core services; tests override app.state.clock."""
    return getattr(request.app.state, "clock", None) or (lambda: datetime.now(timezone.utc))


# Alias for cleaner endpoint signatures
require_actor = Depends(get_actor)
