"""Public booking endpoints used by the shared booking link.

The booking page may be used without an account: when no bearer token is
sent, the request acts as the student named in the body. An authenticated
caller acts as itself.
"""

from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.outreach.api.deps import get_booking_engine, get_optional_actor, get_roster
from src.outreach.scheduling.booking import BookingEngine
from src.outreach.scheduling.errors import NotFoundError
from src.outreach.scheduling.schemas import Actor, ActorRole, AvailableInterval, Meeting
from src.outreach.services.roster import RosterDirectory

router = APIRouter(prefix="/public", tags=["public"])


class RecruiterProfile(BaseModel):
    """Recruiter card shown on the booking page. Contact details stay private."""

    id: str
    name: str
    organization: str | None = None


class BookingRequest(BaseModel):
    """Request body for POST /public/book."""

    recruiter_id: str
    student_id: str
    start_time: datetime
    duration: int | None = Field(
        default=None, description="Minutes; defaults to the slot length or grid size"
    )
    title: str | None = None
    agenda: str | None = Field(default=None, max_length=5000)


@router.get("/recruiters/{recruiter_id}", response_model=RecruiterProfile)
async def get_recruiter_profile(
    recruiter_id: str,
    roster: RosterDirectory = Depends(get_roster),
) -> RecruiterProfile:
    recruiter = await roster.get_recruiter(recruiter_id)
    if recruiter is None:
        raise NotFoundError(f"Recruiter not found: {recruiter_id}", recruiter_id=recruiter_id)
    return RecruiterProfile(
        id=recruiter.id, name=recruiter.name, organization=recruiter.organization
    )


@router.get("/availability", response_model=list[AvailableInterval])
async def get_availability(
    recruiter_id: str = Query(...),
    day: date = Query(..., alias="date", description="Local date in the recruiter's timezone"),
    booking: BookingEngine = Depends(get_booking_engine),
) -> list[AvailableInterval]:
    """Bookable intervals for one recruiter-local day."""
    return await booking.get_available_slots(recruiter_id, day)


@router.post("/book", response_model=Meeting, status_code=status.HTTP_201_CREATED)
async def book(
    body: BookingRequest,
    actor: Actor | None = Depends(get_optional_actor),
    booking: BookingEngine = Depends(get_booking_engine),
) -> Meeting:
    """Reserve the requested time.

    404 not_found means the recruiter or student is not on the roster.
    409 slot_unavailable means the time was taken: re-fetch availability.
    503 reservation_timeout means the outcome is unknown: check the meeting
    list before retrying.
    """
    if actor is None:
        actor = Actor(id=body.student_id, role=ActorRole.STUDENT)
    return await booking.reserve(
        actor,
        recruiter_id=body.recruiter_id,
        student_id=body.student_id,
        start_time=body.start_time,
        duration=body.duration,
        title=body.title,
        agenda=body.agenda,
    )
