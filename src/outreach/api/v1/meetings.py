"""Interview list endpoints: meeting lists, details, history, status, stats.

Recruiters see their own meetings and students theirs; admins see all.
Status changes go through MeetingLifecycleController so the transition
table and timing rules apply uniformly to every caller.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from src.outreach.api.deps import (
    get_actor,
    get_clock,
    get_lifecycle,
    get_meeting_store,
    get_slot_store,
)
from src.outreach.scheduling.lifecycle import MeetingLifecycleController
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.policy import ensure_meeting_access, ensure_recruiter_access
from src.outreach.scheduling.schemas import (
    Actor,
    ActorRole,
    Meeting,
    MeetingFilter,
    MeetingPage,
    MeetingStats,
    MeetingStatus,
    MeetingStatusChange,
)
from src.outreach.scheduling.slot_store import SlotStore

router = APIRouter(prefix="/meetings", tags=["meetings"])


class MeetingStatusUpdate(BaseModel):
    """Request body for PATCH /meetings/{id}."""

    status: MeetingStatus


@router.get("", response_model=MeetingPage)
async def list_meetings(
    meeting_filter: MeetingFilter = Query(default=MeetingFilter.UPCOMING, alias="filter"),
    recruiter_id: str | None = Query(default=None),
    student_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    meetings: MeetingStore = Depends(get_meeting_store),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> MeetingPage:
    """Paginated meetings. Non-admin callers are scoped to themselves."""
    if actor.role == ActorRole.RECRUITER:
        recruiter_id = actor.id
    elif actor.role == ActorRole.STUDENT:
        student_id = actor.id
    return await meetings.list_meetings(
        meeting_filter,
        now=clock(),
        recruiter_id=recruiter_id,
        student_id=student_id,
        page=page,
        limit=limit,
    )


@router.get("/stats/{recruiter_id}", response_model=MeetingStats)
async def get_stats(
    recruiter_id: str,
    actor: Actor = Depends(get_actor),
    meetings: MeetingStore = Depends(get_meeting_store),
    slots: SlotStore = Depends(get_slot_store),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> MeetingStats:
    """Counts for the recruiter dashboard; "today" uses the recruiter's timezone."""
    ensure_recruiter_access(actor, recruiter_id)
    schedule = await slots.get_schedule(recruiter_id)
    return await meetings.get_stats(recruiter_id, now=clock(), tz_name=schedule.timezone)


@router.get("/{meeting_id}", response_model=Meeting)
async def get_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: MeetingLifecycleController = Depends(get_lifecycle),
) -> Meeting:
    meeting = await lifecycle.get_meeting(meeting_id)
    ensure_meeting_access(actor, meeting.recruiter_id, meeting.student_id)
    return meeting


@router.get("/{meeting_id}/history", response_model=list[MeetingStatusChange])
async def get_meeting_history(
    meeting_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: MeetingLifecycleController = Depends(get_lifecycle),
) -> list[MeetingStatusChange]:
    meeting = await lifecycle.get_meeting(meeting_id)
    ensure_meeting_access(actor, meeting.recruiter_id, meeting.student_id)
    return await lifecycle.get_history(meeting_id)


@router.patch("/{meeting_id}", response_model=Meeting)
async def update_meeting_status(
    meeting_id: str,
    body: MeetingStatusUpdate,
    actor: Actor = Depends(get_actor),
    lifecycle: MeetingLifecycleController = Depends(get_lifecycle),
) -> Meeting:
    """Apply a status transition. 409 invalid_transition / invalid_state on rejection."""
    return await lifecycle.apply_status(actor, meeting_id, body.status)
