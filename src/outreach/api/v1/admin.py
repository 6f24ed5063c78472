"""Admin assignment console endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from src.outreach.api.deps import get_actor, get_assignment
from src.outreach.scheduling.assignment import AssignmentWorkflow
from src.outreach.scheduling.policy import ensure_admin
from src.outreach.scheduling.schemas import (
    Actor,
    AvailabilitySlot,
    Meeting,
    ParticipantProfile,
)

router = APIRouter(prefix="/admin", tags=["admin"])


class ConfirmMeetingRequest(BaseModel):
    """Request body for POST /admin/confirm-meeting."""

    slot_id: str
    student_id: str
    agenda: str | None = Field(default=None, max_length=5000)


@router.get("/pending-slots", response_model=list[AvailabilitySlot])
async def list_pending_slots(
    actor: Actor = Depends(get_actor),
    assignment: AssignmentWorkflow = Depends(get_assignment),
) -> list[AvailabilitySlot]:
    ensure_admin(actor)
    return await assignment.list_pending_slots()


@router.get("/waitlisted-students", response_model=list[ParticipantProfile])
async def list_waitlisted_students(
    actor: Actor = Depends(get_actor),
    assignment: AssignmentWorkflow = Depends(get_assignment),
) -> list[ParticipantProfile]:
    """Waitlisted students who do not hold an active meeting."""
    ensure_admin(actor)
    return await assignment.list_unassigned_students()


@router.post("/confirm-meeting", response_model=Meeting, status_code=status.HTTP_201_CREATED)
async def confirm_meeting(
    body: ConfirmMeetingRequest,
    actor: Actor = Depends(get_actor),
    assignment: AssignmentWorkflow = Depends(get_assignment),
) -> Meeting:
    """Pair a student with a slot. 409 slot_unavailable if another admin got there first."""
    return await assignment.confirm_assignment(
        actor,
        slot_id=body.slot_id,
        student_id=body.student_id,
        agenda=body.agenda,
    )
