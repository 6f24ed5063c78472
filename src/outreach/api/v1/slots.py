"""Recruiter calendar endpoints: availability slots and working hours."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.outreach.api.deps import get_actor, get_slot_store
from src.outreach.scheduling.policy import ensure_admin, ensure_recruiter_access
from src.outreach.scheduling.schemas import (
    Actor,
    ActorRole,
    AvailabilitySlot,
    RecruiterSchedule,
    SlotCreate,
    SlotStatus,
)
from src.outreach.scheduling.slot_store import SlotStore

router = APIRouter(tags=["slots"])


class ScheduleUpdate(BaseModel):
    """Request body for PUT /recruiters/{id}/schedule."""

    work_start_hour: int = Field(ge=0, le=23)
    work_end_hour: int = Field(ge=1, le=24)
    timezone: str = "UTC"
    direct_booking_enabled: bool = True


@router.post("/slots", response_model=AvailabilitySlot, status_code=status.HTTP_201_CREATED)
async def declare_slot(
    body: SlotCreate,
    actor: Actor = Depends(get_actor),
    slots: SlotStore = Depends(get_slot_store),
) -> AvailabilitySlot:
    """Declare a pending availability slot. 409 slot_conflict on a duplicate start."""
    return await slots.declare_slot(
        actor,
        recruiter_id=body.recruiter_id,
        start_time=body.start_time,
        duration=body.duration,
        timezone_name=body.timezone,
    )


@router.get("/slots", response_model=list[AvailabilitySlot])
async def list_slots(
    recruiter_id: str | None = Query(default=None),
    start: datetime | None = Query(default=None, description="Inclusive lower bound (ISO)"),
    end: datetime | None = Query(default=None, description="Exclusive upper bound (ISO)"),
    slot_status: list[SlotStatus] | None = Query(default=None, alias="status"),
    actor: Actor = Depends(get_actor),
    slots: SlotStore = Depends(get_slot_store),
) -> list[AvailabilitySlot]:
    """List slots. Recruiters default to their own calendar."""
    if recruiter_id is None and actor.role == ActorRole.RECRUITER:
        recruiter_id = actor.id
    if recruiter_id is None:
        ensure_admin(actor)
    else:
        ensure_recruiter_access(actor, recruiter_id)
    return await slots.list_slots(
        recruiter_id=recruiter_id,
        start=start,
        end=end,
        statuses=slot_status,
    )


@router.post("/slots/{slot_id}/cancel", response_model=AvailabilitySlot)
async def cancel_slot(
    slot_id: str,
    actor: Actor = Depends(get_actor),
    slots: SlotStore = Depends(get_slot_store),
) -> AvailabilitySlot:
    """Cancel a pending slot. 409 invalid_state if already booked or cancelled."""
    return await slots.cancel_slot(actor, slot_id)


@router.get("/recruiters/{recruiter_id}/schedule", response_model=RecruiterSchedule)
async def get_schedule(
    recruiter_id: str,
    actor: Actor = Depends(get_actor),
    slots: SlotStore = Depends(get_slot_store),
) -> RecruiterSchedule:
    ensure_recruiter_access(actor, recruiter_id)
    return await slots.get_schedule(recruiter_id)


@router.put("/recruiters/{recruiter_id}/schedule", response_model=RecruiterSchedule)
async def set_schedule(
    recruiter_id: str,
    body: ScheduleUpdate,
    actor: Actor = Depends(get_actor),
    slots: SlotStore = Depends(get_slot_store),
) -> RecruiterSchedule:
    """Create or replace a recruiter's working hours for direct booking."""
    schedule = RecruiterSchedule(recruiter_id=recruiter_id, **body.model_dump())
    return await slots.set_schedule(actor, schedule)
