"""Actor authorization rules for scheduling commands."""

from __future__ import annotations

from src.outreach.scheduling.errors import PermissionDeniedError
from src.outreach.scheduling.schemas import Actor, ActorRole


def ensure_recruiter_access(actor: Actor, recruiter_id: str) -> None:
    """Admins/system act on any recruiter; recruiters only on themselves."""
    if actor.is_privileged:
        return
    if actor.role == ActorRole.RECRUITER and actor.id == recruiter_id:
        return
    raise PermissionDeniedError(
        f"Actor {actor.id} ({actor.role.value}) cannot manage recruiter {recruiter_id}",
    )


def ensure_can_book_for(actor: Actor, recruiter_id: str, student_id: str) -> None:
    """Students book for themselves; recruiters book into their own calendar."""
    if actor.is_privileged:
        return
    if actor.role == ActorRole.STUDENT and actor.id == student_id:
        return
    if actor.role == ActorRole.RECRUITER and actor.id == recruiter_id:
        return
    raise PermissionDeniedError(
        f"Actor {actor.id} ({actor.role.value}) cannot book for student {student_id}",
    )


def ensure_admin(actor: Actor) -> None:
    if not actor.is_privileged:
        raise PermissionDeniedError(
            f"Actor {actor.id} ({actor.role.value}) is not an administrator",
        )


def ensure_meeting_access(actor: Actor, recruiter_id: str, student_id: str) -> None:
    """Participants and privileged actors may read a meeting."""
    if actor.is_privileged:
        return
    if actor.role == ActorRole.RECRUITER and actor.id == recruiter_id:
        return
    if actor.role == ActorRole.STUDENT and actor.id == student_id:
        return
    raise PermissionDeniedError(
        f"Actor {actor.id} ({actor.role.value}) cannot view this meeting",
    )
