"""Calendar invite dispatch, cancellation clean-up, and the backfill job.

Invites are created after the reservation commits and never block it:
InviteDispatcher.schedule() starts a fire-and-forget asyncio task and holds
a strong reference to it until completion. A failed attempt is recorded on
the meeting (invite_attempts, invite_last_error) and picked up later by
backfill_pending_invites(), which InviteBackfillScheduler runs on an
APScheduler interval.

Exports:
    InviteDispatcher: Creates and cancels calendar invites for meetings.
    InviteBackfillScheduler: Interval job retrying missing invites.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.outreach.config import Settings, get_settings
from src.outreach.core.monitoring import invite_attempts_total
from src.outreach.scheduling.errors import ExternalServiceError
from src.outreach.scheduling.events import SchedulingEventPublisher, SchedulingEventType
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.schemas import CalendarInvite, Meeting
from src.outreach.services.calendar import CalendarCollaborator

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InviteDispatcher:
    """Creates calendar invites for meetings outside the booking transaction.

    Args:
        meeting_store: Store used to attach links and record failures.
        calendar: Calendar collaborator. When None, invites are skipped and
            meetings stay link-less until one is configured.
        publisher: Optional change-feed publisher.
        settings: Settings override (defaults to get_settings()).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        meeting_store: MeetingStore,
        calendar: CalendarCollaborator | None = None,
        publisher: SchedulingEventPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._meetings = meeting_store
        self._calendar = calendar
        self._publisher = publisher
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def _track(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule(self, meeting: Meeting) -> asyncio.Task | None:
        """Start invite creation in the background. Returns the task, if any."""
        if self._calendar is None:
            logger.debug("invite_skipped_no_calendar", meeting_id=str(meeting.id))
            return None
        return self._track(self.deliver(meeting), name=f"invite-{meeting.id}")

    def schedule_cancel(self, meeting: Meeting) -> asyncio.Task | None:
        """Start best-effort calendar event deletion in the background."""
        if self._calendar is None or not meeting.calendar_event_id:
            return None
        return self._track(self.cancel_invite(meeting), name=f"invite-cancel-{meeting.id}")

    async def drain(self) -> None:
        """Wait for every outstanding invite task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def deliver(self, meeting: Meeting) -> Meeting | None:
        """Create the invite and attach its link. Never raises.

        Returns:
            The updated meeting on success, None if the attempt failed or no
            calendar is configured.
        """
        if self._calendar is None:
            return None

        try:
            invite = await self._calendar.create_invite(
                meeting_id=str(meeting.id),
                recruiter_id=meeting.recruiter_id,
                student_id=meeting.student_id,
                start_time=meeting.scheduled_time,
                duration=meeting.duration,
                title=meeting.title,
                agenda=meeting.agenda,
            )
        except ExternalServiceError as exc:
            invite_attempts_total.labels(outcome="failed").inc()
            logger.warning(
                "invite_creation_failed",
                meeting_id=str(meeting.id),
                error=exc.message,
            )
            await self._meetings.record_invite_failure(meeting.id, exc.message)
            return None
        except Exception as exc:
            invite_attempts_total.labels(outcome="error").inc()
            logger.error(
                "invite_creation_error",
                meeting_id=str(meeting.id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._meetings.record_invite_failure(meeting.id, str(exc))
            return None

        updated = await self._meetings.attach_invite(meeting.id, invite)
        if updated is None:
            return await self._reconcile_unattached(meeting, invite)

        invite_attempts_total.labels(outcome="success").inc()
        logger.info(
            "invite_attached",
            meeting_id=str(meeting.id),
            event_id=invite.event_id,
        )
        if self._publisher is not None:
            await self._publisher.publish_change(
                SchedulingEventType.MEETING_INVITE_ATTACHED,
                recruiter_id=updated.recruiter_id,
                entity_id=str(updated.id),
                data={"external_meeting_link": updated.external_meeting_link},
            )
        return updated

    async def _reconcile_unattached(
        self, meeting: Meeting, invite: CalendarInvite
    ) -> Meeting | None:
        """Handle an invite the meeting row refused.

        If the row already carries this very event, the delivery was a
        duplicate and nothing is lost. Otherwise the meeting was cancelled
        or ended while the event was being created, and the orphan event is
        deleted so attendees are not left with a live invitation.
        """
        current = await self._meetings.get_meeting(meeting.id)
        if current is not None and current.calendar_event_id == invite.event_id:
            return current

        invite_attempts_total.labels(outcome="discarded").inc()
        logger.warning(
            "invite_discarded",
            meeting_id=str(meeting.id),
            event_id=invite.event_id,
            status=current.status.value if current is not None else None,
        )
        try:
            await self._calendar.cancel_invite(meeting.recruiter_id, invite.event_id)
        except ExternalServiceError as exc:
            logger.error(
                "invite_discard_failed",
                meeting_id=str(meeting.id),
                event_id=invite.event_id,
                error=exc.message,
            )
        return None

    async def cancel_invite(self, meeting: Meeting) -> bool:
        """Delete the meeting's calendar event. Returns True if deleted."""
        if self._calendar is None or not meeting.calendar_event_id:
            return False
        try:
            await self._calendar.cancel_invite(meeting.recruiter_id, meeting.calendar_event_id)
        except ExternalServiceError as exc:
            logger.warning(
                "invite_cancel_failed",
                meeting_id=str(meeting.id),
                event_id=meeting.calendar_event_id,
                error=exc.message,
            )
            return False
        logger.info("invite_cancelled", meeting_id=str(meeting.id))
        return True

    async def backfill_pending_invites(self, limit: int | None = None) -> dict[str, int]:
        """Retry invite creation for active future meetings without a link.

        Meetings at or beyond INVITE_MAX_ATTEMPTS are left alone.

        Returns:
            Counts of {"processed", "attached", "failed"}.
        """
        results = {"processed": 0, "attached": 0, "failed": 0}
        if self._calendar is None:
            logger.warning("invite_backfill_skipped", reason="calendar not configured")
            return results

        pending = await self._meetings.list_pending_invites(
            now=self._clock(),
            max_attempts=self._settings.INVITE_MAX_ATTEMPTS,
            limit=limit or self._settings.INVITE_BACKFILL_BATCH_SIZE,
            grace=timedelta(minutes=self._settings.INVITE_BACKFILL_GRACE_MINUTES),
        )
        for meeting in pending:
            results["processed"] += 1
            if await self.deliver(meeting) is None:
                results["failed"] += 1
            else:
                results["attached"] += 1

        logger.info("invite_backfill_complete", **results)
        return results


class InviteBackfillScheduler:
    """APScheduler wrapper running the invite backfill on a fixed interval.

    Args:
        dispatcher: InviteDispatcher whose backfill is run.
        interval_minutes: Minutes between runs.
    """

    def __init__(self, dispatcher: InviteDispatcher, interval_minutes: int = 5) -> None:
        self._dispatcher = dispatcher
        self._interval_minutes = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Must be called from a running event loop."""
        if self._started:
            return False
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id="invite_backfill",
            name="Retry missing calendar invites",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info(
            "invite_backfill_scheduler_started",
            interval_minutes=self._interval_minutes,
        )
        return True

    async def _run(self) -> None:
        try:
            await self._dispatcher.backfill_pending_invites()
        except Exception as exc:
            logger.error("invite_backfill_failed", error=str(exc))

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("invite_backfill_scheduler_stopped")


__all__ = ["InviteBackfillScheduler", "InviteDispatcher"]
