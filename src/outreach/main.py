"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the scheduling error handler, lifespan wiring of the scheduling services,
and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.outreach.api.errors import register_exception_handlers
from src.outreach.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.outreach.api.v1 import health
from src.outreach.api.v1.router import router as v1_router
from src.outreach.config import Settings, get_settings
from src.outreach.core.database import (
    SessionFactory,
    close_db,
    get_engine,
    init_db,
    make_session_factory,
)
from src.outreach.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.outreach.core.redis import close_redis, get_redis_pool
from src.outreach.scheduling.assignment import AssignmentWorkflow
from src.outreach.scheduling.booking import BookingEngine
from src.outreach.scheduling.events import SchedulingEventPublisher
from src.outreach.scheduling.invites import InviteBackfillScheduler, InviteDispatcher
from src.outreach.scheduling.lifecycle import MeetingLifecycleController
from src.outreach.scheduling.meeting_store import MeetingStore
from src.outreach.scheduling.slot_store import SlotStore
from src.outreach.services.calendar import (
    CalendarAuthManager,
    CalendarCollaborator,
    GoogleCalendarService,
)
from src.outreach.services.roster import HttpRosterClient, RosterDirectory


def attach_services(
    state: Any,
    session_factory: SessionFactory,
    settings: Settings,
    calendar: CalendarCollaborator | None = None,
    roster: RosterDirectory | None = None,
    publisher: SchedulingEventPublisher | None = None,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Build the scheduling services and store them on app.state.

    The assignment console needs the roster; without one it stays
    uninitialized and its endpoints answer 503.
    """
    slot_store = SlotStore(session_factory, publisher=publisher, settings=settings)
    meeting_store = MeetingStore(session_factory)
    dispatcher = InviteDispatcher(
        meeting_store, calendar=calendar, publisher=publisher, settings=settings, clock=clock
    )
    booking = BookingEngine(
        session_factory,
        slot_store,
        meeting_store,
        calendar=calendar,
        roster=roster,
        invite_dispatcher=dispatcher,
        publisher=publisher,
        settings=settings,
        clock=clock,
    )

    state.clock = clock
    state.slot_store = slot_store
    state.meeting_store = meeting_store
    state.invite_dispatcher = dispatcher
    state.booking_engine = booking
    state.roster = roster
    state.lifecycle = MeetingLifecycleController(
        meeting_store, invite_dispatcher=dispatcher, publisher=publisher, clock=clock
    )
    state.assignment = (
        AssignmentWorkflow(slot_store, meeting_store, booking, roster, clock=clock)
        if roster is not None
        else None
    )


def build_collaborators(
    settings: Settings,
) -> tuple[CalendarCollaborator | None, RosterDirectory | None]:
    """Roster from ROSTER_SERVICE_URL; calendar when a service account is also set."""
    log = structlog.get_logger(__name__)
    roster: RosterDirectory | None = None
    calendar: CalendarCollaborator | None = None

    if settings.ROSTER_SERVICE_URL:
        roster = HttpRosterClient(
            settings.ROSTER_SERVICE_URL,
            token=settings.ROSTER_SERVICE_TOKEN,
            timeout=settings.ROSTER_TIMEOUT,
        )
    else:
        log.warning("roster_not_configured", hint="assignment console disabled")

    sa_path = settings.get_service_account_path()
    if sa_path and roster is not None:
        calendar = GoogleCalendarService(
            CalendarAuthManager(sa_path),
            roster,
            timezone_name=settings.MEETING_TIMEZONE,
        )
    else:
        log.warning("calendar_not_configured", hint="invites and free/busy disabled")

    return calendar, roster


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire services on startup, drain and close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    engine = get_engine()
    await init_db(engine)
    app.state.engine = engine

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    redis = get_redis_pool()
    app.state.redis = redis
    publisher = SchedulingEventPublisher(redis) if redis is not None else None

    calendar, roster = build_collaborators(settings)
    attach_services(
        app.state,
        make_session_factory(engine),
        settings,
        calendar=calendar,
        roster=roster,
        publisher=publisher,
    )

    backfill = InviteBackfillScheduler(
        app.state.invite_dispatcher,
        interval_minutes=settings.INVITE_BACKFILL_INTERVAL_MINUTES,
    )
    if calendar is not None:
        backfill.start()
    app.state.invite_backfill = backfill

    log.info(
        "scheduling_services_initialized",
        calendar=calendar is not None,
        roster=roster is not None,
        change_feed=publisher is not None,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    backfill.stop()
    await app.state.invite_dispatcher.drain()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Outreach Scheduling API",
        version="0.1.0",
        description="Interview scheduling core for recruiters, students, and admins",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
