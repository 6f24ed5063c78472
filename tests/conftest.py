"""Test fixtures for the scheduling core.

Provides:
- Temporary-file SQLite database (aiosqlite) with the scheduling tables, so
  unique constraints and compare-and-swap updates are enforced for real
- Settings override and a mutable clock
- Fake calendar and roster collaborators
- Scheduling services wired exactly as the app lifespan wires them
- Async HTTP client against the FastAPI app with app.state overrides
- Bearer token helper
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from src.outreach.config import Settings
from src.outreach.core.database import build_engine, init_db, make_session_factory
from src.outreach.core.security import create_access_token
from src.outreach.main import attach_services, create_app
from src.outreach.scheduling.errors import ExternalServiceError
from src.outreach.scheduling.schemas import (
    Actor,
    ActorRole,
    CalendarInvite,
    ParticipantProfile,
    TimeInterval,
)

T0 = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)

ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN)
RECRUITER = Actor(id="rec-1", role=ActorRole.RECRUITER)
OTHER_RECRUITER = Actor(id="rec-2", role=ActorRole.RECRUITER)


def student(student_id: str = "stu-1") -> Actor:
    return Actor(id=student_id, role=ActorRole.STUDENT)


# ── Test Doubles ─────────────────────────────────────────────────────────────


class MutableClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeCalendar:
    """In-memory CalendarCollaborator."""

    def __init__(self) -> None:
        self.busy: dict[str, list[TimeInterval]] = {}
        self.fail_invites = False
        self.fail_busy = False
        self.invites: list[dict] = []
        self.cancelled: list[str] = []
        # Set to an Event to hold create_invite open until the test releases it
        self.invite_gate: asyncio.Event | None = None
        self.invite_started = asyncio.Event()

    async def create_invite(
        self,
        meeting_id: str,
        recruiter_id: str,
        student_id: str,
        start_time: datetime,
        duration: int,
        title: str,
        agenda: str | None = None,
    ) -> CalendarInvite:
        self.invite_started.set()
        if self.invite_gate is not None:
            await self.invite_gate.wait()
        if self.fail_invites:
            raise ExternalServiceError("Calendar unavailable")
        self.invites.append(
            {
                "meeting_id": meeting_id,
                "recruiter_id": recruiter_id,
                "student_id": student_id,
                "start_time": start_time,
                "duration": duration,
                "title": title,
            }
        )
        return CalendarInvite(
            link=f"https://meet.example.com/{meeting_id[:8]}",
            event_id=f"evt-{meeting_id}",
        )

    async def get_busy_intervals(
        self, recruiter_id: str, start: datetime, end: datetime
    ) -> list[TimeInterval]:
        if self.fail_busy:
            raise ExternalServiceError("Free/busy unavailable")
        return [i for i in self.busy.get(recruiter_id, []) if i.overlaps(start, end)]

    async def cancel_invite(self, recruiter_id: str, event_id: str) -> None:
        self.cancelled.append(event_id)


class FakeRoster:
    """In-memory RosterDirectory."""

    def __init__(self) -> None:
        self.recruiters = {
            "rec-1": ParticipantProfile(
                id="rec-1", name="Rita Recruiter", email="rita@acme.example", organization="Acme"
            ),
            "rec-2": ParticipantProfile(
                id="rec-2", name="Ravi Recruiter", email="ravi@acme.example", organization="Acme"
            ),
        }
        self.students = {
            f"stu-{n}": ParticipantProfile(
                id=f"stu-{n}",
                name=f"Student {n}",
                email=f"stu{n}@uni.example",
                organization="State University",
                status="waitlist",
            )
            for n in range(1, 6)
        }

    async def get_recruiter(self, recruiter_id: str) -> ParticipantProfile | None:
        return self.recruiters.get(recruiter_id)

    async def get_student(self, student_id: str) -> ParticipantProfile | None:
        return self.students.get(student_id)

    async def list_waitlisted_students(self) -> list[ParticipantProfile]:
        return [s for s in self.students.values() if s.status == "waitlist"]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        RESERVATION_TIMEOUT_SECONDS=5.0,
        INVITE_MAX_ATTEMPTS=3,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(T0)


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def roster() -> FakeRoster:
    return FakeRoster()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database file per test."""
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def services(session_factory, settings, calendar, roster, clock):
    """Scheduling services wired the way the lifespan wires them."""
    state = SimpleNamespace()
    attach_services(
        state, session_factory, settings, calendar=calendar, roster=roster, clock=clock
    )
    yield state
    await state.invite_dispatcher.drain()


@pytest.fixture
def api_app(engine, session_factory, settings, calendar, roster, clock) -> FastAPI:
    """FastAPI app with services on app.state. Lifespan is bypassed."""
    app = create_app()
    app.state.engine = engine
    app.state.redis = None
    attach_services(
        app.state, session_factory, settings, calendar=calendar, roster=roster, clock=clock
    )
    return app


@pytest_asyncio.fixture
async def client(api_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await api_app.state.invite_dispatcher.drain()


@pytest.fixture
def auth_headers() -> Callable[[Actor], dict[str, str]]:
    def _headers(actor: Actor) -> dict[str, str]:
        token = create_access_token({"sub": actor.id, "role": actor.role.value})
        return {"Authorization": f"Bearer {token}"}

    return _headers
