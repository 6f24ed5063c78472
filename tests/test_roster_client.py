"""Tests for HttpRosterClient against an httpx mock transport."""

from __future__ import annotations

import httpx
import pytest
from tenacity import wait_none

from src.outreach.scheduling.errors import ExternalServiceError
from src.outreach.services.roster import HttpRosterClient


def _client(handler) -> HttpRosterClient:
    return HttpRosterClient(
        "https://identity.example/api/",
        token="svc-token",
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    """Keep tenacity's exponential backoff out of test runtime."""
    monkeypatch.setattr(HttpRosterClient._get.retry, "wait", wait_none())


class TestLookups:
    @pytest.mark.asyncio
    async def test_get_recruiter(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={"id": "rec-1", "name": "Rita", "email": "rita@acme.example", "company": "Acme"},
            )

        recruiter = await _client(handler).get_recruiter("rec-1")

        assert seen == {"path": "/api/recruiters/rec-1", "auth": "Bearer svc-token"}
        assert recruiter.name == "Rita"
        assert recruiter.organization == "Acme"

    @pytest.mark.asyncio
    async def test_missing_student_returns_none(self):
        client = _client(lambda request: httpx.Response(404, json={"detail": "not found"}))

        assert await client.get_student("stu-404") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            [{"id": "stu-1", "name": "Sam", "university": "State", "status": "waitlist"}],
            {"items": [{"id": "stu-1", "name": "Sam", "university": "State", "status": "waitlist"}]},
        ],
    )
    async def test_waitlist_accepts_list_or_envelope(self, payload):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["status"] = request.url.params.get("status")
            return httpx.Response(200, json=payload)

        students = await _client(handler).list_waitlisted_students()

        assert seen["status"] == "waitlist"
        assert [(s.id, s.organization) for s in students] == [("stu-1", "State")]


class TestFailures:
    @pytest.mark.asyncio
    async def test_server_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        with pytest.raises(ExternalServiceError):
            await _client(handler).get_recruiter("rec-1")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connect_error_retried_then_wrapped(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalServiceError, match="connection refused"):
            await _client(handler).get_student("stu-1")
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_recovers_after_transient_timeout(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"id": "stu-1", "name": "Sam"})

        student = await _client(handler).get_student("stu-1")

        assert student.name == "Sam"
        assert len(calls) == 2
