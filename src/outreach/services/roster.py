"""Roster directory client for recruiter and student profiles.

Participants are owned by the identity service; the scheduling core stores
only their identifiers and reads display fields through RosterDirectory.
HttpRosterClient is the production adapter with retry logic (tenacity, 3
attempts, exponential backoff 1-10s) on transport failures.

Endpoints consumed:
    GET {base}/recruiters/{id}
    GET {base}/students/{id}
    GET {base}/students?status=waitlist
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.outreach.scheduling.errors import ExternalServiceError
from src.outreach.scheduling.schemas import ParticipantProfile

logger = structlog.get_logger(__name__)

WAITLIST_STATUS = "waitlist"

_roster_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class RosterDirectory(Protocol):
    """Read-only participant lookup."""

    async def get_recruiter(self, recruiter_id: str) -> ParticipantProfile | None: ...

    async def get_student(self, student_id: str) -> ParticipantProfile | None: ...

    async def list_waitlisted_students(self) -> list[ParticipantProfile]: ...


def _parse_profile(data: dict[str, Any]) -> ParticipantProfile:
    """Map an identity-service record onto ParticipantProfile.

    Recruiters carry ``company`` and students ``university``; both land in
    ``organization``.
    """
    return ParticipantProfile(
        id=str(data["id"]),
        name=data.get("name") or "",
        email=data.get("email"),
        organization=data.get("organization") or data.get("company") or data.get("university"),
        status=data.get("status"),
    )


class HttpRosterClient:
    """Async client for the identity service roster endpoints.

    Args:
        base_url: Identity service base URL.
        token: Bearer token for service-to-service calls.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_roster_retry
    async def _get(self, path: str, params: dict[str, str] | None = None) -> Any | None:
        """GET a JSON resource. Returns None on 404."""
        async with self._client() as client:
            response = await client.get(path, params=params)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

    async def _fetch(self, path: str, params: dict[str, str] | None = None) -> Any | None:
        try:
            return await self._get(path, params)
        except httpx.HTTPError as exc:
            logger.warning("roster_request_failed", path=path, error=str(exc))
            raise ExternalServiceError(f"Roster lookup failed: {exc}", path=path) from exc

    async def get_recruiter(self, recruiter_id: str) -> ParticipantProfile | None:
        data = await self._fetch(f"/recruiters/{recruiter_id}")
        return _parse_profile(data) if data else None

    async def get_student(self, student_id: str) -> ParticipantProfile | None:
        data = await self._fetch(f"/students/{student_id}")
        return _parse_profile(data) if data else None

    async def list_waitlisted_students(self) -> list[ParticipantProfile]:
        """Students whose roster status is waitlist."""
        data = await self._fetch("/students", params={"status": WAITLIST_STATUS})
        items = data.get("items", []) if isinstance(data, dict) else (data or [])
        return [_parse_profile(item) for item in items]
