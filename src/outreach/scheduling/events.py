"""Scheduling change feed on Redis Streams.

Publishes slot and meeting mutations so presentation adapters can refresh on
push instead of polling. The feed is advisory: every view still reads the
authoritative state from the stores, so publish failures are logged and
swallowed rather than failing the command that produced them.

Stream key: scheduling:events
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

STREAM_KEY = "scheduling:events"


class SchedulingEventType(str, Enum):
    """Kinds of mutations published on the change feed."""

    SLOT_DECLARED = "slot.declared"
    SLOT_CANCELLED = "slot.cancelled"
    MEETING_CREATED = "meeting.created"
    MEETING_STATUS_CHANGED = "meeting.status_changed"
    MEETING_INVITE_ATTACHED = "meeting.invite_attached"


class SchedulingEvent(BaseModel):
    """A single change-feed entry."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: SchedulingEventType
    recruiter_id: str
    entity_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat str->str dict for XADD."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "recruiter_id": self.recruiter_id,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
            "data": json.dumps(self.data),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> SchedulingEvent:
        """Deserialize a stream entry produced by to_stream_dict()."""
        return cls(
            event_id=raw["event_id"],
            event_type=SchedulingEventType(raw["event_type"]),
            recruiter_id=raw["recruiter_id"],
            entity_id=raw["entity_id"],
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            data=json.loads(raw.get("data") or "{}"),
        )


class SchedulingEventPublisher:
    """Append scheduling events to a Redis stream.

    Args:
        redis: Async Redis client.
        stream_key: Stream to append to.
        maxlen: Approximate stream length cap.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        stream_key: str = STREAM_KEY,
        maxlen: int = 10_000,
    ) -> None:
        self._redis = redis
        self._stream_key = stream_key
        self._maxlen = maxlen

    async def publish(self, event: SchedulingEvent) -> str | None:
        """Publish an event. Returns the stream message ID, or None on failure."""
        try:
            message_id = await self._redis.xadd(
                self._stream_key,
                event.to_stream_dict(),
                maxlen=self._maxlen,
                approximate=True,
            )
        except Exception as exc:
            logger.warning(
                "scheduling_event_publish_failed",
                event_type=event.event_type.value,
                entity_id=event.entity_id,
                error=str(exc),
            )
            return None

        logger.debug(
            "scheduling_event_published",
            event_type=event.event_type.value,
            entity_id=event.entity_id,
            message_id=message_id,
        )
        return message_id

    async def publish_change(
        self,
        event_type: SchedulingEventType,
        *,
        recruiter_id: str,
        entity_id: str,
        data: dict[str, Any] | None = None,
    ) -> str | None:
        return await self.publish(
            SchedulingEvent(
                event_type=event_type,
                recruiter_id=recruiter_id,
                entity_id=entity_id,
                data=data or {},
            )
        )

    async def read_since(
        self, last_id: str = "0-0", count: int = 100
    ) -> list[tuple[str, SchedulingEvent]]:
        """Read events after last_id (non-blocking), oldest first."""
        min_id = "-" if last_id == "0-0" else f"({last_id}"
        entries = await self._redis.xrange(self._stream_key, min=min_id, count=count)
        return [
            (message_id, SchedulingEvent.from_stream_dict(fields))
            for message_id, fields in entries
        ]
