"""events.py — What flows through the broadcast, and how it looks on the wire.

Three kinds of event:
  - scheduled_departure: one newly due record, pushed live
  - daily_schedule: a catch-up batch, sent once when a client resumes
  - keepalive: content-free, keeps idle connections from being reaped

On the wire these are Server-Sent Events. Data events carry an id (the
record identifier) so EventSource clients send it back as Last-Event-ID
when they reconnect. Keepalives are SSE comments.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from .records import Identifier, Record


class EventKind(str, Enum):
    SCHEDULED_DEPARTURE = "scheduled_departure"
    DAILY_SCHEDULE = "daily_schedule"
    KEEPALIVE = "keepalive"


# SSE comment frame; clients ignore it, proxies see traffic
KEEPALIVE_FRAME = b":\n\n"


@dataclass(frozen=True)
class FeedEvent:
    """One item on a subscriber's queue."""

    kind: EventKind
    data: Any = None
    id: Identifier | None = None

    @property
    def is_keepalive(self) -> bool:
        return self.kind is EventKind.KEEPALIVE

    @classmethod
    def departure(cls, record: Record) -> FeedEvent:
        return cls(
            kind=EventKind.SCHEDULED_DEPARTURE,
            data=record.to_json(),
            id=record.identifier,
        )

    @classmethod
    def daily_schedule(
        cls, records: Iterable[Record], last_identifier: Identifier | None
    ) -> FeedEvent:
        return cls(
            kind=EventKind.DAILY_SCHEDULE,
            data=[record.to_json() for record in records],
            id=last_identifier,
        )

    @classmethod
    def keepalive(cls) -> FeedEvent:
        return cls(kind=EventKind.KEEPALIVE)


def encode_sse(event: FeedEvent) -> bytes:
    """Serialize an event as an SSE frame."""
    if event.is_keepalive:
        return KEEPALIVE_FRAME

    lines = []
    if event.id is not None:
        lines.append(f"id: {event.id}")
    lines.append(f"event: {event.kind.value}")
    # default=str: payload columns may hold dates or Decimals
    lines.append(f"data: {json.dumps(event.data, default=str)}")
    return ("\n".join(lines) + "\n\n").encode()
