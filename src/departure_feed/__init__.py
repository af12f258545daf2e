"""departure_feed - A live, resumable feed of scheduled departures.

Architecture:
- Poller samples the flights database for departures that became due
- Retained history keeps today's departures for catch-up
- Broadcast fans each new departure out to every live subscriber
- HTTP surface serves JSON snapshots and an SSE stream
"""

from .broadcast import FeedBroadcast, Subscription
from .config import FeedConfig
from .cursor import Cursor, CursorTracker
from .events import EventKind, FeedEvent, encode_sse
from .history import RetainedHistory
from .observability import configure as configure_observability
from .poller import Poller, PollResult
from .records import Identifier, Record
from .server import create_app
from .service import FeedService, InvalidToken
from .session import SubscriberSession
from .source import FLIGHT_COLUMNS, RecordSource, SqliteFlightSource

__all__ = [
    # Service and HTTP
    "FeedService",
    "InvalidToken",
    "create_app",
    "FeedConfig",
    # Core
    "Poller",
    "PollResult",
    "Cursor",
    "CursorTracker",
    "RetainedHistory",
    "FeedBroadcast",
    "Subscription",
    "SubscriberSession",
    # Records and events
    "Record",
    "Identifier",
    "FeedEvent",
    "EventKind",
    "encode_sse",
    # Sources
    "RecordSource",
    "SqliteFlightSource",
    "FLIGHT_COLUMNS",
    # Observability
    "configure_observability",
]
__version__ = "0.1.0"
