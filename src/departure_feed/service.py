"""service.py — The feed, wired together.

FeedService is built once at startup and handed to whoever needs it
(the HTTP layer stores it on the aiohttp application). It owns:
  - cursor, history and broadcast: the shared state
  - the poller: the only thing that writes that state
  - two background tasks: polling and keepalives
  - the open subscriber sessions, so shutdown can wait for them

Lifecycle:
    service = FeedService.from_config(config)
    await service.start()     # initial load, then background tasks
    ...
    await service.stop()      # end streams, stop polling, close the source
"""

from __future__ import annotations

import asyncio
from typing import Any

import logfire
import pendulum

from .broadcast import FeedBroadcast
from .config import FeedConfig
from .cursor import CursorTracker
from .history import RetainedHistory
from .poller import Clock, Poller
from .records import Identifier, Record
from .session import SubscriberSession
from .source import RecordSource, SqliteFlightSource


class InvalidToken(ValueError):
    """A catch-up token that can't be parsed as an identifier."""


class FeedService:
    """Explicit owner of all feed state and background work."""

    DEFAULT_KEEPALIVE_INTERVAL = 30.0
    SHUTDOWN_GRACE_SECONDS = 5.0

    def __init__(
        self,
        source: RecordSource,
        clock: Clock | None = None,
        poll_interval: float = Poller.DEFAULT_INTERVAL,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        buffer_size: int = FeedBroadcast.DEFAULT_BUFFER_SIZE,
    ):
        self.source = source
        self.tracker = CursorTracker()
        self.history = RetainedHistory()
        self.broadcast = FeedBroadcast(buffer_size=buffer_size)
        self.poller = Poller(
            source=source,
            tracker=self.tracker,
            history=self.history,
            broadcast=self.broadcast,
            clock=clock or pendulum.now,
            interval=poll_interval,
        )
        self._keepalive_interval = keepalive_interval

        self._sessions: set[SubscriberSession] = set()
        self._tasks: list[asyncio.Task] = []
        self._started = False
        self._stopped = False

    @classmethod
    def from_config(cls, config: FeedConfig) -> FeedService:
        timezone = config.timezone
        return cls(
            source=SqliteFlightSource(config.db_path, log_queries=config.debug),
            clock=lambda: pendulum.now(timezone),
            poll_interval=config.poll_interval,
            keepalive_interval=config.keepalive_interval,
            buffer_size=config.buffer_size,
        )

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Load today's due records, then start polling and keepalives."""
        if self._started:
            raise RuntimeError("Feed service already started")
        self._started = True

        await self.poller.poll(force=True)
        self._tasks = [
            asyncio.create_task(self.poller.run(), name="feed-poller"),
            asyncio.create_task(self._keepalive_loop(), name="feed-keepalive"),
        ]
        logfire.info(
            "Feed started: poll every {poll}s, keepalive every {keepalive}s",
            poll=self.poller.interval,
            keepalive=self._keepalive_interval,
        )

    async def stop(self) -> None:
        """Shut down in order: polling, streams, source. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        with logfire.span("feed shutdown", sessions=len(self._sessions)):
            for task in self._tasks:
                task.cancel()
            for task in self._tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._tasks = []

            # Every stream gets end-of-stream and a chance to finish its response
            self.broadcast.close()
            await self._wait_for_sessions()

            await self.source.close()

    async def _wait_for_sessions(self) -> None:
        sessions = list(self._sessions)
        if not sessions:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(s.wait_closed() for s in sessions)),
                timeout=self.SHUTDOWN_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            logfire.warning(
                "{count} sessions did not finish in time, cancelling",
                count=len(self._sessions),
            )
            for session in list(self._sessions):
                session.close()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            self.broadcast.publish_keepalive()

    # -- Catch-up and sessions ------------------------------------------------

    def parse_token(self, token: str | None) -> Identifier | None:
        """Client token → identifier. None stays None.

        Raises InvalidToken for tokens the source can't parse.
        """
        if token is None:
            return None
        try:
            return self.source.parse_identifier(token)
        except ValueError:
            raise InvalidToken(f"Invalid last known id: {token!r}") from None

    def catch_up(self, token: str | None = None) -> tuple[Record, ...]:
        """Point query: retained records from `token` on, or all of them."""
        return self.history.query(self.parse_token(token))

    def open_session(self, token: str | None = None) -> SubscriberSession:
        """Open a live session, with catch-up when a token is given.

        Raises InvalidToken before anything is attached.
        """
        since = self.parse_token(token)
        session = SubscriberSession(
            broadcast=self.broadcast,
            history=self.history,
            since=since,
            on_close=self._sessions.discard,
        )
        session.open()
        self._sessions.add(session)
        return session

    # -- Observability --------------------------------------------------------

    def metrics(self) -> dict[str, Any]:
        current_day = self.tracker.current_day
        return {
            "subscribers": self.broadcast.subscriber_count,
            "history_size": len(self.history),
            "last_identifier": self.tracker.last_identifier,
            "current_day": current_day.isoformat() if current_day else None,
            "polls": self.poller.polls,
            "poll_failures": self.poller.failures,
        }
