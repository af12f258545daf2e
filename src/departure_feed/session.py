"""session.py — One connected listener.

A session composes:
  - A subscription on the broadcast (live events, keepalives)
  - Optionally, a catch-up batch from the retained history

Opening does both in one synchronous step: subscribe, then snapshot
history. The poller also updates history and publishes in one step, so
every record lands in exactly one of the two places: the snapshot (it
was there before we subscribed) or the queue (it was published after).
Nothing falls in between and nothing shows up twice.

Usage:
    session = SubscriberSession(broadcast, history, since=last_known_id)
    session.open()
    async for event in session.events():   # catch-up batch first, then live
        ...
    # elsewhere, on disconnect:
    session.cancel()
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from .broadcast import FeedBroadcast, Subscription
from .events import FeedEvent
from .history import RetainedHistory
from .records import Identifier


class SubscriberSession:
    """Catch-up, then live events, until end of stream or cancel()."""

    def __init__(
        self,
        broadcast: FeedBroadcast,
        history: RetainedHistory,
        since: Identifier | None = None,
        catch_up: bool | None = None,
        on_close: Callable[[SubscriberSession], None] | None = None,
    ):
        """
        Args:
            broadcast: Channel to subscribe to for live events.
            history: Retained history to catch up from.
            since: Client's last known identifier (inclusive bound).
            catch_up: Whether to send a catch-up batch. Defaults to
                      True when `since` is given, False otherwise.
            on_close: Called once when the session closes.
        """
        self._broadcast = broadcast
        self._history = history
        self._since = since
        self._wants_catch_up = since is not None if catch_up is None else catch_up
        self._on_close = on_close

        self._subscription: Subscription | None = None
        self._catch_up: FeedEvent | None = None
        self._cancelled = False
        self._closed = asyncio.Event()

    @property
    def since(self) -> Identifier | None:
        return self._since

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and not self._closed.is_set()

    def open(self) -> None:
        """Attach to the broadcast and take the catch-up snapshot."""
        if self._subscription is not None:
            raise RuntimeError("Session already open")

        self._subscription = self._broadcast.subscribe()
        if self._wants_catch_up:
            records = self._history.query(self._since)
            self._catch_up = FeedEvent.daily_schedule(
                records, self._history.last_identifier
            )

    async def next(self) -> FeedEvent | None:
        """The next event for this listener, or None when the stream is over."""
        if self._subscription is None:
            raise RuntimeError("Session not open")
        if self._cancelled:
            return None

        if self._catch_up is not None:
            event, self._catch_up = self._catch_up, None
            return event

        # Waits on the queue and the subscription's closed signal together;
        # cancel() discards the subscription, which wakes this up with None.
        event = await self._subscription.get()
        if self._cancelled:
            return None
        return event

    async def events(self) -> AsyncIterator[FeedEvent]:
        """Iterate events until end of stream. Closes the session on exit."""
        try:
            while True:
                event = await self.next()
                if event is None:
                    return
                yield event
        finally:
            self.close()

    def cancel(self) -> None:
        """Stop now. Nothing is delivered after this returns. Idempotent."""
        self._cancelled = True
        self._catch_up = None
        if self._subscription is not None:
            self._broadcast.unsubscribe(self._subscription)

    def close(self) -> None:
        """Release the subscription and mark the session finished."""
        if self._closed.is_set():
            return
        self.cancel()
        self._closed.set()
        if self._on_close is not None:
            self._on_close(self)

    async def wait_closed(self) -> None:
        await self._closed.wait()
