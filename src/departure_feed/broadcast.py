"""broadcast.py — Fan-out of feed events to every live subscriber.

Each subscriber gets its own bounded queue. Publishing puts the event
on every queue without waiting, so a slow reader only ever holds up
itself. Two browsers both see every departure instead of splitting
them between them.

There is no replay here. A subscriber sees what is published after it
subscribed. Catching up on earlier records is the job of the retained
history, which the session consults in the same step as subscribing.

A subscriber that falls so far behind that its queue fills up is cut
loose: it is detached, reads what it already has, then sees end of
stream. Its client reconnects with Last-Event-ID and catches up from
history, so nothing is lost, just re-fetched.
"""

from __future__ import annotations

import asyncio

import logfire

from .events import FeedEvent


class Subscription:
    """One subscriber's private queue plus a closed signal.

    Readers call get(), which waits on both at once: the next event, or
    the subscription being closed, whichever comes first.

    Two ways to close:
    - close(): graceful. Buffered events are still delivered, then None.
    - discard(): immediate. Buffered events are dropped, get() returns None.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[FeedEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._discarded = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        """Buffered events not yet read."""
        return self._queue.qsize()

    def offer(self, event: FeedEvent) -> bool:
        """Enqueue without waiting. Returns False if the buffer is full.

        Offers to a closed subscription are ignored (and count as accepted).
        """
        if self.closed:
            return True
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        self._closed.set()

    def discard(self) -> None:
        self._discarded = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed.set()

    async def get(self) -> FeedEvent | None:
        """Next event, or None once the subscription has ended."""
        if self._discarded:
            return None
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            return None

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, closer}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            getter.cancel()
            closer.cancel()

        if getter in done and not getter.cancelled():
            event = getter.result()
            if self._discarded:
                return None
            return event
        return None


class FeedBroadcast:
    """Registry of subscriptions and the publish operation over them.

    Usage:
        broadcast = FeedBroadcast()

        # Poller side
        broadcast.publish(FeedEvent.departure(record))

        # Session side (one per stream)
        sub = broadcast.subscribe()
        event = await sub.get()      # None = stream over
        broadcast.unsubscribe(sub)
    """

    DEFAULT_BUFFER_SIZE = 1000

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self._buffer_size = buffer_size
        self._subscribers: set[Subscription] = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        """Number of attached subscriptions."""
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: FeedEvent) -> int:
        """Enqueue `event` for every current subscriber.

        Sync and non-blocking. Returns the number of subscriptions that
        accepted the event. Subscriptions with a full buffer are
        detached and closed gracefully.
        """
        if self._closed:
            return 0

        delivered = 0
        overflowed: list[Subscription] = []
        for sub in self._subscribers:
            if sub.offer(event):
                delivered += 1
            else:
                overflowed.append(sub)

        for sub in overflowed:
            self._subscribers.discard(sub)
            sub.close()
            logfire.warning(
                "Subscriber fell behind ({pending} buffered), detached",
                pending=sub.pending,
            )

        return delivered

    def publish_keepalive(self) -> int:
        return self.publish(FeedEvent.keepalive())

    def subscribe(self) -> Subscription:
        """Attach a new subscription. It receives events published from now on.

        After close(), the returned subscription has already ended.
        """
        sub = Subscription(maxsize=self._buffer_size)
        if self._closed:
            sub.close()
            return sub
        self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Detach and drop anything still buffered.

        Idempotent. Safe for subscriptions that were already cut loose.
        """
        self._subscribers.discard(sub)
        sub.discard()

    def close(self) -> None:
        """End every subscription gracefully. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscribers:
            sub.close()
        self._subscribers.clear()
