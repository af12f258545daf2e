"""poller.py — Asks the source what became due, and hands it on.

One poll:
  1. Read the wall clock. Has the day changed since the last poll?
  2. Query the source for today's records due by now, after the cursor
     (no lower bound on a bulk load).
  3. Commit the cursor, then update history and publish, all in one
     synchronous step. Nothing awaits between the three, so a session
     on the same loop sees either all of a poll or none of it.

Bulk loads (the first poll of the process, the first poll of a new day)
seed history silently. Only incremental results are "this just
departed" news worth pushing to live subscribers.

A failed query is logged and otherwise ignored: cursor and history are
untouched and the next tick tries again.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import logfire
import pendulum

from .broadcast import FeedBroadcast
from .cursor import CursorTracker
from .events import FeedEvent
from .history import RetainedHistory
from .records import Record
from .source import RecordSource

Clock = Callable[[], pendulum.DateTime]


@dataclass
class PollResult:
    """What a single poll did."""

    delivered: tuple[Record, ...] = ()
    rolled_over: bool = False
    bulk: bool = False
    skipped: bool = False
    error: str | None = None

    @property
    def published(self) -> int:
        """Records pushed to live subscribers (bulk loads push none)."""
        return 0 if self.bulk else len(self.delivered)


class Poller:
    """Single writer of cursor and history.

    Usage:
        poller = Poller(source, tracker, history, broadcast, clock)
        await poller.poll(force=True)   # initial load, right away
        await poller.run()              # forever, every `interval` seconds
    """

    DEFAULT_INTERVAL = 10.0
    TICK_SECONDS = 1.0

    def __init__(
        self,
        source: RecordSource,
        tracker: CursorTracker,
        history: RetainedHistory,
        broadcast: FeedBroadcast,
        clock: Clock,
        interval: float = DEFAULT_INTERVAL,
    ):
        self._source = source
        self._tracker = tracker
        self._history = history
        self._broadcast = broadcast
        self._clock = clock
        self._interval = interval

        self._lock = asyncio.Lock()
        self._last_poll_at: float | None = None
        self._polls = 0
        self._failures = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def polls(self) -> int:
        """Polls that actually queried the source."""
        return self._polls

    @property
    def failures(self) -> int:
        return self._failures

    def _due(self) -> bool:
        if self._last_poll_at is None:
            return True
        return time.monotonic() - self._last_poll_at >= self._interval

    async def poll(self, force: bool = False) -> PollResult:
        """Poll the source once, unless the interval hasn't elapsed.

        force=True skips the interval check. Concurrent calls are
        serialised: a poll never starts while another is outstanding.
        """
        async with self._lock:
            if not force and not self._due():
                return PollResult(skipped=True)
            try:
                return await self._poll_once()
            finally:
                self._last_poll_at = time.monotonic()

    async def _poll_once(self) -> PollResult:
        now = self._clock()
        day = now.date()
        cutoff = now.time()

        rolled_over = self._tracker.day_changed(day)
        bulk = self._tracker.is_bulk(day)
        since = self._tracker.since(day)
        self._polls += 1

        with logfire.span("poll", day=str(day), since=since, bulk=bulk):
            try:
                records = await self._source.fetch(day, cutoff, since)
                self._tracker.commit(day, records)
            except Exception as e:
                self._failures += 1
                logfire.exception("Poll failed: {error}", error=str(e))
                return PollResult(
                    rolled_over=rolled_over,
                    bulk=bulk,
                    error=f"{type(e).__name__}: {e}",
                )

            if rolled_over:
                logfire.info("Day rolled over to {day}, history reset", day=str(day))

            if bulk:
                self._history.replace_all(records)
                logfire.info(
                    "Bulk load: {count} departures due by {cutoff}, last id {last_id}",
                    count=len(records),
                    cutoff=cutoff.strftime("%H:%M"),
                    last_id=self._tracker.last_identifier,
                )
            elif records:
                self._history.append(records)
                for record in records:
                    self._broadcast.publish(FeedEvent.departure(record))
                logfire.info(
                    "{count} new departures due by {cutoff}, last id {last_id}, {subscribers} subscribers",
                    count=len(records),
                    cutoff=cutoff.strftime("%H:%M"),
                    last_id=self._tracker.last_identifier,
                    subscribers=self._broadcast.subscriber_count,
                )
            else:
                logfire.debug("No new departures")

        return PollResult(
            delivered=tuple(records),
            rolled_over=rolled_over,
            bulk=bulk,
        )

    async def run(self) -> None:
        """Poll every `interval` seconds until cancelled.

        Ticks at most once a second and lets poll() decide whether the
        interval has elapsed. The next tick is only scheduled after the
        previous poll has finished.
        """
        tick = min(self.TICK_SECONDS, self._interval)
        while True:
            try:
                await self.poll()
            except Exception:
                # poll() already contains source errors; this is a bug, keep going
                logfire.exception("Poll loop iteration crashed")
            await asyncio.sleep(tick)
