"""Tests for poller.py — cursor, history and publish driven by the source."""

import asyncio

import logfire
import pytest

from conftest import FakeClock, FakeSource
from departure_feed.broadcast import FeedBroadcast
from departure_feed.cursor import CursorTracker
from departure_feed.history import RetainedHistory
from departure_feed.poller import Poller


def make_poller(source, clock, interval=10.0):
    return Poller(
        source=source,
        tracker=CursorTracker(),
        history=RetainedHistory(),
        broadcast=FeedBroadcast(),
        clock=clock,
        interval=interval,
    )


def history_ids(poller):
    return [r.identifier for r in poller._history.snapshot()]


def drain_now(sub):
    """Everything already buffered on a subscription, without waiting."""
    out = []
    while sub.pending:
        out.append(sub._queue.get_nowait())
    return out


# -- Bulk and incremental -----------------------------------------------------


class TestInitialLoad:
    @pytest.mark.asyncio
    async def test_first_poll_is_bulk_and_unbounded(self, clock):
        source = FakeSource([[1, 2, 3]])
        poller = make_poller(source, clock)

        result = await poller.poll(force=True)

        assert result.bulk
        assert not result.rolled_over
        assert [r.identifier for r in result.delivered] == [1, 2, 3]
        (day, cutoff, since) = source.calls[0]
        assert day == clock.now.date()
        assert (cutoff.hour, cutoff.minute) == (9, 30)
        assert since is None

    @pytest.mark.asyncio
    async def test_bulk_load_seeds_history_without_publishing(self, clock):
        poller = make_poller(FakeSource([[1, 2, 3]]), clock)
        sub = poller._broadcast.subscribe()

        result = await poller.poll(force=True)

        assert result.published == 0
        assert history_ids(poller) == [1, 2, 3]
        assert sub.pending == 0


class TestIncremental:
    @pytest.mark.asyncio
    async def test_next_poll_asks_after_last_identifier(self, clock):
        source = FakeSource([[1, 2], [3]])
        poller = make_poller(source, clock)

        await poller.poll(force=True)
        await poller.poll(force=True)

        assert source.calls[1][2] == 2

    @pytest.mark.asyncio
    async def test_each_new_record_is_published_once(self, clock):
        poller = make_poller(FakeSource([[1], [2, 3]]), clock)
        sub = poller._broadcast.subscribe()
        await poller.poll(force=True)

        result = await poller.poll(force=True)

        assert not result.bulk
        assert result.published == 2
        events = drain_now(sub)
        assert [e.kind.value for e in events] == ["scheduled_departure"] * 2
        assert [e.id for e in events] == [2, 3]

    @pytest.mark.asyncio
    async def test_empty_poll_changes_nothing(self, clock):
        poller = make_poller(FakeSource([[1, 2], []]), clock)
        sub = poller._broadcast.subscribe()
        await poller.poll(force=True)

        result = await poller.poll(force=True)

        assert result.delivered == ()
        assert history_ids(poller) == [1, 2]
        assert poller._tracker.last_identifier == 2
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_records_after_an_empty_bulk_load_are_published(self, clock):
        source = FakeSource([[], [5]])
        poller = make_poller(source, clock)
        sub = poller._broadcast.subscribe()
        await poller.poll(force=True)

        result = await poller.poll(force=True)

        assert not result.bulk
        assert source.calls[1][2] is None
        assert [e.id for e in drain_now(sub)] == [5]

    @pytest.mark.asyncio
    async def test_history_is_everything_delivered_today(self, clock):
        poller = make_poller(FakeSource([[1, 2], [3], [], [4, 5, 6]]), clock)
        delivered = []
        for _ in range(4):
            result = await poller.poll(force=True)
            delivered.extend(r.identifier for r in result.delivered)
            clock.advance(minutes=1)

        assert history_ids(poller) == delivered == [1, 2, 3, 4, 5, 6]
        assert poller._tracker.last_identifier == poller._history.last_identifier


# -- Rollover -----------------------------------------------------------------


class TestRollover:
    @pytest.mark.asyncio
    async def test_new_day_replaces_history_silently(self, clock):
        source = FakeSource([[1, 2, 3], [4], [10, 11]])
        poller = make_poller(source, clock)
        sub = poller._broadcast.subscribe()
        await poller.poll(force=True)
        await poller.poll(force=True)
        drain_now(sub)

        clock.advance(days=1)
        result = await poller.poll(force=True)

        assert result.rolled_over
        assert result.bulk
        assert result.published == 0
        assert source.calls[2][2] is None
        assert history_ids(poller) == [10, 11]
        assert poller._tracker.current_day == clock.now.date()
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_new_day_with_nothing_due_empties_history(self, clock):
        poller = make_poller(FakeSource([[900, 901], []]), clock)
        await poller.poll(force=True)

        clock.advance(days=1)
        await poller.poll(force=True)

        assert history_ids(poller) == []
        assert poller._tracker.last_identifier is None

    @pytest.mark.asyncio
    async def test_polls_after_rollover_are_incremental(self, clock):
        source = FakeSource([[900], [1, 2], [3]])
        poller = make_poller(source, clock)
        sub = poller._broadcast.subscribe()
        await poller.poll(force=True)
        clock.advance(days=1)
        await poller.poll(force=True)

        result = await poller.poll(force=True)

        assert not result.rolled_over
        assert source.calls[2][2] == 2
        assert [e.id for e in drain_now(sub)] == [3]


# -- Failures -----------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_poll_leaves_state_untouched(self, clock):
        source = FakeSource([[1, 2], RuntimeError("database is locked"), [3]])
        poller = make_poller(source, clock)
        sub = poller._broadcast.subscribe()
        await poller.poll(force=True)

        result = await poller.poll(force=True)

        assert result.error == "RuntimeError: database is locked"
        assert result.delivered == ()
        assert history_ids(poller) == [1, 2]
        assert poller._tracker.last_identifier == 2
        assert sub.pending == 0
        assert poller.failures == 1

        # The next poll picks up where the last good one left off
        await poller.poll(force=True)
        assert source.calls[2][2] == 2
        assert history_ids(poller) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_failed_first_poll_retries_as_bulk(self, clock):
        source = FakeSource([OSError("unable to open database"), [1, 2]])
        poller = make_poller(source, clock)
        sub = poller._broadcast.subscribe()

        first = await poller.poll(force=True)
        second = await poller.poll(force=True)

        assert first.error is not None
        assert second.bulk
        assert history_ids(poller) == [1, 2]
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_identifiers_going_backwards_are_rejected(self, clock):
        poller = make_poller(FakeSource([[5], [3]]), clock)
        await poller.poll(force=True)

        result = await poller.poll(force=True)

        assert "backwards" in result.error
        assert history_ids(poller) == [5]
        assert poller._tracker.last_identifier == 5

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, clock, monkeypatch):
        logged = []
        monkeypatch.setattr(
            logfire, "exception", lambda msg, **kw: logged.append((msg, kw))
        )
        poller = make_poller(FakeSource([RuntimeError("disk I/O error")]), clock)

        await poller.poll(force=True)

        assert len(logged) == 1
        msg, kw = logged[0]
        assert msg.startswith("Poll failed")
        assert kw["error"] == "disk I/O error"


# -- Scheduling ---------------------------------------------------------------


class BlockingSource(FakeSource):
    """Fetches wait until released, so overlap would be visible."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, day, cutoff, since=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.release.wait()
            return await super().fetch(day, cutoff, since)
        finally:
            self.in_flight -= 1


class TestScheduling:
    @pytest.mark.asyncio
    async def test_poll_before_interval_is_skipped(self, clock):
        source = FakeSource([[1]])
        poller = make_poller(source, clock, interval=10.0)
        await poller.poll()

        result = await poller.poll()

        assert result.skipped
        assert len(source.calls) == 1
        assert poller.polls == 1

    @pytest.mark.asyncio
    async def test_force_ignores_interval(self, clock):
        source = FakeSource()
        poller = make_poller(source, clock, interval=10.0)
        await poller.poll()
        await poller.poll(force=True)
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_polls_never_overlap(self, clock):
        source = BlockingSource()
        poller = make_poller(source, clock)

        first = asyncio.create_task(poller.poll(force=True))
        second = asyncio.create_task(poller.poll(force=True))
        await asyncio.sleep(0.01)
        source.release.set()
        await asyncio.gather(first, second)

        assert source.max_in_flight == 1
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_run_keeps_polling_until_cancelled(self, clock):
        source = FakeSource([[1], RuntimeError("flaky"), [2]])
        poller = make_poller(source, clock, interval=0.01)

        task = asyncio.create_task(poller.run())
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert poller.polls >= 3
        assert history_ids(poller) == [1, 2]
