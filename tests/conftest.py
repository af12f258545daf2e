"""Shared test fixtures for departure_feed.

The fake source and fake clock stand in for the flights database and the
wall clock, so polls are deterministic: each fetch() returns the next
scripted batch, and time only moves when a test moves it.
"""

from __future__ import annotations

import pendulum
import pytest

from departure_feed.records import Record


# -- Markers ------------------------------------------------------------------


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: marks tests that open real sockets",
    )


# -- Fakes --------------------------------------------------------------------


def make_record(identifier: int, **payload) -> Record:
    """A flight-shaped record with the given id."""
    row = {"id": identifier, "carrier": "UA", "origin": "EWR", "dest": "IAH"}
    row.update(payload)
    return Record(identifier=identifier, payload=row)


class FakeSource:
    """Scripted record source.

    Each fetch() consumes the next entry of `batches`: a list of ids to
    return, or an exception to raise. Once the script runs out, fetches
    return nothing. Every call is recorded in `calls`.
    """

    def __init__(self, batches: list | None = None):
        self.batches = list(batches) if batches else []
        self.calls: list[tuple[pendulum.Date, pendulum.Time, int | None]] = []
        self.closed = False

    def push(self, batch) -> None:
        self.batches.append(batch)

    async def fetch(self, day, cutoff, since=None):
        self.calls.append((day, cutoff, since))
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return [make_record(i) for i in batch]

    def parse_identifier(self, token: str) -> int:
        return int(token)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: pendulum.DateTime):
        self.now = start

    def __call__(self) -> pendulum.DateTime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now.add(**kwargs)


# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def clock():
    """Mid-morning on New Year's Day 2013, New York time."""
    return FakeClock(pendulum.datetime(2013, 1, 1, 9, 30, tz="America/New_York"))


@pytest.fixture
def records():
    """Helper: build records from ids."""
    def _make(*ids: int) -> list[Record]:
        return [make_record(i) for i in ids]
    return _make
