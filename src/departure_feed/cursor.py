"""cursor.py — What has already been delivered, and for which day.

The cursor is two values: the last identifier handed out and the day it
belongs to. The day is checked lazily, on each poll; there is no
midnight timer. A poll that sees a new day starts over with no lower
bound (a bulk load) instead of continuing from yesterday's identifier.

The tracker never mutates on a look. The poller asks day_changed() and
since() before the query, and only commit()s once the query succeeded,
so a failed poll leaves the cursor exactly as it was.
"""

from __future__ import annotations

from dataclasses import dataclass

import pendulum

from .records import Identifier, Record


@dataclass
class Cursor:
    """Snapshot of the tracker state."""

    last_identifier: Identifier | None = None
    current_day: pendulum.Date | None = None


class CursorTracker:
    """Owns the last delivered identifier and the current day."""

    def __init__(self) -> None:
        self._last_identifier: Identifier | None = None
        self._current_day: pendulum.Date | None = None

    @property
    def last_identifier(self) -> Identifier | None:
        return self._last_identifier

    @property
    def current_day(self) -> pendulum.Date | None:
        return self._current_day

    @property
    def cursor(self) -> Cursor:
        return Cursor(self._last_identifier, self._current_day)

    def day_changed(self, day: pendulum.Date) -> bool:
        """True when a previous day exists and `day` differs from it."""
        return self._current_day is not None and day != self._current_day

    def is_bulk(self, day: pendulum.Date) -> bool:
        """True for the first poll ever and the first poll of a new day."""
        return self._current_day is None or self.day_changed(day)

    def since(self, day: pendulum.Date) -> Identifier | None:
        """Exclusive lower bound for the next query on `day`."""
        if self.is_bulk(day):
            return None
        return self._last_identifier

    def commit(self, day: pendulum.Date, records: list[Record]) -> None:
        """Record a successful poll of `day` that returned `records`.

        Raises ValueError if the records would move the cursor backwards.
        Nothing is changed in that case.
        """
        bulk = self.is_bulk(day)
        last = None if bulk else self._last_identifier

        if records:
            newest = records[-1].identifier
            if last is not None and newest < last:
                raise ValueError(
                    f"Identifier went backwards: {newest!r} < {last!r}"
                )
            last = newest

        self._current_day = day
        self._last_identifier = last
