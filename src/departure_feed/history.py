"""history.py — Today's delivered records, kept for catch-up.

Append-only within a day, replaced wholesale on a bulk load. Order is
arrival order, which is also identifier order, so catch-up is a binary
search for the first record at or after the client's last known id.

The sequence is stored as a tuple and swapped, never edited in place:
a reader holding a snapshot keeps a consistent view no matter what the
poller does next.
"""

from __future__ import annotations

from bisect import bisect_left
from typing import Iterable

from .records import Identifier, Record


def _identifier(record: Record) -> Identifier:
    return record.identifier


class RetainedHistory:
    """Ordered, same-day log of every record delivered so far."""

    def __init__(self, records: Iterable[Record] = ()):
        self._records: tuple[Record, ...] = tuple(records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def last_identifier(self) -> Identifier | None:
        """Identifier of the newest retained record, or None when empty."""
        if not self._records:
            return None
        return self._records[-1].identifier

    def snapshot(self) -> tuple[Record, ...]:
        return self._records

    def append(self, records: Iterable[Record]) -> None:
        self._records = self._records + tuple(records)

    def replace_all(self, records: Iterable[Record]) -> None:
        """Start over with `records`. Used for the initial load and on rollover."""
        self._records = tuple(records)

    def clear(self) -> None:
        self._records = ()

    def query(self, since: Identifier | None = None) -> tuple[Record, ...]:
        """Catch-up: every retained record with identifier >= `since`.

        The boundary is inclusive. A client's last known id is treated
        conservatively: sending that record again is fine, skipping the
        one after it is not. With no bound, returns everything.
        """
        records = self._records
        if since is None:
            return records
        start = bisect_left(records, since, key=_identifier)
        return records[start:]
