"""source.py — Where due records come from.

The poller only knows the RecordSource protocol: give it a day, a time
cutoff and (optionally) the last identifier already seen, get back the
rows that became due, ordered by identifier.

SqliteFlightSource is the concrete source: the nycflights13 dataset
(every departure from the three New York airports in 2013) in a
read-only SQLite file, replayed against today's month/day and the
current wall-clock time.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Protocol

import logfire
import pendulum

from .records import Identifier, Record

# Column order of the flights table. Rows are mapped onto these names.
FLIGHT_COLUMNS = (
    "id",
    "year",
    "month",
    "day",
    "dep_time",
    "sched_dep_time",
    "dep_delay",
    "arr_time",
    "sched_arr_time",
    "arr_delay",
    "carrier",
    "flight",
    "tailnum",
    "origin",
    "dest",
    "air_time",
    "distance",
    "hour",
    "minute",
    "time_hour",
)


# -- Protocol -----------------------------------------------------------------


class RecordSource(Protocol):
    """Something the poller can ask for newly due records."""

    async def fetch(
        self,
        day: pendulum.Date,
        cutoff: pendulum.Time,
        since: Identifier | None = None,
    ) -> list[Record]:
        """Records of `day` due at or before `cutoff`, identifier > `since`.

        Must be ordered by identifier ascending. `since=None` means no
        lower bound (initial load, or the first poll after a rollover).
        """
        ...

    def parse_identifier(self, token: str) -> Identifier:
        """Turn a client-supplied token into an Identifier.

        Raises ValueError for tokens that can't be one.
        """
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...


# -- SQLite flights source ----------------------------------------------------


def _cutoff_hhmm(cutoff: pendulum.Time) -> int:
    """sched_dep_time is stored as an HHMM integer (e.g. 1405)."""
    return cutoff.hour * 100 + cutoff.minute


class SqliteFlightSource:
    """Read-only flights table, queried one day at a time.

    The dataset covers a single year, so rows are matched on month and
    day only. Queries run in a worker thread so the event loop keeps
    serving streams while SQLite works.
    """

    TABLE = "flights"

    def __init__(self, path: str | Path, log_queries: bool = False):
        self._path = Path(path)
        self._log_queries = log_queries
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if not self._path.exists():
                raise FileNotFoundError(f"Flights database not found: {self._path}")
            uri = self._path.resolve().as_uri() + "?mode=ro"
            # Polls never overlap, but consecutive ones may land on different threads
            self._conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        return self._conn

    def build_query(self, since: Identifier | None) -> str:
        columns = ", ".join(FLIGHT_COLUMNS)
        query = (
            f"SELECT {columns} FROM {self.TABLE} "
            "WHERE month = ? AND day = ? AND sched_dep_time <= ?"
        )
        if since is not None:
            query += " AND id > ?"
        return query + " ORDER BY id"

    def _query(
        self,
        day: pendulum.Date,
        cutoff: pendulum.Time,
        since: Identifier | None,
    ) -> list[Record]:
        query = self.build_query(since)
        params: list = [day.month, day.day, _cutoff_hhmm(cutoff)]
        if since is not None:
            params.append(since)

        if self._log_queries and since is None:
            logfire.debug("sql> {query} {params}", query=query, params=params)

        rows = self._connect().execute(query, params).fetchall()
        return [
            Record(identifier=row[0], payload=dict(zip(FLIGHT_COLUMNS, row)))
            for row in rows
        ]

    async def fetch(
        self,
        day: pendulum.Date,
        cutoff: pendulum.Time,
        since: Identifier | None = None,
    ) -> list[Record]:
        return await asyncio.to_thread(self._query, day, cutoff, since)

    def parse_identifier(self, token: str) -> Identifier:
        # Flight ids are integers; int() raises ValueError on anything else
        return int(token)

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
