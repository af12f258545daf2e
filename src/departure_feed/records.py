"""records.py — The unit the feed moves around.

A Record is one row from the record source: an identifier plus the
row's columns, passed through untouched. The identifier is the ordering
key for everything downstream (cursor, history, catch-up, SSE ids).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

# Identifiers only need to be totally ordered. The flights source uses ints.
Identifier = Union[int, str]


@dataclass(frozen=True)
class Record:
    """One due row from the record source.

    identifier: Monotonic ordering key, unique within a day.
    payload: Column name → value. Includes the identifier column itself.
    """

    identifier: Identifier
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        """The serialized record body (a plain dict copy of the payload)."""
        return dict(self.payload)
