"""A collection of objects and enumerations for better type support in event stream applications."""

from __future__ import annotations

import dataclasses
import enum
from datetime import datetime
from typing import Any

from ..utils import StrEnum

# The canonical event columns; every other column in an event table is a namespaced attribute.
PATIENT_ID_COL = "patient_id"
EVENT_TYPE_COL = "event_type"
TIMESTAMP_COL = "timestamp"
EVENT_COLS = (PATIENT_ID_COL, EVENT_TYPE_COL, TIMESTAMP_COL)

ATTRIBUTE_SEP = "/"


def attribute_key(event_type: str, attribute: str) -> str:
    """Returns the namespaced column name of `attribute` for events of type `event_type`.

    Examples:
        >>> attribute_key("labevents", "valuenum")
        'labevents/valuenum'
    """
    return f"{event_type}{ATTRIBUTE_SEP}{attribute}"


class JoinHow(StrEnum):
    """The kinds of joins that can be used to attach an auxiliary table to a source table."""

    LEFT = enum.auto()
    """Keep every row of the source table."""

    RIGHT = enum.auto()
    """Keep every row of the auxiliary table."""

    INNER = enum.auto()
    """Keep only rows with a matching key on both sides."""

    OUTER = enum.auto()
    """Keep every row of both tables, coalescing the join key."""

    @property
    def polars_how(self) -> str:
        """The name of this join strategy in `polars.LazyFrame.join`.

        Examples:
            >>> JoinHow.OUTER.polars_how
            'full'
            >>> JoinHow("inner").polars_how
            'inner'
        """
        return "full" if self is JoinHow.OUTER else self.value

    @property
    def polars_maintain_order(self) -> str:
        """The row order `polars.LazyFrame.join` should preserve, so ties in the event stream are stable.

        Examples:
            >>> JoinHow.INNER.polars_maintain_order
            'left'
            >>> JoinHow.OUTER.polars_maintain_order
            'left_right'
        """
        match self:
            case JoinHow.RIGHT:
                return "right"
            case JoinHow.OUTER:
                return "left_right"
            case _:
                return "left"


@dataclasses.dataclass
class Event:
    """A single clinical event of a patient.

    Attributes are stored under their namespaced ``"<event_type>/<attribute>"`` keys, which is the
    serialization boundary of the event table; `get` resolves plain attribute names against that namespace.

    Attributes:
        event_type: The type of the event, which is the name of the table it was sourced from.
        timestamp: When the event occurred, or `None` if the source table has no timestamp.
        attributes: The namespaced attributes of this event.

    Examples:
        >>> E = Event("labs", datetime(2020, 1, 1), {"labs/value": 5.0})
        >>> E.get("value")
        5.0
        >>> E["event_type"]
        'labs'
        >>> E.get("unit")
        Traceback (most recent call last):
            ...
        KeyError: "No such field: 'unit' (event type labs has fields event_type, timestamp, value)"
    """

    event_type: str
    timestamp: datetime | None = None
    attributes: dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Event:
        """Builds an event from one row of an event table.

        Columns belonging to other event types' namespaces (which are null for this row after the
        schema-relaxed union of all tables) are dropped.

        Examples:
            >>> row = {"patient_id": "1", "event_type": "labs", "timestamp": None, "labs/value": 1.0,
            ...        "vitals/hr": None}
            >>> Event.from_row(row)
            Event(event_type='labs', timestamp=None, attributes={'labs/value': 1.0})
        """
        event_type = row[EVENT_TYPE_COL]
        prefix = attribute_key(event_type, "")
        attributes = {k: v for k, v in row.items() if k.startswith(prefix)}
        return cls(event_type=event_type, timestamp=row.get(TIMESTAMP_COL), attributes=attributes)

    @property
    def attribute_names(self) -> list[str]:
        return [k[len(self.event_type) + len(ATTRIBUTE_SEP) :] for k in self.attributes]

    def get(self, key: str) -> Any:
        if key == EVENT_TYPE_COL:
            return self.event_type
        if key == TIMESTAMP_COL:
            return self.timestamp

        full_key = key if key in self.attributes else attribute_key(self.event_type, key)
        if full_key in self.attributes:
            return self.attributes[full_key]

        options = ", ".join([EVENT_TYPE_COL, TIMESTAMP_COL] + self.attribute_names)
        raise KeyError(f"No such field: {key!r} (event type {self.event_type} has fields {options})")

    def __getitem__(self, key: str) -> Any:
        return self.get(key)
