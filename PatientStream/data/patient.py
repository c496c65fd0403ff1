"""The per-patient event container, with indexed access by event type and time range."""

from __future__ import annotations

import operator
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

import polars as pl

from .types import EVENT_TYPE_COL, TIMESTAMP_COL, Event, attribute_key

TIME_BOUND_T = datetime | date | str | None

# Represents a single attribute filter, as an (attribute, operator, value) triple.
FILTER_T = tuple[str, str, Any]

FILTER_OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class Patient:
    """All events of one patient, sorted by timestamp and partitioned by event type.

    Events with a null timestamp are sorted first, ahead of all timestamped events; ties keep their input order.
    The sorted table and its per-type partitions are built once, at construction, and never modified.

    Args:
        patient_id: The patient's identifier.
        data_source: The patient's event rows: ``event_type``, ``timestamp`` and namespaced attribute columns.

    Examples:
        >>> df = pl.DataFrame({
        ...     "patient_id": ["1", "1", "1"],
        ...     "event_type": ["labs", "vitals", "labs"],
        ...     "timestamp": [datetime(2020, 1, 3), None, datetime(2020, 1, 1)],
        ...     "labs/value": [5.0, None, 15.0],
        ...     "vitals/hr": [None, 80, None],
        ... })
        >>> P = Patient("1", df)
        >>> P.data_source["timestamp"].to_list()
        [None, datetime.datetime(2020, 1, 1, 0, 0), datetime.datetime(2020, 1, 3, 0, 0)]
        >>> P.event_types
        ['vitals', 'labs']
        >>> P.filter_by_event_type("labs")["labs/value"].to_list()
        [15.0, 5.0]
        >>> P.filter_by_event_type("notes").height
        0
        >>> [e.get("value") for e in P.get_events("labs", filters=[("value", ">", 10)])]
        [15.0]
    """

    def __init__(self, patient_id: str, data_source: pl.DataFrame):
        self.patient_id = patient_id
        self.data_source = data_source.sort(TIMESTAMP_COL, nulls_last=False, maintain_order=True)

        self.event_type_partitions: dict[str, pl.DataFrame] = {}
        for part in self.data_source.partition_by(EVENT_TYPE_COL, maintain_order=True):
            self.event_type_partitions[part[EVENT_TYPE_COL][0]] = part

    def __repr__(self) -> str:
        return f"Patient(patient_id={self.patient_id!r}, n_events={len(self)})"

    def __len__(self) -> int:
        return self.data_source.height

    @property
    def event_types(self) -> list[str]:
        return list(self.event_type_partitions)

    def filter_by_event_type(self, event_type: str | None, df: pl.DataFrame | None = None) -> pl.DataFrame:
        """Returns the events of `df` (defaulting to all the patient's events) of type `event_type`.

        If `event_type` is `None`, `df` is returned unchanged. Unknown types give an empty frame.
        """
        if df is not None:
            return df if event_type is None else df.filter(pl.col(EVENT_TYPE_COL) == event_type)
        if event_type is None:
            return self.data_source
        if event_type in self.event_type_partitions:
            return self.event_type_partitions[event_type]
        return self.data_source.clear()

    @staticmethod
    def _bound_as_series(bound: TIME_BOUND_T, dtype: pl.DataType) -> pl.Series:
        if isinstance(bound, str) and dtype.is_temporal():
            bound = datetime.fromisoformat(bound)
        return pl.Series(TIMESTAMP_COL, [bound]).cast(dtype)

    def filter_by_time_range(
        self, start: TIME_BOUND_T = None, end: TIME_BOUND_T = None, df: pl.DataFrame | None = None
    ) -> pl.DataFrame:
        """Returns the events with ``start <= timestamp <= end``, found by binary search.

        Both bounds are inclusive and either may be omitted. If both are omitted, every event (including those
        with a null timestamp) is returned; otherwise events with a null timestamp are never returned.

        Args:
            start: The inclusive lower bound. Strings are parsed as ISO 8601 datetimes.
            end: The inclusive upper bound. Strings are parsed as ISO 8601 datetimes.
            df: The events to filter, which must be sorted by timestamp with nulls first. Defaults to all of
                the patient's events.

        Examples:
            >>> df = pl.DataFrame({
            ...     "event_type": ["a"] * 4,
            ...     "timestamp": [None, datetime(2020, 1, 1), datetime(2020, 1, 2), datetime(2020, 1, 2)],
            ... })
            >>> P = Patient("1", df)
            >>> P.filter_by_time_range(start="2020-01-02").height
            2
            >>> P.filter_by_time_range(end=datetime(2020, 1, 1)).height
            1
            >>> P.filter_by_time_range().height
            4
            >>> P.filter_by_time_range(start="2020-01-03", end="2020-01-01").height
            0
        """
        if df is None:
            df = self.data_source
        if start is None and end is None:
            return df

        ts = df[TIMESTAMP_COL]
        if ts.dtype == pl.Null:
            return df.clear()

        lo = ts.null_count()
        hi = df.height
        timestamped = ts.slice(lo)

        if start is not None:
            lo += timestamped.search_sorted(self._bound_as_series(start, ts.dtype), side="left")[0]
        if end is not None:
            hi = ts.null_count() + timestamped.search_sorted(self._bound_as_series(end, ts.dtype), side="right")[0]

        if lo >= hi:
            return df.clear()
        return df.slice(lo, hi - lo)

    @staticmethod
    def _check_filter(filt: Sequence):
        if not isinstance(filt, (list, tuple)) or len(filt) != 3:
            raise ValueError(f"Each filter must be an (attribute, operator, value) triple. Got {filt!r}")
        if filt[1] not in FILTER_OPS:
            raise ValueError(f"Unknown filter operator {filt[1]!r}; must be in {', '.join(FILTER_OPS)}")

    @staticmethod
    def _filter_expr(event_type: str, filt: FILTER_T, schema: pl.Schema) -> pl.Expr:
        attr, op, val = filt
        key = attribute_key(event_type, attr)
        col = pl.col(key)
        if isinstance(val, (int, float)) and not isinstance(val, bool) and schema[key] == pl.Utf8:
            # Raw attributes are text; unparseable values never match a numeric comparison.
            col = col.cast(pl.Float64, strict=False)
        return FILTER_OPS[op](col, val)

    def get_events(
        self,
        event_type: str | None = None,
        start: TIME_BOUND_T = None,
        end: TIME_BOUND_T = None,
        filters: Sequence[FILTER_T] | None = None,
        return_df: bool = False,
    ) -> pl.DataFrame | list[Event]:
        """Returns the patient's events matching a type, an inclusive time range and attribute filters.

        Args:
            event_type: Restricts to events of this type. Required if `filters` are given.
            start: The inclusive lower time bound.
            end: The inclusive upper time bound.
            filters: ``(attribute, operator, value)`` triples, all of which must hold. Attribute names are
                resolved within the ``event_type`` namespace and operators are one of ``==``, ``!=``, ``<``,
                ``<=``, ``>``, ``>=``. Text attributes compared to a number are parsed as floats first.
            return_df: If `True`, return the matching rows as a dataframe; otherwise return `Event` objects.

        Raises:
            ValueError: If filters are given without an event type, or a filter is malformed.
            KeyError: If a filter names an attribute the event type does not have.
        """
        filters = list(filters or [])
        if filters and event_type is None:
            raise ValueError("event_type must be provided if filters are used")
        for f in filters:
            self._check_filter(f)

        df = self.filter_by_event_type(event_type)
        df = self.filter_by_time_range(start, end, df=df)

        if filters and df.height > 0:
            missing = [f[0] for f in filters if attribute_key(event_type, f[0]) not in df.columns]
            if missing:
                raise KeyError(f"Event type {event_type} has no attribute(s) {', '.join(map(str, missing))}")
            df = df.filter(pl.all_horizontal([self._filter_expr(event_type, f, df.schema) for f in filters]))

        if return_df:
            return df
        return [Event.from_row(row) for row in df.iter_rows(named=True)]
