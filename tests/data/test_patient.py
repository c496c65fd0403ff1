import sys

sys.path.append("../..")

import unittest
from datetime import datetime, timedelta

import numpy as np
import polars as pl

from PatientStream.data.patient import Patient
from PatientStream.data.types import Event

from ..utils import MLTypeEqualityCheckableMixin

BASE = datetime(2020, 1, 1)

PATIENT_DF = pl.DataFrame(
    {
        "patient_id": ["p1"] * 6,
        "event_type": ["labs", "vitals", "labs", "labs", "vitals", "patients"],
        "timestamp": [
            BASE + timedelta(days=2),
            BASE + timedelta(days=1),
            BASE,
            BASE + timedelta(days=3),
            BASE + timedelta(days=1),
            None,
        ],
        "labs/value": [15.0, None, 5.0, 20.0, None, None],
        "labs/unit": ["mg", None, "mg", "g", None, None],
        "vitals/hr": [None, 72, None, None, 80, None],
        "patients/gender": [None, None, None, None, None, "F"],
    },
    schema_overrides={"timestamp": pl.Datetime("us")},
)


class TestPatient(MLTypeEqualityCheckableMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.P = Patient("p1", PATIENT_DF)

    def test_sorted_with_nulls_first(self):
        self.assertEqual(6, len(self.P))
        self.assertEqual(
            ["patients", "labs", "vitals", "vitals", "labs", "labs"],
            self.P.data_source["event_type"].to_list(),
        )
        # Ties keep their input order.
        self.assertEqual([72, 80], self.P.filter_by_event_type("vitals")["vitals/hr"].to_list())
        self.assertEqual(["patients", "labs", "vitals"], self.P.event_types)

    def test_filter_by_event_type(self):
        labs = self.P.filter_by_event_type("labs")
        self.assertEqual([5.0, 15.0, 20.0], labs["labs/value"].to_list())
        self.assertEqual(PATIENT_DF.columns, labs.columns)

        unknown = self.P.filter_by_event_type("notes")
        self.assertEqual(0, unknown.height)
        self.assertEqual(PATIENT_DF.schema, unknown.schema)

        self.assertEqual(6, self.P.filter_by_event_type(None).height)

    def test_filter_by_event_type_of_given_frame(self):
        recent = self.P.filter_by_time_range(start=BASE + timedelta(days=2))
        self.assertEqual([15.0, 20.0], self.P.filter_by_event_type("labs", df=recent)["labs/value"].to_list())
        self.assertEqual(0, self.P.filter_by_event_type("vitals", df=recent).height)
        self.assertEqual(0, self.P.filter_by_event_type("notes", df=recent).height)
        self.assertEqual(2, self.P.filter_by_event_type(None, df=recent).height)

    def test_numeric_filters_on_text_attributes(self):
        df = pl.DataFrame(
            {
                "event_type": ["labevents"] * 4,
                "timestamp": [BASE + timedelta(hours=h) for h in range(4)],
                "labevents/valuenum": ["1.1", "140.0", "ERROR", None],
                "labevents/hadm_id": ["100", "100", "101", "101"],
            }
        )
        P = Patient("1", df)

        got = P.get_events(event_type="labevents", filters=[("valuenum", ">", 2)])
        self.assertEqual(["140.0"], [e["valuenum"] for e in got])

        got = P.get_events(event_type="labevents", filters=[("hadm_id", "==", 101)], return_df=True)
        self.assertEqual(["ERROR", None], got["labevents/valuenum"].to_list())

        got = P.get_events(event_type="labevents", filters=[("hadm_id", "==", "100")])
        self.assertEqual(2, len(got))

    def test_filter_by_time_range(self):
        got = self.P.filter_by_time_range(BASE + timedelta(days=1), BASE + timedelta(days=2))
        self.assertEqual(["vitals", "vitals", "labs"], got["event_type"].to_list())

        self.assertEqual(6, self.P.filter_by_time_range().height)
        self.assertEqual(5, self.P.filter_by_time_range(start=BASE).height)
        self.assertEqual(1, self.P.filter_by_time_range(end=BASE).height)
        self.assertEqual(1, self.P.filter_by_time_range(start="2020-01-04").height)
        self.assertEqual(0, self.P.filter_by_time_range(start="2020-01-05").height)
        self.assertEqual(0, self.P.filter_by_time_range(start=BASE + timedelta(days=3), end=BASE).height)

    def test_filter_by_time_range_matches_linear_scan(self):
        rng = np.random.default_rng(1)
        for trial in range(25):
            n = int(rng.integers(0, 31))
            timestamps = [
                None if rng.random() < 0.2 else BASE + timedelta(hours=int(rng.integers(0, 11))) for _ in range(n)
            ]
            df = pl.DataFrame(
                {"event_type": ["e"] * n, "timestamp": timestamps, "e/idx": list(range(n))},
                schema={"event_type": pl.Utf8, "timestamp": pl.Datetime("us"), "e/idx": pl.Int64},
            )
            P = Patient(str(trial), df)

            for _ in range(10):
                start = None if rng.random() < 0.3 else BASE + timedelta(hours=int(rng.integers(-1, 12)))
                end = None if rng.random() < 0.3 else BASE + timedelta(hours=int(rng.integers(-1, 12)))

                got = P.filter_by_time_range(start, end)["e/idx"].to_list()

                if start is None and end is None:
                    want = P.data_source["e/idx"].to_list()
                else:
                    want = [
                        row["e/idx"]
                        for row in P.data_source.iter_rows(named=True)
                        if row["timestamp"] is not None
                        and (start is None or row["timestamp"] >= start)
                        and (end is None or row["timestamp"] <= end)
                    ]
                self.assertEqual(want, got, f"Trial {trial}, start={start}, end={end}")

    def test_all_null_timestamps(self):
        df = pl.DataFrame({"event_type": ["patients", "patients"], "timestamp": [None, None]})
        P = Patient("p2", df)
        self.assertEqual(2, P.filter_by_time_range().height)
        self.assertEqual(0, P.filter_by_time_range(start=BASE).height)

    def test_get_events_with_filters(self):
        got = self.P.get_events(event_type="labs", filters=[("value", ">", 10)])
        self.assertEqual(2, len(got))
        self.assertIsInstance(got[0], Event)
        self.assertEqual([15.0, 20.0], [e["value"] for e in got])

        got = self.P.get_events(event_type="labs", filters=[("value", ">", 10), ("unit", "==", "mg")])
        self.assertEqual([15.0], [e.get("value") for e in got])
        self.assertEqual(BASE + timedelta(days=2), got[0].timestamp)

        got = self.P.get_events(event_type="labs", start=BASE + timedelta(days=1), filters=[("value", "!=", 20.0)])
        self.assertEqual([15.0], [e.get("value") for e in got])

    def test_get_events_as_df(self):
        got = self.P.get_events(event_type="vitals", return_df=True)
        self.assertIsInstance(got, pl.DataFrame)
        self.assertEqual([72, 80], got["vitals/hr"].to_list())

        got = self.P.get_events(start=BASE, end=BASE + timedelta(days=1), return_df=True)
        self.assertEqual(["labs", "vitals", "vitals"], got["event_type"].to_list())

        self.assertEqual([], self.P.get_events(event_type="notes"))

    def test_get_events_errors(self):
        with self.assertRaises(ValueError):
            self.P.get_events(filters=[("value", ">", 10)])
        with self.assertRaises(ValueError):
            self.P.get_events(event_type="labs", filters=[("value", "~", 10)])
        with self.assertRaises(ValueError):
            self.P.get_events(event_type="labs", filters=[("value", ">")])
        with self.assertRaises(KeyError):
            self.P.get_events(event_type="labs", filters=[("hr", ">", 10)])


class TestLabsScenario(unittest.TestCase):
    def test_value_threshold(self):
        df = pl.DataFrame(
            {
                "patient_id": ["1"] * 5,
                "event_type": ["labs", "labs", "labs", "vitals", "vitals"],
                "timestamp": [BASE + timedelta(hours=h) for h in range(5)],
                "labs/value": [5, 15, 20, None, None],
                "vitals/value": [None, None, None, 98.6, 99.1],
            }
        )
        P = Patient("1", df)

        got = P.get_events(event_type="labs", filters=[("value", ">", 10)], return_df=True)
        self.assertEqual(2, got.height)
        self.assertEqual([15, 20], got["labs/value"].to_list())
