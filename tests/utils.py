import sys

sys.path.append("..")

import gzip
import math
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Optional

import numpy as np
import polars as pl
import torch
from polars.testing import assert_frame_equal as assert_pl_frame_equal

ASSERT_FN = Callable[[Any, Any, Optional[str]], None]


def write_delimited(fp: Path, data: dict[str, list], separator: str = ",") -> Path:
    """Writes `data` as a delimited text file at `fp`, gzip-compressing it if `fp` ends in ``.gz``.

    Args:
        fp: The destination path. Parent directories are created as needed.
        data: The table to write, as a mapping from column names to column values.
        separator: The field delimiter.

    Returns:
        The path written.
    """
    fp.parent.mkdir(parents=True, exist_ok=True)
    text = pl.DataFrame(data).write_csv(separator=separator)
    if fp.name.endswith(".gz"):
        with gzip.open(fp, mode="wt") as f:
            f.write(text)
    else:
        fp.write_text(text)
    return fp


TOY_EHR_CONFIG = {
    "version": "0.1",
    "tables": {
        "patients": {
            "file_path": "patients.csv",
            "patient_id": "subject_id",
            "timestamp": None,
            "attributes": ["gender"],
        },
        "admissions": {
            "file_path": "admissions.csv",
            "patient_id": "subject_id",
            "timestamp": "admittime",
            "attributes": ["hadm_id", "dischtime"],
        },
        "diagnoses": {
            "file_path": "diagnoses.csv.gz",
            "patient_id": "subject_id",
            "join": [
                {"file_path": "admissions.csv", "on": "hadm_id", "how": "inner", "columns": ["subject_id", "dischtime"]}
            ],
            "timestamp": "dischtime",
            "attributes": ["icd_code", "hadm_id"],
        },
        "labevents": {
            "file_path": "labevents.csv",
            "patient_id": "subject_id",
            "join": [{"file_path": "d_labitems.csv", "on": "itemid", "columns": ["label"]}],
            "timestamp": "charttime",
            "attributes": ["itemid", "valuenum", "label"],
        },
    },
}


def write_toy_ehr(root: Path) -> dict:
    """Writes a small, MIMIC-like set of raw tables under `root` and returns the matching dataset config dict.

    There are five patients. Patient 4 has no admissions and patient 3 has a lab with no chart time. The
    admissions table is only present gzipped, under an upper-case name, and its columns are upper-case.
    """
    write_delimited(root / "patients.csv", {"subject_id": [1, 2, 3, 4, 5], "gender": ["F", "M", "F", "M", "F"]})
    write_delimited(
        root / "ADMISSIONS.csv.gz",
        {
            "SUBJECT_ID": [1, 1, 2, 3, 5],
            "HADM_ID": [100, 101, 200, 300, 500],
            "ADMITTIME": [
                "2020-01-01 10:00:00",
                "2020-03-01 08:00:00",
                "2021-06-10 00:00:00",
                "2019-12-31 23:00:00",
                "2022-02-02 02:00:00",
            ],
            "DISCHTIME": [
                "2020-01-05 12:00:00",
                "2020-03-02 09:00:00",
                "2021-06-12 00:00:00",
                "2020-01-03 00:00:00",
                "2022-02-04 02:00:00",
            ],
        },
    )
    write_delimited(
        root / "diagnoses.csv",
        {"hadm_id": [100, 100, 101, 200, 300, 500], "icd_code": ["4019", "25000", "4280", "4019", "5849", "4280"]},
    )
    write_delimited(
        root / "labevents.csv",
        {
            "subject_id": [1, 1, 1, 2, 3],
            "itemid": [50912, 50912, 50931, 50912, 50931],
            "charttime": [
                "2020-01-02 06:00:00",
                "2020-01-03 06:00:00",
                "2020-03-01 09:00:00",
                "2021-06-11 07:00:00",
                None,
            ],
            "valuenum": [1.1, 2.4, 140.0, 0.9, 95.0],
        },
    )
    write_delimited(root / "d_labitems.csv", {"itemid": [50912, 50931], "label": ["Creatinine", "Glucose"]})
    return TOY_EHR_CONFIG


class MLTypeEqualityCheckableMixin:
    """This mixin provides capability to `unittest.TestCase` submodules to check various common ML types for
    equality, including:

    * `torch.Tensor`, via `torch.testing.assert_close`
    * `pl.DataFrame`, via `polars.testing.assert_frame_equal`
    * `np.ndarray`, via `np.testing.assert_allclose`
    """

    EQ_TYPE_CHECKERS = {
        torch.Tensor: (
            torch.testing.assert_close,
            {"equal_nan": True, "rtol": 1e-3, "atol": 1e-3},
        ),
        pl.DataFrame: (assert_pl_frame_equal, {"check_column_order": False}),
        np.ndarray: np.testing.assert_allclose,
    }

    def _typedAssertEqualFntr(self, assert_fn: ASSERT_FN | tuple[ASSERT_FN, dict[str, Any]]) -> ASSERT_FN:
        if type(assert_fn) is tuple:
            assert_fn, assert_kwargs = assert_fn
        else:
            assert_kwargs = {}

        def f(want: Any, got: Any, msg: str | None = None):
            try:
                assert_fn(want, got, **assert_kwargs)
            except Exception as e:
                if msg is None:
                    msg = ""
                msg = f"{msg}\nWant:\n{want}\nGot:\n{got}"
                raise self.failureException(msg) from e

        return f

    def assertNestedEqual(self, want: Any, got: Any, msg: str | None = None):
        m = msg
        if m is None:
            m = "Values aren't equal"

        types_match = isinstance(want, type(got)) or isinstance(got, type(want))
        self.assertTrue(types_match, msg=f"{m}: Want type {type(want)}, got type {type(got)}")

        if isinstance(want, dict):
            self.assertNestedDictEqual(want, got, msg=m)
        elif isinstance(want, (torch.Tensor, pl.DataFrame, np.ndarray)):
            self.assertEqual(want, got, msg=m)
        elif isinstance(want, str):
            self.assertEqual(want, got, msg=m)
        elif isinstance(want, Sequence):
            self.assertEqual(len(want), len(got), msg=m)
            for i, (want_i, got_i) in enumerate(zip(want, got)):
                self.assertNestedEqual(want_i, got_i, msg=f"{m} (index {i})")
        elif isinstance(want, float) and math.isnan(want):
            self.assertTrue(math.isnan(got), msg=m)
        else:
            self.assertEqual(want, got, msg=f"{m}: Want {want}, got {got}")

    def assertNestedDictEqual(self, want: dict, got: dict, msg: str | None = None):
        """This asserts that two dictionaries are equal using nested assert checks for the internal values.

        It is useful so that we can compare dictionaries of tensors or arrays with the type-specific
        comparators.
        """

        self.assertIsInstance(want, dict, msg)
        self.assertIsInstance(got, dict, msg)
        self.assertEqual(set(want.keys()), set(got.keys()), msg)

        for k in want.keys():
            if msg:
                m = f"{msg} (key {k})"
            else:
                m = f"Dictionaries aren't equal (key {k})"

            self.assertNestedEqual(want[k], got[k], m)

    def setUp(self):
        for val_type, assert_fn in self.EQ_TYPE_CHECKERS.items():
            fn = self._typedAssertEqualFntr(assert_fn)
            self.addTypeEqualityFunc(val_type, fn)

        super().setUp()
