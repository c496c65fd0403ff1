import sys

sys.path.append("../..")

import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import polars as pl

from PatientStream.data import cache
from PatientStream.data.cache import (
    cache_path_for,
    ensure_cache,
    find_path_with_fallback,
    match_actual_case,
)

from ..utils import MLTypeEqualityCheckableMixin, write_delimited

ADMISSIONS = {
    "subject_id": [1, 1, 2],
    "hadm_id": [10, 11, 20],
    "admittime": ["2020-01-01 10:00:00", "2020-02-01 08:30:00", "2021-05-05 00:00:00"],
}


class TestPathResolution(unittest.TestCase):
    def test_cache_path_for(self):
        self.assertEqual(Path("/d/subset/ADMISSIONS.parquet"), cache_path_for("/d/ADMISSIONS.csv.gz"))
        self.assertEqual(Path("/d/subset/ADMISSIONS.parquet"), cache_path_for("/d/ADMISSIONS.csv"))
        self.assertEqual(Path("/d/hosp/subset/labs.parquet"), cache_path_for(Path("/d/hosp/labs.TSV.GZ")))

    def test_find_path_with_fallback(self):
        with TemporaryDirectory() as d:
            d = Path(d)
            gz_fp = write_delimited(d / "admissions.csv.gz", ADMISSIONS)
            tsv_fp = write_delimited(d / "notes.tsv", ADMISSIONS, separator="\t")

            self.assertEqual((gz_fp, ","), find_path_with_fallback(d / "admissions.csv"))
            self.assertEqual((gz_fp, ","), find_path_with_fallback(d / "admissions.csv.gz"))
            self.assertEqual((tsv_fp, "\t"), find_path_with_fallback(d / "notes.tsv.gz"))

    def test_case_insensitive_match(self):
        with TemporaryDirectory() as d:
            d = Path(d)
            fp = write_delimited(d / "ADMISSIONS.csv", ADMISSIONS)

            self.assertEqual(fp, match_actual_case(d / "admissions.csv"))
            self.assertEqual(d / "other.csv", match_actual_case(d / "other.csv"))
            self.assertEqual((fp, ","), find_path_with_fallback(d / "admissions.csv.gz"))

    def test_errors(self):
        with TemporaryDirectory() as d:
            d = Path(d)
            with self.assertRaises(FileNotFoundError) as ctx:
                find_path_with_fallback(d / "missing.csv")
            self.assertIn("missing.csv", str(ctx.exception))
            self.assertIn("missing.csv.gz", str(ctx.exception))

            with self.assertRaises(ValueError):
                find_path_with_fallback(d / "table.parquet")


class TestEnsureCache(MLTypeEqualityCheckableMixin, unittest.TestCase):
    def test_converts_once(self):
        with TemporaryDirectory() as d:
            source_fp = write_delimited(Path(d) / "ADMISSIONS.csv", ADMISSIONS)

            with patch.object(cache, "_convert_to_parquet", wraps=cache._convert_to_parquet) as convert:
                got_fp = ensure_cache(source_fp)
                first = pl.read_parquet(got_fp)

                self.assertEqual(Path(d) / "subset" / "ADMISSIONS.parquet", got_fp)
                self.assertEqual(1, convert.call_count)

                self.assertEqual(got_fp, ensure_cache(source_fp))
                self.assertEqual(1, convert.call_count, "The second call should be a cache hit.")
                self.assertEqual(first, pl.read_parquet(got_fp))

            self.assertEqual(["10", "11", "20"], first["hadm_id"].to_list())
            self.assertEqual(ADMISSIONS["admittime"], first["admittime"].to_list())
            self.assertEqual(["ADMISSIONS.parquet"], [p.name for p in got_fp.parent.iterdir()])

    def test_gzipped_and_tab_separated(self):
        with TemporaryDirectory() as d:
            gz_fp = write_delimited(Path(d) / "admissions.csv.gz", ADMISSIONS)
            tsv_fp = write_delimited(Path(d) / "notes.tsv", ADMISSIONS, separator="\t")

            self.assertEqual(["1", "1", "2"], pl.read_parquet(ensure_cache(gz_fp))["subject_id"].to_list())
            self.assertEqual(["10", "11", "20"], pl.read_parquet(ensure_cache(tsv_fp))["hadm_id"].to_list())

    def test_tolerates_ragged_rows(self):
        with TemporaryDirectory() as d:
            source_fp = Path(d) / "labs.csv"
            source_fp.write_text("subject_id,value\n1,5.0\n2,\n3,7.5,extra\n4,8.0\n")

            df = pl.read_parquet(ensure_cache(source_fp))
            self.assertEqual(["1", "2", "3", "4"], df["subject_id"].to_list())
            self.assertEqual(["5.0", None, "7.5", "8.0"], df["value"].to_list())

    def test_codes_are_stored_verbatim(self):
        with TemporaryDirectory() as d:
            codes = ["0389"] + ["4019"] * 10000 + ["V4581"]
            data = {"hadm_id": list(range(len(codes))), "icd_code": codes}
            source_fp = write_delimited(Path(d) / "diagnoses_icd.csv", data)

            df = pl.read_parquet(ensure_cache(source_fp))
            self.assertEqual(pl.Utf8, df.schema["icd_code"])
            self.assertEqual(len(codes), df.height)
            self.assertEqual(["0389", "V4581"], df["icd_code"].filter(df["icd_code"] != "4019").to_list())
            self.assertEqual(0, df["icd_code"].null_count())

    def test_empty_conversion_is_not_installed(self):
        def convert_to_empty(source_fp, out_fp, separator):
            Path(out_fp).write_bytes(b"")

        with TemporaryDirectory() as d:
            source_fp = write_delimited(Path(d) / "ADMISSIONS.csv", ADMISSIONS)

            with patch.object(cache, "_convert_to_parquet", side_effect=convert_to_empty):
                with self.assertRaisesRegex(RuntimeError, "ADMISSIONS.csv"):
                    ensure_cache(source_fp)

            cache_dir = Path(d) / "subset"
            self.assertEqual([], list(cache_dir.iterdir()), "Neither the cache nor a temp file should remain.")

            # A later, successful conversion still works.
            self.assertTrue(ensure_cache(source_fp).is_file())

    def test_failed_conversion_leaves_no_partial_cache(self):
        with TemporaryDirectory() as d:
            source_fp = write_delimited(Path(d) / "ADMISSIONS.csv", ADMISSIONS)

            with patch.object(cache, "_convert_to_parquet", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    ensure_cache(source_fp)

            self.assertEqual([], list((Path(d) / "subset").iterdir()))
