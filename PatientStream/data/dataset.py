"""The `Dataset` class: loads configured raw tables into one canonical, patient-sorted event stream."""

from __future__ import annotations

import multiprocessing
from collections.abc import Callable, Generator, Sequence
from pathlib import Path
from typing import Any

import hydra
import polars as pl
from loguru import logger
from mixins import TimeableMixin, TQDMableMixin

from .cache import ensure_cache, find_path_with_fallback
from .config import DatasetConfig, JoinConfig, TableConfig, get_preset, load_yaml_config
from .patient import Patient
from .sample_dataset import SAMPLE_DATASET_MANIFEST_FN, SampleDataset, load_sample_dataset
from .types import EVENT_TYPE_COL, PATIENT_ID_COL, TIMESTAMP_COL, attribute_key

TIMESTAMP_DTYPE = pl.Datetime("us")
DEV_LIMIT = 1000


def _call_task_on_patient(args: tuple[Any, pl.DataFrame]) -> list[dict]:
    """Runs a task on one patient's events. Each worker receives only the task and that patient's slice."""
    task, patient_df = args
    patient = Patient(patient_id=patient_df[PATIENT_ID_COL][0], data_source=patient_df)
    return list(task(patient))


class Dataset(TimeableMixin, TQDMableMixin):
    """A set of raw clinical tables harmonized into one lazily evaluated event stream.

    Every configured table is cached as parquet, merged with its auxiliary join tables and projected into the
    canonical event shape: a string ``patient_id``, an ``event_type`` equal to the table name, a ``timestamp``
    and attribute columns renamed to ``"<table>/<column>"``. Attributes keep the exact text of the source file,
    so codes such as ``"0389"`` are never reinterpreted as numbers. The per-table views are unioned (columns
    missing from a table are filled with nulls) into `global_event_lf`, sorted by patient and then timestamp,
    with null timestamps first.

    The event stream is materialized at most once, on first use of `global_event_df`; `invalidate` discards
    the materialized table and every view derived from it.

    Args:
        root: The directory that configured file paths are relative to.
        tables: The names of the tables to load.
        dataset_name: The name of this dataset. Defaults to the name of the class.
        config_path: The path of a YAML dataset config. Exactly one of this and `config` must be given.
        config: An already loaded dataset config.
        dev: If `True`, restrict the dataset to its first `dev_limit` distinct patients.
        dev_limit: The number of patients retained in development mode.

    Raises:
        ValueError: If the config is missing or ambiguous, or no tables are requested.
        KeyError: If a requested table is not in the config.
        FileNotFoundError: If a table (or join table) file can't be found.
    """

    def __init__(
        self,
        root: Path | str,
        tables: Sequence[str],
        dataset_name: str | None = None,
        config_path: Path | str | None = None,
        config: DatasetConfig | None = None,
        dev: bool = False,
        dev_limit: int = DEV_LIMIT,
        **kwargs,
    ):
        super().__init__(**kwargs)

        if (config is None) == (config_path is None):
            raise ValueError("Exactly one of config and config_path must be specified!")
        if not tables:
            raise ValueError("Must specify at least one table to load!")
        if dev_limit <= 0:
            raise ValueError(f"dev_limit must be positive; got {dev_limit}")

        self.root = Path(root)
        self.tables = list(dict.fromkeys(t.lower() for t in tables))
        self.dataset_name = dataset_name or self.__class__.__name__
        self.config = config if config is not None else load_yaml_config(config_path)
        self.dev = dev
        self.dev_limit = dev_limit

        self.source_paths: dict[str, Path] = {}
        self.default_task_target: str | None = None

        self._global_event_df = None
        self._patient_slices = None

        logger.info(f"Initializing {self.dataset_name} (dev = {self.dev}) with tables {', '.join(self.tables)}")
        self.global_event_lf = self.load_data()

    @classmethod
    def from_preset(
        cls,
        preset: str,
        root: Path | str,
        tables: Sequence[str] | None = None,
        dataset_name: str | None = None,
        **kwargs,
    ) -> Dataset:
        """Builds a dataset from a bundled preset, loading its default tables plus any in `tables`.

        Examples:
            >>> Dataset.from_preset("eicu", "/data/eicu")
            Traceback (most recent call last):
                ...
            KeyError: 'Unknown dataset preset eicu; options are mimic3, mimic4_ehr'
        """
        P = get_preset(preset)
        dataset = cls(
            root=root,
            tables=P.resolve_tables(tables),
            dataset_name=dataset_name or P.name,
            config=P.load_config(),
            **kwargs,
        )
        dataset.default_task_target = P.default_task
        return dataset

    def _scan_source(self, fp: Path, separator: str) -> pl.LazyFrame:
        lf = pl.scan_parquet(ensure_cache(fp, separator=separator))
        return lf.rename({c: c.lower() for c in lf.collect_schema().names()})

    def _resolve_source(self, file_path: str) -> tuple[Path, str]:
        return find_path_with_fallback(self.root / file_path)

    @staticmethod
    def _check_columns(schema: pl.Schema, columns: Sequence[str], source: str):
        missing = [c for c in columns if c not in schema]
        if missing:
            raise ValueError(
                f"Column(s) {', '.join(missing)} not found in {source} (available: {', '.join(schema.names())})"
            )

    def _apply_join(self, table_name: str, lf: pl.LazyFrame, join: JoinConfig) -> pl.LazyFrame:
        join_fp, join_separator = self._resolve_source(join.file_path)
        join_lf = self._scan_source(join_fp, join_separator)

        join_schema = join_lf.collect_schema()
        self._check_columns(join_schema, [join.on, *join.columns], f"join table {join_fp} of {table_name}")

        schema = lf.collect_schema()
        self._check_columns(schema, [join.on], f"table {table_name}")

        join_cols = [c for c in join.columns if c != join.on]
        overlapping = [c for c in join_cols if c in schema]
        if overlapping:
            logger.debug(f"Replacing {', '.join(overlapping)} of {table_name} with values joined from {join_fp}")
            lf = lf.drop(overlapping)

        join_lf = join_lf.select(join.on, *join_cols)
        if join_schema[join.on] != schema[join.on]:
            join_lf = join_lf.with_columns(pl.col(join.on).cast(schema[join.on], strict=False))

        logger.debug(f"Joining {join_fp.name} onto {table_name} on {join.on} ({join.how})")
        return lf.join(
            join_lf,
            on=join.on,
            how=join.how.polars_how,
            coalesce=True,
            maintain_order=join.how.polars_maintain_order,
        )

    @staticmethod
    def _timestamp_expr(cfg: TableConfig, schema: pl.Schema) -> pl.Expr:
        ts_cols = cfg.timestamp_columns
        if not ts_cols:
            return pl.lit(None, dtype=TIMESTAMP_DTYPE)

        if len(ts_cols) > 1:
            ts = pl.concat_str([pl.col(c).cast(pl.Utf8) for c in ts_cols], separator=" ")
            dtype = pl.Utf8
        else:
            ts = pl.col(ts_cols[0])
            dtype = schema[ts_cols[0]]

        if dtype == pl.Date or isinstance(dtype, pl.Datetime):
            return ts.cast(TIMESTAMP_DTYPE)
        if dtype != pl.Utf8:
            ts = ts.cast(pl.Utf8)
        if cfg.timestamp_format is not None:
            return ts.str.strptime(TIMESTAMP_DTYPE, cfg.timestamp_format, strict=False)
        return ts.str.to_datetime(time_unit="us", strict=False)

    @TimeableMixin.TimeAs
    def load_table(self, table_name: str) -> pl.LazyFrame:
        """Returns a lazy view of one table, joined and projected into the canonical event shape.

        The file actually read (after case-insensitive and extension fallback resolution) is recorded in
        `source_paths`.

        Raises:
            KeyError: If `table_name` is not in the config.
            ValueError: If a declared column does not exist in the table or its join tables.
            FileNotFoundError: If the table or one of its join tables can't be found.
        """
        table_name = table_name.lower()
        cfg = self.config[table_name]

        source_fp, separator = self._resolve_source(cfg.file_path)
        self.source_paths[table_name] = source_fp
        logger.debug(f"Loading table {table_name} from {source_fp}")

        lf = self._scan_source(source_fp, separator)
        for join in cfg.join:
            lf = self._apply_join(table_name, lf, join)

        schema = lf.collect_schema()
        declared = [*cfg.attributes, *cfg.timestamp_columns]
        if cfg.patient_id is not None:
            declared.append(cfg.patient_id)
        self._check_columns(schema, declared, f"table {table_name} ({source_fp})")

        if cfg.patient_id is not None:
            patient_id = pl.col(cfg.patient_id).cast(pl.Utf8)
        else:
            patient_id = pl.int_range(0, pl.len()).cast(pl.Utf8)

        return lf.select(
            patient_id.alias(PATIENT_ID_COL),
            pl.lit(table_name, dtype=pl.Utf8).alias(EVENT_TYPE_COL),
            self._timestamp_expr(cfg, schema).alias(TIMESTAMP_COL),
            *[pl.col(a).alias(attribute_key(table_name, a)) for a in cfg.attributes],
        )

    @TimeableMixin.TimeAs
    def load_data(self) -> pl.LazyFrame:
        """Returns the lazy union of all loaded tables, sorted by patient and then timestamp (nulls first).

        Columns absent from a table are added to it as typed null columns before the union. In development
        mode the union is restricted to its first `dev_limit` distinct patients before anything is collected.
        """
        frames = [self.load_table(t) for t in self.tables]

        dtypes = {}
        for lf in frames:
            for col, dtype in lf.collect_schema().items():
                dtypes.setdefault(col, dtype)

        aligned = []
        for lf in frames:
            have = set(lf.collect_schema().names())
            missing = [pl.lit(None, dtype=dtypes[c]).alias(c) for c in dtypes if c not in have]
            aligned.append(lf.with_columns(missing).select(list(dtypes)))

        df = pl.concat(aligned, how="vertical_relaxed")

        if self.dev:
            logger.info(f"[dev] Limiting to the first {self.dev_limit} patients")
            dev_ids = df.select(PATIENT_ID_COL).unique(maintain_order=True).head(self.dev_limit)
            df = df.join(dev_ids, on=PATIENT_ID_COL, how="semi", maintain_order="left")

        return df.sort([PATIENT_ID_COL, TIMESTAMP_COL], nulls_last=False, maintain_order=True)

    @TimeableMixin.TimeAs
    def materialize(self) -> pl.DataFrame:
        """Collects the global event stream, at most once per instance until `invalidate` is called."""
        if self._global_event_df is None:
            logger.info(f"Collecting global event dataframe for {self.dataset_name}...")
            self._global_event_df = self.global_event_lf.collect()
        return self._global_event_df

    @property
    def global_event_df(self) -> pl.DataFrame:
        return self.materialize()

    def invalidate(self):
        """Discards the materialized event table and all views derived from it."""
        logger.debug(f"Invalidating materialized events of {self.dataset_name}")
        self._global_event_df = None
        self._patient_slices = None

    @property
    def patient_slices(self) -> dict[str, tuple[int, int]]:
        """Maps each patient id to the (offset, length) of its contiguous rows in `global_event_df`."""
        if self._patient_slices is None:
            counts = self.global_event_df.group_by(PATIENT_ID_COL, maintain_order=True).len()
            lengths = counts["len"].to_list()
            offsets = (counts["len"].cum_sum() - counts["len"]).to_list()
            self._patient_slices = dict(zip(counts[PATIENT_ID_COL].to_list(), zip(offsets, lengths)))
        return self._patient_slices

    def unique_patient_ids(self) -> list[str]:
        return list(self.patient_slices)

    def get_patient(self, patient_id: str) -> Patient:
        """Returns the `Patient` holding all events of `patient_id`.

        Raises:
            KeyError: If `patient_id` has no events in this dataset.
        """
        try:
            offset, length = self.patient_slices[patient_id]
        except KeyError as e:
            raise KeyError(f"Patient {patient_id} not found in {self.dataset_name}") from e
        return Patient(patient_id=patient_id, data_source=self.global_event_df.slice(offset, length))

    def iter_patients(self, df: pl.DataFrame | None = None) -> Generator[Patient, None, None]:
        """Yields a `Patient` for each patient in `df` (by default, the global event table)."""
        if df is None:
            df = self.global_event_df

        patient_dfs = df.partition_by(PATIENT_ID_COL, maintain_order=True)
        if self.dev:
            patient_dfs = patient_dfs[: self.dev_limit]

        for patient_df in self._tqdm(patient_dfs):
            yield Patient(patient_id=patient_df[PATIENT_ID_COL][0], data_source=patient_df)

    def stats(self) -> dict[str, Any]:
        """Logs and returns summary statistics of the dataset."""
        out = {
            "dataset_name": self.dataset_name,
            "dev": self.dev,
            "n_patients": len(self.patient_slices),
            "n_events": self.global_event_df.height,
        }
        logger.info(
            f"Dataset: {out['dataset_name']}\n"
            f"Dev mode: {out['dev']}\n"
            f"Patients: {out['n_patients']}\n"
            f"Events: {out['n_events']}"
        )
        return out

    def default_task(self):
        """Returns the task `set_task` runs when none is given, or `None` if this dataset has no default.

        The default is instantiated from `default_task_target`, an import path such as
        ``"my_project.tasks.Mortality"``, which presets may set.
        """
        if self.default_task_target is None:
            return None
        return hydra.utils.instantiate({"_target_": self.default_task_target})

    def _generate_samples(
        self,
        task,
        df: pl.DataFrame,
        id_chunks: list[list[str]],
        map_fn: Callable,
    ) -> list[dict]:
        samples = []
        for chunk_ids in self._tqdm(id_chunks):
            chunk_df = df.filter(pl.col(PATIENT_ID_COL).is_in(chunk_ids))
            units = [(task, pdf) for pdf in chunk_df.partition_by(PATIENT_ID_COL, maintain_order=True)]
            for patient_samples in map_fn(_call_task_on_patient, units):
                samples.extend(patient_samples)
        return samples

    @TimeableMixin.TimeAs
    def set_task(
        self,
        task=None,
        num_workers: int = 1,
        chunk_size: int = 1000,
        cache_dir: Path | str | None = None,
    ) -> SampleDataset:
        """Generates the samples of `task` over all patients and builds them into a `SampleDataset`.

        The task's `pre_filter` is applied to the global event table, then patients are processed in chunks of
        `chunk_size`, either in this process or on a pool of `num_workers` worker processes. Each unit of work
        sent to a worker holds only the task and one patient's events. Samples are returned in patient
        enumeration order regardless of `chunk_size` or `num_workers`.

        Args:
            task: A `BaseTask` (or any picklable object with the same interface). Defaults to `default_task()`.
            num_workers: The number of worker processes. With 1, patients are processed sequentially. Workers
                are started with the ``spawn`` method, so tasks must be importable by module path.
            chunk_size: The number of patients whose events are split out at once.
            cache_dir: If a sample dataset has already been saved here, it is reloaded and nothing is generated.
                Otherwise the generated sample dataset is saved here.

        Raises:
            ValueError: If no task is given and the dataset has no default task, or `num_workers` or
                `chunk_size` are not positive.
        """
        if task is None:
            task = self.default_task()
            if task is None:
                raise ValueError(f"No task given and {self.dataset_name} has no default task!")
        if num_workers < 1:
            raise ValueError(f"num_workers must be a positive integer; got {num_workers}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be a positive integer; got {chunk_size}")

        task_name = getattr(task, "task_name", type(task).__name__)
        logger.info(f"Setting task {task_name} for {self.dataset_name}")

        if cache_dir is not None:
            cache_dir = Path(cache_dir)
            if (cache_dir / SAMPLE_DATASET_MANIFEST_FN).is_file():
                logger.info(f"Loading cached sample dataset from {cache_dir}")
                return load_sample_dataset(cache_dir)

        filtered_df = task.pre_filter(self.global_event_df)
        if isinstance(filtered_df, pl.LazyFrame):
            filtered_df = filtered_df.collect()

        patient_ids = filtered_df[PATIENT_ID_COL].unique(maintain_order=True).to_list()
        if self.dev:
            patient_ids = patient_ids[: self.dev_limit]

        id_chunks = [patient_ids[i : i + chunk_size] for i in range(0, len(patient_ids), chunk_size)]
        logger.info(f"Generating samples for {len(patient_ids)} patients in {len(id_chunks)} chunk(s)")

        if num_workers > 1:
            # Forked children deadlock in polars' thread pool, so workers are always spawned.
            with multiprocessing.get_context("spawn").Pool(processes=num_workers) as pool:
                samples = self._generate_samples(task, filtered_df, id_chunks, pool.map)
        else:
            samples = self._generate_samples(task, filtered_df, id_chunks, map)

        logger.info(f"Generated {len(samples)} samples")
        return SampleDataset(
            samples,
            input_schema=task.input_schema,
            output_schema=task.output_schema,
            dataset_name=self.dataset_name,
            task_name=task_name,
            save_path=cache_dir,
        )
