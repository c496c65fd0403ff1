"""Configuration classes describing how raw clinical tables are harmonized into one event stream."""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from loguru import logger
from omegaconf import OmegaConf

from ..utils import JSONableMixin
from .types import JoinHow

BUNDLED_CONFIGS_DIR = Path(__file__).parent / "configs"


def _as_str_list(val: str | Sequence[str] | None, param: str) -> list[str]:
    """Normalizes a YAML scalar-or-list parameter into a list of strings.

    Examples:
        >>> _as_str_list(None, "attributes")
        []
        >>> _as_str_list("charttime", "timestamp")
        ['charttime']
        >>> _as_str_list(["a", "b"], "attributes")
        ['a', 'b']
        >>> _as_str_list([1], "attributes")
        Traceback (most recent call last):
            ...
        TypeError: attributes must be a string or a list of strings. Got [1]
    """
    match val:
        case None:
            return []
        case str():
            return [val]
        case list() | tuple() if all(isinstance(v, str) for v in val):
            return list(val)
        case _:
            raise TypeError(f"{param} must be a string or a list of strings. Got {val}")


@dataclasses.dataclass
class JoinConfig(JSONableMixin):
    """Describes an auxiliary table merged onto a source table before it is projected into events.

    Args:
        file_path: The path of the auxiliary table, relative to the dataset root.
        on: The key column shared by both tables.
        how: The join strategy. Defaults to a left join.
        columns: The auxiliary columns carried over. Only these (and `on`) are read from the auxiliary table.

    Raises:
        ValueError: If `file_path` or `on` are missing, or if `how` is not a recognized join strategy.

    Examples:
        >>> J = JoinConfig(file_path="ADMISSIONS.csv", on="HADM_ID", how="inner", columns=["DISCHTIME"])
        >>> J.on, str(J.how), J.columns
        ('hadm_id', 'inner', ['dischtime'])
        >>> JoinConfig(file_path="ADMISSIONS.csv", on="hadm_id", how="sideways")
        Traceback (most recent call last):
            ...
        ValueError: Invalid join how 'sideways'; must be in left, right, inner, outer
    """

    file_path: str | None = None
    on: str | None = None
    how: JoinHow = JoinHow.LEFT
    columns: list[str] = dataclasses.field(default_factory=list)

    def __post_init__(self):
        if not self.file_path:
            raise ValueError("Missing mandatory join parameter file_path!")
        if not self.on:
            raise ValueError(f"Missing mandatory join parameter on for {self.file_path}!")

        try:
            self.how = JoinHow(str(self.how).lower())
        except ValueError as e:
            raise ValueError(f"Invalid join how '{self.how}'; must be in {', '.join(JoinHow.values())}") from e

        self.on = self.on.lower()
        self.columns = [c.lower() for c in _as_str_list(self.columns, "columns")]

    def to_dict(self) -> dict[str, Any]:
        as_dict = dataclasses.asdict(self)
        as_dict["how"] = str(self.how)
        return as_dict


@dataclasses.dataclass
class TableConfig(JSONableMixin):
    """Describes how one raw table is read and projected into the canonical event shape.

    Column names are normalized to lower case, matching the lower-casing applied to source columns on load.

    Args:
        file_path: The path of the table, relative to the dataset root.
        patient_id: The patient identifier column. If `None`, a zero-based row number is used instead.
        timestamp: The timestamp column, or a list of columns whose values are concatenated (space separated)
            into one timestamp. If `None`, events of this table have a null timestamp.
        timestamp_format: An optional strptime format used to parse string timestamps.
        attributes: The columns retained as event attributes.
        join: Auxiliary tables merged on before projection.

    Examples:
        >>> T = TableConfig.from_dict({
        ...     "file_path": "DIAGNOSES_ICD.csv.gz",
        ...     "patient_id": "SUBJECT_ID",
        ...     "timestamp": "dischtime",
        ...     "attributes": ["icd9_code"],
        ...     "join": [{"file_path": "ADMISSIONS.csv.gz", "on": "hadm_id", "columns": ["dischtime"]}],
        ... })
        >>> T.patient_id, T.timestamp_columns
        ('subject_id', ['dischtime'])
        >>> str(T.join[0].how)
        'left'
        >>> TableConfig(file_path="x.csv", attributes="code")
        Traceback (most recent call last):
            ...
        TypeError: attributes must be a list of strings for x.csv. Got 'code'
    """

    file_path: str | None = None
    patient_id: str | None = None
    timestamp: str | list[str] | None = None
    timestamp_format: str | None = None
    attributes: list[str] = dataclasses.field(default_factory=list)
    join: list[JoinConfig] = dataclasses.field(default_factory=list)

    def __post_init__(self):
        if not self.file_path:
            raise ValueError("Missing mandatory table parameter file_path!")
        if not isinstance(self.attributes, (list, tuple)):
            raise TypeError(f"attributes must be a list of strings for {self.file_path}. Got {self.attributes!r}")

        if self.patient_id is not None:
            self.patient_id = self.patient_id.lower()

        match self.timestamp:
            case None:
                pass
            case str():
                self.timestamp = self.timestamp.lower()
            case _:
                ts_cols = [c.lower() for c in _as_str_list(self.timestamp, "timestamp")]
                self.timestamp = ts_cols[0] if len(ts_cols) == 1 else ts_cols

        self.attributes = [c.lower() for c in _as_str_list(self.attributes, "attributes")]
        self.join = [j if isinstance(j, JoinConfig) else JoinConfig.from_dict(j) for j in (self.join or [])]

    @property
    def timestamp_columns(self) -> list[str]:
        return _as_str_list(self.timestamp, "timestamp")

    @classmethod
    def from_dict(cls, as_dict: dict) -> TableConfig:
        as_dict = {**as_dict}
        # YAML 1.1 parsers read a bare `on` key as the boolean True.
        as_dict["join"] = [_normalize_join_keys(j) for j in as_dict.get("join") or []]
        return cls(**as_dict)

    def to_dict(self) -> dict[str, Any]:
        as_dict = dataclasses.asdict(self)
        as_dict["join"] = [j.to_dict() for j in self.join]
        return as_dict


def _normalize_join_keys(join: dict | JoinConfig) -> dict | JoinConfig:
    if isinstance(join, JoinConfig) or True not in join:
        return join
    join = {**join}
    join["on"] = join.pop(True)
    return join


@dataclasses.dataclass
class DatasetConfig(JSONableMixin):
    """The declarative description of a whole dataset: a version string and a set of named tables.

    Table names are lower-cased; they are the `event_type` of every event sourced from that table.

    Examples:
        >>> cfg = DatasetConfig.from_dict({
        ...     "version": 1.4,
        ...     "tables": {"ADMISSIONS": {"file_path": "ADMISSIONS.csv", "patient_id": "subject_id"}},
        ... })
        >>> cfg.version, list(cfg.tables)
        ('1.4', ['admissions'])
        >>> DatasetConfig(version="1.0", tables={})
        Traceback (most recent call last):
            ...
        ValueError: A dataset config must declare at least one table!
    """

    version: str = ""
    tables: dict[str, TableConfig] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        self.version = str(self.version)
        if not self.tables:
            raise ValueError("A dataset config must declare at least one table!")

        tables = {}
        for name, table in self.tables.items():
            if table is None:
                raise ValueError(f"Table {name} has an empty config!")
            if not isinstance(table, TableConfig):
                try:
                    table = TableConfig.from_dict(table)
                except (TypeError, ValueError) as e:
                    raise ValueError(f"Invalid config for table {name}: {e}") from e
            tables[name.lower()] = table
        self.tables = tables

    def __getitem__(self, table_name: str) -> TableConfig:
        try:
            return self.tables[table_name.lower()]
        except KeyError as e:
            raise KeyError(
                f"Table {table_name} not found in config (available: {', '.join(self.tables)})"
            ) from e

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "tables": {n: t.to_dict() for n, t in self.tables.items()}}

    @classmethod
    def from_dict(cls, as_dict: dict) -> DatasetConfig:
        return cls(version=as_dict.get("version", ""), tables=as_dict.get("tables") or {})


def load_yaml_config(fp: Path | str) -> DatasetConfig:
    """Loads and validates a dataset config from a YAML file.

    Raises:
        FileNotFoundError: If `fp` does not exist.
        ValueError: If the file content is not a valid dataset config.
    """
    fp = Path(fp)
    if not fp.is_file():
        raise FileNotFoundError(f"Dataset config {fp} does not exist!")

    logger.debug(f"Loading dataset config from {fp}")
    as_dict = OmegaConf.to_container(OmegaConf.load(fp), resolve=True)
    if not isinstance(as_dict, dict):
        raise ValueError(f"Dataset config {fp} must be a mapping. Got {type(as_dict)}")
    return DatasetConfig.from_dict(as_dict)


@dataclasses.dataclass(frozen=True)
class DatasetPreset:
    """A named, bundled dataset config plus the tables loaded by default for that dataset.

    Attributes:
        name: The default dataset name.
        config_path: The bundled YAML config.
        default_tables: Tables always loaded when building from this preset.
        warn_tables: Tables whose use is discouraged, mapped to the warning emitted when they are requested.
        default_task: The import path of the task class `Dataset.set_task` runs when no task is given.
    """

    name: str
    config_path: Path
    default_tables: tuple[str, ...] = ()
    warn_tables: dict[str, str] = dataclasses.field(default_factory=dict)
    default_task: str | None = None

    def resolve_tables(self, tables: Sequence[str] | None = None) -> list[str]:
        """Returns the default tables followed by any extra requested tables, deduplicated in order.

        Examples:
            >>> P = PRESETS["mimic3"]
            >>> P.resolve_tables(["LABEVENTS", "admissions"])
            ['patients', 'admissions', 'icustays', 'labevents']
        """
        out = []
        for t in [*self.default_tables, *(tables or [])]:
            t = t.lower()
            if t in self.warn_tables:
                logger.warning(self.warn_tables[t])
            if t not in out:
                out.append(t)
        return out

    def load_config(self) -> DatasetConfig:
        return load_yaml_config(self.config_path)


_COARSE_PRESCRIPTIONS_WARNING = (
    "Events from the prescriptions table only have a date timestamp (no specific time). "
    "This may affect temporal ordering of events."
)

PRESETS: dict[str, DatasetPreset] = {
    "mimic3": DatasetPreset(
        name="mimic3",
        config_path=BUNDLED_CONFIGS_DIR / "mimic3.yaml",
        default_tables=("patients", "admissions", "icustays"),
        warn_tables={"prescriptions": _COARSE_PRESCRIPTIONS_WARNING},
    ),
    "mimic4_ehr": DatasetPreset(
        name="mimic4_ehr",
        config_path=BUNDLED_CONFIGS_DIR / "mimic4_ehr.yaml",
        default_tables=("patients", "admissions", "icustays"),
        warn_tables={"prescriptions": _COARSE_PRESCRIPTIONS_WARNING},
    ),
}


def get_preset(name: str) -> DatasetPreset:
    try:
        return PRESETS[name.lower()]
    except KeyError as e:
        raise KeyError(f"Unknown dataset preset {name}; options are {', '.join(PRESETS)}") from e
