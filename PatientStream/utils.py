"""Small helpers shared across PatientStream: string enums and JSON-serializable config containers."""

from __future__ import annotations

import dataclasses
import enum
import json
from pathlib import Path
from typing import Any, TypeVar


class StrEnum(str, enum.Enum):
    """A string-valued enum whose members compare equal to their (by default lower-cased) names.

    This lets config values read from YAML (e.g., ``how: "inner"`` or ``impute_strategy: "zero"``) be
    compared to members directly.

    Raises:
        TypeError: If a member is given a non-string value.

    Examples:
        >>> class Fill(StrEnum):
        ...     FORWARD_FILL = enum.auto()
        ...     Zero = "Zero"
        >>> Fill.FORWARD_FILL == "forward_fill"
        True
        >>> str(Fill.Zero)
        'Zero'
        >>> Fill.values()
        ['forward_fill', 'Zero']
    """

    def __new__(cls, value, *args, **kwargs):
        if not isinstance(value, (str, enum.auto)):
            raise TypeError(f"Values of StrEnums must be strings: {value!r} is a {type(value)}")
        return super().__new__(cls, value, *args, **kwargs)

    def __str__(self):
        return str(self.value)

    def _generate_next_value_(name, *_):
        return name.lower()

    @classmethod
    def values(cls) -> list[str]:
        """The string values of all members, in definition order; handy for error messages."""
        return [member.value for member in cls]


JSONABLE_INSTANCE_T = TypeVar("JSONABLE_INSTANCE_T", bound="JSONableMixin")


class JSONableMixin:
    """Adds dictionary and JSON file round-trips to config containers.

    Dataclasses get `to_dict` for free; other subclasses must define it. `from_dict` passes the dictionary to
    the constructor as keyword arguments, so subclasses with nested containers override it.
    """

    @classmethod
    def from_dict(cls: type[JSONABLE_INSTANCE_T], as_dict: dict) -> JSONABLE_INSTANCE_T:
        return cls(**as_dict)

    def to_dict(self) -> dict[str, Any]:
        """Returns a plain dictionary version of this object.

        Raises:
            NotImplementedError: If the subclass is not a dataclass and does not define `to_dict`.

        Examples:
            >>> @dataclasses.dataclass
            ... class Table(JSONableMixin):
            ...     file_path: str
            >>> Table("PATIENTS.csv.gz").to_dict()
            {'file_path': 'PATIENTS.csv.gz'}
        """
        if dataclasses.is_dataclass(self):
            return dataclasses.asdict(self)
        raise NotImplementedError("This must be overwritten in non-dataclass derived classes!")

    def to_json_file(self, fp: Path, do_overwrite: bool = False):
        """Writes `to_dict()` as JSON to `fp`.

        Raises:
            FileExistsError: If `fp` exists and `do_overwrite` is `False`.
        """
        if (not do_overwrite) and fp.exists():
            raise FileExistsError(f"{fp} exists and do_overwrite = {do_overwrite}")
        with open(fp, mode="w") as f:
            json.dump(self.to_dict(), f)

    @classmethod
    def from_json_file(cls: type[JSONABLE_INSTANCE_T], fp: Path) -> JSONABLE_INSTANCE_T:
        with open(fp) as f:
            return cls.from_dict(json.load(f))
