"""The interface tasks implement to turn patients into samples."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import polars as pl

from ..data.patient import Patient


class BaseTask(ABC):
    """The base class for sample-generating tasks.

    A task declares the schemas of the samples it produces, optionally narrows the global event table before
    patients are split out of it (`pre_filter`) and maps each patient to zero or more samples (`__call__`).
    Tasks may be sent to worker processes, so subclasses must be picklable (defined at module level).

    Attributes:
        task_name: The name of the task.
        input_schema: Maps input sample fields to processor type names.
        output_schema: Maps output sample fields to processor type names.

    Examples:
        >>> class CountEvents(BaseTask):
        ...     task_name = "count_events"
        ...     input_schema = {"n_events": "regression"}
        ...     output_schema = {}
        ...     def __call__(self, patient):
        ...         return [{"patient_id": patient.patient_id, "n_events": len(patient)}]
        >>> T = CountEvents()
        >>> df = pl.DataFrame({"patient_id": ["1", "1"], "event_type": ["a", "b"], "timestamp": [None, None]})
        >>> T(Patient("1", df))
        [{'patient_id': '1', 'n_events': 2}]
        >>> T
        CountEvents(task_name='count_events')
    """

    task_name: str = ""
    input_schema: dict[str, str] = {}
    output_schema: dict[str, str] = {}

    def __init__(
        self,
        task_name: str | None = None,
        input_schema: dict[str, str] | None = None,
        output_schema: dict[str, str] | None = None,
    ):
        if task_name is not None:
            self.task_name = task_name
        if input_schema is not None:
            self.input_schema = dict(input_schema)
        if output_schema is not None:
            self.output_schema = dict(output_schema)

        if not self.task_name:
            self.task_name = self.__class__.__name__

    def pre_filter(self, df: pl.DataFrame) -> pl.DataFrame | pl.LazyFrame:
        """Narrows the global event table (rows or columns) before patients are extracted. Defaults to `df`."""
        return df

    @abstractmethod
    def __call__(self, patient: Patient) -> list[dict[str, Any]]:
        """Returns the samples generated from `patient`. Each must hold ``patient_id``.

        Must be implemented by a sub-class.
        """
        raise NotImplementedError("Subclass must implement abstract method")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(task_name={self.task_name!r})"
