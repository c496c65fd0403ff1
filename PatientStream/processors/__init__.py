"""Field processors, selected by the type names used in task input and output schemas."""

from .base import FeatureProcessor
from .label import (
    BinaryLabelProcessor,
    MultiClassLabelProcessor,
    MultiLabelProcessor,
    RegressionLabelProcessor,
)
from .raw import RawProcessor, TextProcessor
from .sequence import SequenceProcessor
from .timeseries import ImputeStrategy, TimeseriesProcessor

PROCESSORS: dict[str, type[FeatureProcessor]] = {
    "binary": BinaryLabelProcessor,
    "multiclass": MultiClassLabelProcessor,
    "multilabel": MultiLabelProcessor,
    "regression": RegressionLabelProcessor,
    "sequence": SequenceProcessor,
    "timeseries": TimeseriesProcessor,
    "raw": RawProcessor,
    "text": TextProcessor,
}


def get_processor(name: str) -> type[FeatureProcessor]:
    """Returns the processor class registered under `name` (case-insensitive).

    Examples:
        >>> get_processor("Sequence")
        <class 'PatientStream.processors.sequence.SequenceProcessor'>
        >>> get_processor("image")
        Traceback (most recent call last):
            ...
        KeyError: "Unknown processor type 'image'; options are binary, multiclass, multilabel, regression, \
sequence, timeseries, raw, text"
    """
    if not isinstance(name, str):
        raise TypeError(f"Processor type must be a string. Got {name!r}")
    try:
        return PROCESSORS[name.lower()]
    except KeyError as e:
        raise KeyError(f"Unknown processor type {name!r}; options are {', '.join(PROCESSORS)}") from e


__all__ = [
    "FeatureProcessor",
    "BinaryLabelProcessor",
    "MultiClassLabelProcessor",
    "MultiLabelProcessor",
    "RegressionLabelProcessor",
    "RawProcessor",
    "TextProcessor",
    "SequenceProcessor",
    "TimeseriesProcessor",
    "ImputeStrategy",
    "PROCESSORS",
    "get_processor",
]
