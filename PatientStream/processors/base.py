"""The base class for sample field processors.

This file contains the abstract base class for field processors. It is just used to define the interface
expected by `SampleDataset`. Subclasses (defined in other files in this module) contain actual implementations
of encodings.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class FeatureProcessor(ABC):
    """The base class for processors that encode one field of every sample.

    A processor is first fit over the values of its field across all samples (e.g., to build a label vocabulary
    or feature statistics), then applied to each sample's value independently.
    """

    def fit(self, samples: list[dict[str, Any]], field: str) -> FeatureProcessor:
        """Fits the processor over the values of `field` in `samples`. By default, this does nothing.

        Arguments:
            samples: All raw samples.
            field: The name of the field this processor encodes.

        Returns:
            The fit processor.
        """
        return self

    @abstractmethod
    def process(self, value: Any) -> Any:
        """Encodes one raw field value.

        Must be implemented by a sub-class.
        """
        raise NotImplementedError("Subclass must implement abstract method")

    def size(self) -> int | None:
        """The dimensionality of the encoded values, if it is fixed; otherwise `None`."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    @staticmethod
    def _field_values(samples: list[dict[str, Any]], field: str) -> list[Any]:
        return [s[field] for s in samples if field in s]
