"""Identity processors for fields that are passed through unencoded."""

from typing import Any

from .base import FeatureProcessor


class RawProcessor(FeatureProcessor):
    """Returns values unchanged.

    Examples:
        >>> RawProcessor().process({"a": 1})
        {'a': 1}
    """

    def process(self, value: Any) -> Any:
        return value


class TextProcessor(RawProcessor):
    """Returns free text unchanged; tokenization is left to downstream models."""
