"""Processors for prediction targets: binary, multi-class, multi-label and regression labels."""

from __future__ import annotations

from typing import Any

import torch
from loguru import logger

from .base import FeatureProcessor


def _sorted_labels(labels) -> list:
    """Returns the distinct labels, sorted naturally if they are mutually comparable, otherwise by string.

    Examples:
        >>> _sorted_labels([3, 1, 3, 2])
        [1, 2, 3]
        >>> _sorted_labels(["b", 1, "a"])
        [1, 'a', 'b']
    """
    distinct = list(dict.fromkeys(labels))
    try:
        return sorted(distinct)
    except TypeError:
        return sorted(distinct, key=str)


class _VocabLabelProcessor(FeatureProcessor):
    def __init__(self):
        self.label_vocab: dict[Any, int] = {}

    def _index(self, label: Any) -> int:
        try:
            return self.label_vocab[label]
        except KeyError as e:
            raise KeyError(f"Label {label!r} not seen during fit; vocab is {list(self.label_vocab)}") from e

    def size(self) -> int | None:
        return len(self.label_vocab)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(label_vocab_size={len(self.label_vocab)})"


class BinaryLabelProcessor(_VocabLabelProcessor):
    """Encodes a two-valued label as a float tensor of shape ``[1]``.

    The smaller label (``0``, ``False`` or the first in sort order) is encoded as ``0.``.

    Examples:
        >>> P = BinaryLabelProcessor().fit([{"y": "yes"}, {"y": "no"}, {"y": "yes"}], "y")
        >>> P.label_vocab
        {'no': 0, 'yes': 1}
        >>> P.process("yes")
        tensor([1.])
        >>> BinaryLabelProcessor().fit([{"y": 1}, {"y": 1}], "y")
        Traceback (most recent call last):
            ...
        ValueError: Expected 2 unique labels for y, got 1
    """

    def fit(self, samples: list[dict[str, Any]], field: str) -> BinaryLabelProcessor:
        labels = _sorted_labels(self._field_values(samples, field))
        if len(labels) != 2:
            raise ValueError(f"Expected 2 unique labels for {field}, got {len(labels)}")
        self.label_vocab = {label: i for i, label in enumerate(labels)}
        logger.debug(f"Label {field} vocab: {labels}")
        return self

    def process(self, value: Any) -> torch.Tensor:
        return torch.tensor([self._index(value)], dtype=torch.float32)

    def size(self) -> int | None:
        return 1


class MultiClassLabelProcessor(_VocabLabelProcessor):
    """Encodes a categorical label as a 0-d long tensor holding its index in the sorted label vocabulary.

    Examples:
        >>> P = MultiClassLabelProcessor().fit([{"y": "c"}, {"y": "a"}, {"y": "b"}], "y")
        >>> P.process("c")
        tensor(2)
        >>> P.size()
        3
    """

    def fit(self, samples: list[dict[str, Any]], field: str) -> MultiClassLabelProcessor:
        labels = _sorted_labels(self._field_values(samples, field))
        self.label_vocab = {label: i for i, label in enumerate(labels)}
        logger.debug(f"Label {field} vocab: {labels}")
        return self

    def process(self, value: Any) -> torch.Tensor:
        return torch.tensor(self._index(value), dtype=torch.long)


class MultiLabelProcessor(_VocabLabelProcessor):
    """Encodes a collection of labels as a multi-hot float tensor over the sorted label vocabulary.

    Examples:
        >>> P = MultiLabelProcessor().fit([{"y": ["a", "c"]}, {"y": ["b"]}], "y")
        >>> P.process(["c", "a"])
        tensor([1., 0., 1.])
        >>> P.process("a")
        Traceback (most recent call last):
            ...
        TypeError: Expected a list of labels for a multi-label field. Got 'a'
    """

    def fit(self, samples: list[dict[str, Any]], field: str) -> MultiLabelProcessor:
        labels = _sorted_labels(label for value in self._field_values(samples, field) for label in value)
        self.label_vocab = {label: i for i, label in enumerate(labels)}
        logger.debug(f"Label {field} vocab: {labels}")
        return self

    def process(self, value: Any) -> torch.Tensor:
        if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
            raise TypeError(f"Expected a list of labels for a multi-label field. Got {value!r}")
        target = torch.zeros(len(self.label_vocab), dtype=torch.float32)
        for label in value:
            target[self._index(label)] = 1.0
        return target


class RegressionLabelProcessor(FeatureProcessor):
    """Encodes a numeric target as a float tensor of shape ``[1]``.

    Examples:
        >>> RegressionLabelProcessor().process(2)
        tensor([2.])
    """

    def process(self, value: Any) -> torch.Tensor:
        return torch.tensor([float(value)], dtype=torch.float32)

    def size(self) -> int | None:
        return 1
