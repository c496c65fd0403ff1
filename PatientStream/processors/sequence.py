"""A processor that encodes sequences of codes as indices into a growing code vocabulary."""

from __future__ import annotations

from typing import Any

import torch

from .base import FeatureProcessor

PAD_TOKEN = "<pad>"
UNK_TOKEN = "<unk>"


class SequenceProcessor(FeatureProcessor):
    """Encodes a sequence of tokens as a long tensor of vocabulary indices.

    The vocabulary starts with ``<pad>`` (index 0) and ``<unk>`` (index 1); tokens are added, in order of first
    appearance, as they are processed. Missing (`None`) tokens are encoded as ``<unk>``.

    Examples:
        >>> P = SequenceProcessor()
        >>> P.process(["A01", "B02", "A01"])
        tensor([2, 3, 2])
        >>> P.process(["B02", None, "C03"])
        tensor([3, 1, 4])
        >>> P.size()
        5
        >>> P.process("A01")
        Traceback (most recent call last):
            ...
        TypeError: Input to SequenceProcessor must be a sequence of tokens. Got 'A01'
    """

    def __init__(self):
        self.code_vocab: dict[str, int] = {PAD_TOKEN: 0, UNK_TOKEN: 1}

    def process(self, value: Any) -> torch.Tensor:
        if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
            raise TypeError(f"Input to SequenceProcessor must be a sequence of tokens. Got {value!r}")

        indices = []
        for token in value:
            token = UNK_TOKEN if token is None else str(token)
            if token not in self.code_vocab:
                self.code_vocab[token] = len(self.code_vocab)
            indices.append(self.code_vocab[token])
        return torch.tensor(indices, dtype=torch.long)

    def size(self) -> int | None:
        return len(self.code_vocab)

    def __repr__(self) -> str:
        return f"SequenceProcessor(code_vocab_size={len(self.code_vocab)})"
