"""Train / validation / test splits of a `SampleDataset`, by sample, patient or visit.

Every split shuffles a set of units (samples, patient ids or visit ids) and cuts it at the floor of the
cumulative ratios, so the test split absorbs any rounding remainder. Stratified splits apply the same cut
independently within each stratum of the `stratify_by` field, then shuffle each split across strata. For
patient and visit splits a unit's stratum is the maximum of its samples' values, and units without any value
form their own stratum.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Hashable, Sequence
from typing import Any

import numpy as np
import torch
from loguru import logger
from torch.utils.data import Subset

from .sample_dataset import SampleDataset

SPLIT_T = tuple[Subset, Subset, Subset] | tuple[list[int], list[int], list[int]]


def _validate_ratios(ratios: Sequence[float]):
    """Checks that `ratios` holds three non-negative proportions summing to 1.

    Examples:
        >>> _validate_ratios([0.8, 0.1, 0.1])
        >>> _validate_ratios([0.8, 0.1])
        Traceback (most recent call last):
            ...
        ValueError: Expected 3 split ratios (train, val, test); got [0.8, 0.1]
        >>> _validate_ratios([0.8, 0.3, -0.1])
        Traceback (most recent call last):
            ...
        ValueError: Split ratios must be non-negative; got [0.8, 0.3, -0.1]
        >>> _validate_ratios([0.5, 0.2, 0.2])
        Traceback (most recent call last):
            ...
        ValueError: Split ratios must sum to 1; got [0.5, 0.2, 0.2] (sum 0.9)
    """
    ratios = list(ratios)
    if len(ratios) != 3:
        raise ValueError(f"Expected 3 split ratios (train, val, test); got {ratios}")
    if any(r < 0 for r in ratios):
        raise ValueError(f"Split ratios must be non-negative; got {ratios}")
    if not math.isclose(sum(ratios), 1.0):
        raise ValueError(f"Split ratios must sum to 1; got {ratios} (sum {round(sum(ratios), 6)})")


def _cut_points(n: int, ratios: Sequence[float]) -> tuple[int, int]:
    """Returns the floor-based ends of the train and validation splits of `n` units.

    Examples:
        >>> _cut_points(10, [0.7, 0.1, 0.2])
        (7, 8)
        >>> _cut_points(7, [0.5, 0.25, 0.25])
        (3, 5)
    """
    # Rounding first keeps float noise (e.g. 0.7 + 0.1 < 0.8) from moving a cut point.
    train_end = math.floor(round(n * ratios[0], 9))
    val_end = math.floor(round(n * (ratios[0] + ratios[1]), 9))
    return train_end, val_end


def _split_units(units: list, ratios: Sequence[float], rng: np.random.Generator) -> tuple[list, list, list]:
    shuffled = [units[i] for i in rng.permutation(len(units))]
    train_end, val_end = _cut_points(len(shuffled), ratios)
    return shuffled[:train_end], shuffled[train_end:val_end], shuffled[val_end:]


def _shuffled(units: list, rng: np.random.Generator) -> list:
    return [units[i] for i in rng.permutation(len(units))]


def _stratified_split_units(
    unit_strata: dict[Any, Hashable], ratios: Sequence[float], rng: np.random.Generator
) -> tuple[list, list, list]:
    strata = defaultdict(list)
    for unit, stratum in unit_strata.items():
        strata[stratum].append(unit)

    train, val, test = [], [], []
    for stratum_units in strata.values():
        s_train, s_val, s_test = _split_units(stratum_units, ratios, rng)
        train.extend(s_train)
        val.extend(s_val)
        test.extend(s_test)

    return _shuffled(train, rng), _shuffled(val, rng), _shuffled(test, rng)


def _stratum_value(dataset: SampleDataset, index: int, key: str) -> Hashable:
    """Returns a hashable stratum for one sample's `key` field, loading it if it was persisted to disk."""
    value = dataset.get_field(index, key)
    if isinstance(value, torch.Tensor):
        if value.numel() == 1:
            return float(value.item())
        return tuple(value.flatten().tolist())
    if isinstance(value, (list, tuple, np.ndarray)):
        return tuple(np.asarray(value).flatten().tolist())
    return value


def _unit_strata(
    dataset: SampleDataset, unit_to_index: dict[str, list[int]], stratify_by: str
) -> dict[str, Hashable]:
    """Aggregates each unit's stratum as the maximum over its samples' (non-missing) values."""
    out = {}
    for unit, indices in unit_to_index.items():
        values = [_stratum_value(dataset, i, stratify_by) for i in indices]
        values = [v for v in values if v is not None]
        out[unit] = max(values) if values else None
    return out


def _check_stratify(stratify: bool, stratify_by: str | None):
    if stratify and stratify_by is None:
        raise ValueError("stratify_by must be provided when stratify is True.")


def _expand(unit_ids: list[str], unit_to_index: dict[str, list[int]]) -> list[int]:
    return [i for unit in unit_ids for i in unit_to_index[unit]]


def _as_output(dataset: SampleDataset, indices: tuple[list[int], list[int], list[int]], get_index: bool) -> SPLIT_T:
    indices = tuple([int(i) for i in idx] for idx in indices)
    if get_index:
        return indices
    return tuple(Subset(dataset, idx) for idx in indices)


def split_by_sample(
    dataset: SampleDataset,
    ratios: Sequence[float],
    seed: int | None = None,
    stratify: bool = False,
    stratify_by: str | None = None,
    get_index: bool = False,
) -> SPLIT_T:
    """Splits `dataset` into train, validation and test sets of samples.

    Args:
        dataset: The sample dataset to split.
        ratios: The train, validation and test proportions, summing to 1.
        seed: Seeds the shuffle.
        stratify: Whether to preserve the proportions of each value of `stratify_by` in every split.
        stratify_by: The sample field to stratify by.
        get_index: If `True`, return the three lists of sample indices rather than `Subset`s.

    Raises:
        ValueError: If `ratios` are invalid, or `stratify` is set without `stratify_by`.

    Examples:
        >>> samples = [{"patient_id": str(i), "label": i % 2} for i in range(10)]
        >>> sd = SampleDataset(samples, {}, {"label": "binary"})
        >>> train, val, test = split_by_sample(sd, [0.6, 0.2, 0.2], seed=1, get_index=True)
        >>> len(train), len(val), len(test)
        (6, 2, 2)
        >>> sorted(train + val + test) == list(range(10))
        True
    """
    _validate_ratios(ratios)
    _check_stratify(stratify, stratify_by)
    rng = np.random.default_rng(seed)

    units = list(range(len(dataset)))
    if stratify:
        strata = {i: _stratum_value(dataset, i, stratify_by) for i in units}
        splits = _stratified_split_units(strata, ratios, rng)
    else:
        splits = _split_units(units, ratios, rng)

    return _as_output(dataset, splits, get_index)


def split_by_patient(
    dataset: SampleDataset,
    ratios: Sequence[float],
    seed: int | None = None,
    stratify: bool = False,
    stratify_by: str | None = None,
    get_index: bool = False,
) -> SPLIT_T:
    """Splits `dataset` so that all samples of a patient land in the same split.

    Arguments are as in `split_by_sample`; ratios apply to patients rather than samples.
    """
    _validate_ratios(ratios)
    _check_stratify(stratify, stratify_by)
    rng = np.random.default_rng(seed)

    patient_to_index = dataset.patient_to_index
    if stratify:
        splits = _stratified_split_units(_unit_strata(dataset, patient_to_index, stratify_by), ratios, rng)
    else:
        splits = _split_units(list(patient_to_index), ratios, rng)

    return _as_output(dataset, tuple(_expand(ids, patient_to_index) for ids in splits), get_index)


def split_by_visit(
    dataset: SampleDataset,
    ratios: Sequence[float],
    seed: int | None = None,
    stratify: bool = False,
    stratify_by: str | None = None,
    get_index: bool = False,
) -> SPLIT_T:
    """Splits `dataset` so that all samples of a visit (record) land in the same split.

    Visits are identified by the first of ``record_id``, ``visit_id`` or ``admission_id`` present in a
    sample; samples with none of them are left out of every split. Arguments are as in `split_by_sample`;
    ratios apply to visits rather than samples.
    """
    _validate_ratios(ratios)
    _check_stratify(stratify, stratify_by)
    rng = np.random.default_rng(seed)

    record_to_index = dataset.record_to_index
    n_without_record = len(dataset) - sum(len(v) for v in record_to_index.values())
    if n_without_record:
        logger.warning(f"{n_without_record} samples have no record id and are excluded from the visit split")

    if stratify:
        splits = _stratified_split_units(_unit_strata(dataset, record_to_index, stratify_by), ratios, rng)
    else:
        splits = _split_units(list(record_to_index), ratios, rng)

    return _as_output(dataset, tuple(_expand(ids, record_to_index) for ids in splits), get_index)
