"""A processor for irregularly sampled, multivariate time-series."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import numpy as np
import torch
from loguru import logger

from ..utils import StrEnum
from .base import FeatureProcessor

MIN_STD = 1e-8


class ImputeStrategy(StrEnum):
    """How gaps left by resampling are filled."""

    FORWARD_FILL = "forward_fill"
    """Carry the last observed value of each feature forward (features start at ``0.``)."""

    ZERO = "zero"
    """Fill every gap with ``0.``."""


class TimeseriesProcessor(FeatureProcessor):
    """Resamples an irregular time-series onto a regular grid, imputes gaps and z-score normalizes it.

    Values are ``(timestamps, values)`` pairs, where ``values`` is a ``[n_observations, n_features]`` matrix
    (or a vector, for a single feature). Observations are placed on a grid of step `sampling_rate` starting at
    the first timestamp; when several observations fall in one step the last one wins.

    Args:
        sampling_rate: The grid step.
        impute_strategy: How empty grid steps (and missing observations) are filled.
        normalize: Whether to z-score each feature with the mean and standard deviation fit over all samples.

    Examples:
        >>> from datetime import datetime
        >>> P = TimeseriesProcessor(impute_strategy="forward_fill", normalize=False)
        >>> ts = [datetime(2020, 1, 1, 0), datetime(2020, 1, 1, 2), datetime(2020, 1, 1, 3, 30)]
        >>> P.process((ts, [[1.0, 10.0], [2.0, float("nan")], [3.0, 30.0]]))
        tensor([[ 1., 10.],
                [ 1., 10.],
                [ 2., 10.],
                [ 3., 30.]])
        >>> TimeseriesProcessor(impute_strategy="mean")
        Traceback (most recent call last):
            ...
        ValueError: Unsupported imputation strategy mean; must be in forward_fill, zero
    """

    def __init__(
        self,
        sampling_rate: timedelta = timedelta(hours=1),
        impute_strategy: ImputeStrategy | str = ImputeStrategy.FORWARD_FILL,
        normalize: bool = True,
    ):
        if sampling_rate <= timedelta(0):
            raise ValueError(f"sampling_rate must be positive; got {sampling_rate}")
        try:
            impute_strategy = ImputeStrategy(impute_strategy)
        except ValueError as e:
            raise ValueError(
                f"Unsupported imputation strategy {impute_strategy}; must be in {', '.join(ImputeStrategy.values())}"
            ) from e

        self.sampling_rate = sampling_rate
        self.impute_strategy = impute_strategy
        self.normalize = normalize
        self.feature_means = None
        self.feature_stds = None
        self._size = None

    @staticmethod
    def _as_matrix(values: Any) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        return values.reshape(-1, 1) if values.ndim == 1 else values

    def fit(self, samples: list[dict[str, Any]], field: str) -> TimeseriesProcessor:
        if not self.normalize:
            return self

        matrices = []
        for value in self._field_values(samples, field):
            timestamps, values = value
            if len(timestamps) > 0:
                matrices.append(self._as_matrix(values))

        if not matrices:
            logger.warning(f"No valid timeseries data found for {field} during fit. Normalization is disabled.")
            self.normalize = False
            return self

        combined = np.concatenate(matrices, axis=0)
        n_features = combined.shape[1]

        means = np.zeros(n_features)
        stds = np.ones(n_features)
        for f in range(n_features):
            vals = combined[:, f]
            vals = vals[~np.isnan(vals)]
            if len(vals) > 0:
                means[f] = vals.mean()
            if len(vals) > 1:
                stds[f] = vals.std(ddof=1)

        stds[np.isnan(stds) | (stds < MIN_STD)] = 1.0
        self.feature_means = means
        self.feature_stds = stds
        self._size = n_features

        logger.debug(
            f"Fitted {self}: means range [{means.min():.4f}, {means.max():.4f}], "
            f"stds range [{stds.min():.4f}, {stds.max():.4f}]"
        )
        return self

    def process(self, value: tuple[Any, Any]) -> torch.Tensor:
        timestamps, values = value
        if len(timestamps) == 0:
            raise ValueError("Timestamps list is empty.")

        timestamps = np.asarray(timestamps, dtype="datetime64[us]")
        values = self._as_matrix(values)
        if values.shape[0] != len(timestamps):
            raise ValueError(f"Got {len(timestamps)} timestamps but {values.shape[0]} rows of values")

        step = np.timedelta64(self.sampling_rate)
        step_idx = ((timestamps - timestamps[0]) // step).astype(np.int64)
        n_steps = int(step_idx[-1]) + 1

        sampled = np.full((n_steps, values.shape[1]), np.nan)
        in_grid = (step_idx >= 0) & (step_idx < n_steps)
        sampled[step_idx[in_grid]] = values[in_grid]

        match self.impute_strategy:
            case ImputeStrategy.FORWARD_FILL:
                last = np.zeros(values.shape[1])
                for t in range(n_steps):
                    missing = np.isnan(sampled[t])
                    sampled[t, missing] = last[missing]
                    last = sampled[t]
            case ImputeStrategy.ZERO:
                sampled = np.nan_to_num(sampled, nan=0.0)

        if self.normalize and self.feature_means is not None:
            sampled = (sampled - self.feature_means) / self.feature_stds

        if self._size is None:
            self._size = values.shape[1]

        return torch.tensor(sampled, dtype=torch.float32)

    def size(self) -> int | None:
        return self._size

    def __repr__(self) -> str:
        if not self.normalize:
            norm_str = "normalize=False"
        elif self.feature_means is None:
            norm_str = "normalize=True (not fitted)"
        else:
            norm_str = f"normalize=True (fitted with {len(self.feature_means)} features)"
        return (
            f"TimeseriesProcessor(sampling_rate={self.sampling_rate}, "
            f"impute_strategy={self.impute_strategy}, {norm_str})"
        )
