"""
Preprocessing glue applied before clustering.

SOUP itself never normalises its input. These helpers cover the usual steps
for count data and the hand-off to an external feature selector, which is
treated as a black box returning feature identifiers.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence, Union

import numpy as np

from .clustering.soup import check_scale
from .data_io import DataMatrix, MatrixLike, as_data_matrix


__all__ = ["FeatureSelector", "log_normalize", "top_variable_features", "restrict_features"]

logger = logging.getLogger("soupclust")

FeatureSelector = Callable[[DataMatrix, str], Sequence[Union[int, str]]]


def log_normalize(
    data: MatrixLike,
    *,
    target_sum: Optional[float] = 1e4,
    base: float = 2.0,
) -> DataMatrix:
    """
    Scale each sample of a count matrix to ``target_sum`` then take
    ``log_base(x + 1)``.

    With ``target_sum=None`` the median library size is used.
    """

    matrix = as_data_matrix(data)
    check_scale(matrix.values, "count")
    totals = matrix.values.sum(axis=1, keepdims=True)
    if target_sum is None:
        target_sum = float(np.median(totals))
    if target_sum <= 0:
        raise ValueError("target_sum must be positive.")

    scaled = matrix.values / totals * target_sum
    logged = np.log1p(scaled) / np.log(base)
    return DataMatrix(logged, matrix.sample_ids, matrix.feature_names)


def top_variable_features(
    data: DataMatrix,
    scale: str = "log",
    *,
    n_features: Optional[int] = None,
    percentile: float = 10.0,
) -> np.ndarray:
    """
    Column positions of the most variable features, by coefficient of
    variation. Usable as a ``FeatureSelector``.

    Parameters
    ----------
    data
        Expression matrix.
    scale
        Scale indicator (unused by this ranking, part of the selector
        signature).
    n_features
        Number of features to keep; overrides ``percentile``.
    percentile
        Percentage of features to keep when ``n_features`` is not given.
    """

    matrix = as_data_matrix(data)
    check_scale(matrix.values, scale)
    total = matrix.values.shape[1]
    if n_features is None:
        if not 0 < percentile <= 100:
            raise ValueError("percentile must be in (0, 100].")
        n_features = int(np.ceil(total * percentile / 100.0))
    if not 0 < n_features <= total:
        raise ValueError(f"n_features must be in [1, {total}].")

    variation = _coefficient_of_variation(matrix.values)
    order = np.argsort(-variation, kind="stable")
    return np.sort(order[:n_features])


def restrict_features(
    data: MatrixLike,
    selector: FeatureSelector,
    *,
    scale: str = "log",
) -> DataMatrix:
    """
    Run an external feature selector and keep only the features it returns.

    ``selector(data, scale)`` must return column positions or feature names.
    """

    matrix = as_data_matrix(data)
    check_scale(matrix.values, scale)
    selected = list(selector(matrix, scale))
    restricted = matrix.subset_features(selected)
    logger.info("Kept %d of %d features", restricted.shape[1], matrix.shape[1])
    # dropping features can leave a sample with no expression at all
    return as_data_matrix(restricted)


def _coefficient_of_variation(matrix: np.ndarray) -> np.ndarray:
    mean = matrix.mean(axis=0)
    std = matrix.std(axis=0, ddof=1) if matrix.shape[0] > 1 else np.zeros(matrix.shape[1])
    # Avoid division by zero: features with zero mean are assigned zero CV.
    with np.errstate(divide="ignore", invalid="ignore"):
        cv = np.where(mean != 0, std / np.abs(mean), 0.0)
    return cv
