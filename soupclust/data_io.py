"""
Input container for expression matrices.

Every public entry point accepts a NumPy array, a pandas DataFrame (index =
samples, columns = features) or a ``DataMatrix`` and funnels it through
``as_data_matrix`` so the clustering code only ever sees one shape of input.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd


__all__ = ["DataMatrix", "MatrixLike", "as_data_matrix"]


@dataclass(frozen=True)
class DataMatrix:
    """
    Container for a sample x feature matrix and optional axis labels.

    Attributes
    ----------
    values:
        Two-dimensional float array with shape (n_samples, n_features).
    sample_ids:
        Optional identifiers aligned with the rows.
    feature_names:
        Optional identifiers aligned with the columns.
    """

    values: np.ndarray
    sample_ids: Optional[Tuple[str, ...]] = None
    feature_names: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if self.values.ndim != 2:
            raise ValueError("DataMatrix.values must be two-dimensional.")
        if self.sample_ids is not None and len(self.sample_ids) != self.values.shape[0]:
            raise ValueError("sample_ids length must match number of rows.")
        if self.feature_names is not None and len(self.feature_names) != self.values.shape[1]:
            raise ValueError("feature_names length must match number of columns.")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def sample_index(self) -> pd.Index:
        """Row labels, falling back to ``sample_<i>``."""
        if self.sample_ids is not None:
            return pd.Index(self.sample_ids, name="sample")
        return pd.Index([f"sample_{i}" for i in range(self.values.shape[0])], name="sample")

    def feature_index(self) -> pd.Index:
        """Column labels, falling back to ``feature_<j>``."""
        if self.feature_names is not None:
            return pd.Index(self.feature_names, name="feature")
        return pd.Index([f"feature_{j}" for j in range(self.values.shape[1])], name="feature")

    def subset_samples(self, indices: Sequence[int]) -> "DataMatrix":
        indices = np.asarray(indices, dtype=int)
        sample_ids = None
        if self.sample_ids is not None:
            sample_ids = tuple(np.asarray(self.sample_ids, dtype=object)[indices])
        return DataMatrix(self.values[indices], sample_ids, self.feature_names)

    def subset_features(self, features: Sequence[Union[int, str]]) -> "DataMatrix":
        """
        Restrict to the given features, given as column positions or names.
        """

        positions = self._feature_positions(features)
        feature_names = None
        if self.feature_names is not None:
            feature_names = tuple(np.asarray(self.feature_names, dtype=object)[positions])
        return DataMatrix(self.values[:, positions], self.sample_ids, feature_names)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=self.sample_index(), columns=self.feature_index())

    def _feature_positions(self, features: Sequence[Union[int, str]]) -> np.ndarray:
        features = list(features)
        if not features:
            raise ValueError("At least one feature must be selected.")
        if all(isinstance(f, (int, np.integer)) for f in features):
            positions = np.asarray(features, dtype=int)
            if (positions < 0).any() or (positions >= self.values.shape[1]).any():
                raise ValueError("Feature positions out of range.")
            return positions

        lookup = {name: j for j, name in enumerate(self.feature_index())}
        missing = [f for f in features if f not in lookup]
        if missing:
            raise KeyError(f"Unknown features: {missing[:5]}")
        return np.array([lookup[f] for f in features], dtype=int)


MatrixLike = Union[np.ndarray, pd.DataFrame, DataMatrix]


def as_data_matrix(data: MatrixLike, *, dtype: np.dtype = np.float64) -> DataMatrix:
    """
    Coerce supported inputs into a validated ``DataMatrix``.

    Raises
    ------
    ValueError
        If the matrix is not finite or has an all-zero row, for which no
        membership is defined.
    """

    if isinstance(data, DataMatrix):
        matrix = DataMatrix(
            np.asarray(data.values, dtype=dtype),
            data.sample_ids,
            data.feature_names,
        )
    elif isinstance(data, pd.DataFrame):
        numeric = data.apply(pd.to_numeric, errors="coerce")
        matrix = DataMatrix(
            numeric.to_numpy(dtype=dtype),
            tuple(str(idx) for idx in data.index),
            tuple(str(col) for col in data.columns),
        )
    else:
        values = np.asarray(data, dtype=dtype)
        if values.ndim != 2:
            raise ValueError("Expression matrix must be two-dimensional.")
        matrix = DataMatrix(values)

    values = matrix.values
    if values.size == 0:
        raise ValueError("Expression matrix is empty.")
    if not np.isfinite(values).all():
        raise ValueError("Expression matrix contains NaN or infinite values.")
    zero_rows = np.flatnonzero(~values.any(axis=1))
    if zero_rows.size:
        raise ValueError(f"Expression matrix has all-zero rows: {zero_rows[:5].tolist()}.")
    return matrix
