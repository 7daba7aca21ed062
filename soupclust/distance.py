"""
Scale-invariant dissimilarity between samples and cluster centers.

Clusters can differ in total expression, so distances are taken between
unit-normalised rows: a global multiplicative factor on either vector does not
change the result.
"""

from __future__ import annotations

import numpy as np


__all__ = ["unit_rows", "scale_invariant_distance", "nearest_center"]


def unit_rows(values: np.ndarray) -> np.ndarray:
    """
    Return ``values`` with every row rescaled to unit L2 norm.
    """

    values = np.atleast_2d(np.asarray(values, dtype=np.float64))
    norms = np.linalg.norm(values, axis=1, keepdims=True)
    if (norms == 0).any():
        rows = np.flatnonzero(norms[:, 0] == 0)
        raise ValueError(f"Cannot normalise all-zero rows: {rows[:5].tolist()}.")
    return values / norms


def scale_invariant_distance(samples: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """
    Squared Euclidean distance between unit-normalised rows.

    Parameters
    ----------
    samples
        Array of shape (n_samples, n_features).
    centers
        Array of shape (n_clusters, n_features).

    Returns
    -------
    np.ndarray
        Shape (n_samples, n_clusters), values in [0, 4].
    """

    samples_u = unit_rows(samples)
    centers_u = unit_rows(centers)
    if samples_u.shape[1] != centers_u.shape[1]:
        raise ValueError("samples and centers must share the feature dimension.")
    # ||a - b||^2 = 2 - 2 a.b for unit vectors
    distances = 2.0 - 2.0 * (samples_u @ centers_u.T)
    return np.clip(distances, 0.0, 4.0)


def nearest_center(samples: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """Index of the closest center for each sample, ties to the lowest index."""
    return np.argmin(scale_invariant_distance(samples, centers), axis=1)
