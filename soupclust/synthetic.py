"""
Synthetic expression matrices with known cluster structure.

Every generator takes an explicit seed so scenarios are reproducible.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple, Union

import numpy as np

ArrayLike = np.ndarray
SeedLike = Union[int, np.random.Generator]


def _as_generator(seed: Optional[SeedLike]) -> np.random.Generator:
    """Return a Generator no matter how the seed is specified."""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def _balanced_labels(n_samples: int, n_clusters: int, rng: np.random.Generator) -> np.ndarray:
    return rng.permutation(np.arange(n_samples) % n_clusters)


def _random_centers(
    n_clusters: int,
    n_features: int,
    *,
    low: float,
    high: float,
    rng: np.random.Generator,
) -> ArrayLike:
    if high <= low:
        raise ValueError("`high` must exceed `low`.")
    return rng.uniform(low, high, size=(n_clusters, n_features))


def generate_gaussian_mixture(
    *,
    means: ArrayLike,
    labels: Sequence[int],
    noise: float = 1.0,
    seed: Optional[SeedLike] = None,
) -> ArrayLike:
    """
    Draw one sample per entry of ``labels`` from N(means[label], noise^2 I).
    """

    mean_matrix = np.atleast_2d(np.asarray(means, dtype=np.float64))
    label_arr = np.asarray(labels, dtype=int)
    if label_arr.ndim != 1:
        raise ValueError("`labels` must be one-dimensional.")
    if (label_arr < 0).any() or (label_arr >= mean_matrix.shape[0]).any():
        raise ValueError("Labels must be in [0, n_components).")
    if noise < 0:
        raise ValueError("`noise` must be non-negative.")

    rng = _as_generator(seed)
    return mean_matrix[label_arr] + noise * rng.standard_normal((label_arr.size, mean_matrix.shape[1]))


def generate_blobs(
    n_samples: int,
    n_features: int,
    n_clusters: int,
    *,
    low: float = 0.0,
    high: float = 10.0,
    noise: float = 1.0,
    seed: Optional[SeedLike] = None,
) -> Tuple[ArrayLike, ArrayLike]:
    """
    Well-separated Gaussian blobs with balanced, shuffled labels.

    Blob means are drawn uniformly from [low, high] per feature, so distinct
    blobs point in different directions and stay apart after row scaling.

    Returns
    -------
    values, labels
    """

    if n_samples <= 0 or n_features <= 0 or n_clusters <= 0:
        raise ValueError("`n_samples`, `n_features` and `n_clusters` must be positive.")
    rng = _as_generator(seed)
    means = _random_centers(n_clusters, n_features, low=low, high=high, rng=rng)
    labels = _balanced_labels(n_samples, n_clusters, rng)
    values = generate_gaussian_mixture(means=means, labels=labels, noise=noise, seed=rng)
    return values, labels


def generate_soft_mixture(
    n_samples: int,
    n_features: int,
    n_clusters: int,
    *,
    concentration: float = 0.5,
    low: float = 0.0,
    high: float = 10.0,
    noise: float = 0.5,
    seed: Optional[SeedLike] = None,
) -> Tuple[ArrayLike, ArrayLike, ArrayLike]:
    """
    Samples ``theta_i C + noise`` with Dirichlet(concentration) memberships.

    Small concentrations put most samples near a single cluster.

    Returns
    -------
    values, memberships, centers
    """

    if concentration <= 0:
        raise ValueError("`concentration` must be positive.")
    rng = _as_generator(seed)
    centers = _random_centers(n_clusters, n_features, low=low, high=high, rng=rng)
    memberships = rng.dirichlet(np.full(n_clusters, concentration), size=n_samples)
    values = memberships @ centers + noise * rng.standard_normal((n_samples, n_features))
    return values, memberships, centers


def generate_trajectory(
    n_samples: int,
    n_features: int,
    n_clusters: int,
    *,
    step: float = 2.0,
    noise: float = 0.5,
    seed: Optional[SeedLike] = None,
) -> Tuple[ArrayLike, ArrayLike, ArrayLike]:
    """
    Linear developmental path: ``centers[k] = base + k * direction``.

    Each sample sits at a uniform position along the path and mixes the two
    neighbouring clusters by linear interpolation.

    Returns
    -------
    values, memberships, centers
    """

    if n_clusters < 2:
        raise ValueError("A trajectory needs at least two clusters.")
    rng = _as_generator(seed)
    base = rng.uniform(5.0, 10.0, size=n_features)
    direction = step * rng.standard_normal(n_features)
    centers = base + np.arange(n_clusters)[:, None] * direction

    positions = rng.uniform(0.0, n_clusters - 1, size=n_samples)
    lower = np.minimum(np.floor(positions).astype(int), n_clusters - 2)
    fraction = positions - lower
    memberships = np.zeros((n_samples, n_clusters))
    memberships[np.arange(n_samples), lower] = 1.0 - fraction
    memberships[np.arange(n_samples), lower + 1] = fraction

    values = memberships @ centers + noise * rng.standard_normal((n_samples, n_features))
    return values, memberships, centers
