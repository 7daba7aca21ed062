"""
Anchor selection for SOUP.

Anchors are samples whose local neighbourhood is homogeneous under a coarse
grouping of the data. They seed the cluster centers of the membership solver
and are discarded afterwards. The scoring heuristic is configurable through
``PurityPolicy``; the contract is only that at least K distinguishable groups
of anchors are produced, or ``InsufficientAnchorsError`` is raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from sklearn.cluster import AgglomerativeClustering, KMeans
from sklearn.neighbors import NearestNeighbors

from ..data_io import MatrixLike, as_data_matrix
from ..errors import InsufficientAnchorsError


__all__ = ["PurityPolicy", "AnchorSet", "select_anchors"]

logger = logging.getLogger("soupclust")


@dataclass(frozen=True)
class PurityPolicy:
    """
    Tuning knobs of the anchor selector.

    Attributes
    ----------
    n_neighbors:
        Neighbourhood size used for the purity score.
    threshold:
        Minimum fraction of neighbours sharing a sample's group for the
        sample to count as an anchor.
    coarse_factor:
        The coarse grouping uses ``coarse_factor * K`` groups.
    separation:
        Coarse groups whose centroids are closer than ``separation`` times the
        pooled within-group spread are treated as one group. On continuous
        (trajectory-like) data the number of distinguishable groups is set by
        this value rather than by K; lower it (e.g. 0.25) to cut a path into
        more pieces.
    min_group_size:
        Minimum number of anchors for a group to survive.
    n_init:
        Number of k-means restarts for the coarse grouping.
    """

    n_neighbors: int = 10
    threshold: float = 0.8
    coarse_factor: int = 2
    separation: float = 2.0
    min_group_size: int = 3
    n_init: int = 10

    def __post_init__(self) -> None:
        if self.n_neighbors < 1:
            raise ValueError("n_neighbors must be positive.")
        if not 0.0 < self.threshold <= 1.0:
            raise ValueError("threshold must be in (0, 1].")
        if self.coarse_factor < 1:
            raise ValueError("coarse_factor must be positive.")
        if self.separation <= 0:
            raise ValueError("separation must be positive.")
        if self.min_group_size < 1:
            raise ValueError("min_group_size must be positive.")
        if self.n_init < 1:
            raise ValueError("n_init must be positive.")


@dataclass(frozen=True)
class AnchorSet:
    """
    Sparse assignment of anchor samples to clusters.

    Attributes
    ----------
    indices:
        Row indices of the anchor samples, increasing.
    labels:
        Cluster id in [0, n_clusters) of each anchor.
    n_clusters:
        Number of target clusters K.
    scores:
        Optional purity score of every sample (not only anchors).
    """

    indices: np.ndarray
    labels: np.ndarray
    n_clusters: int
    scores: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if self.indices.shape != self.labels.shape:
            raise ValueError("indices and labels must have the same length.")
        if (self.labels < 0).any() or (self.labels >= self.n_clusters).any():
            raise ValueError("Anchor labels must be in [0, n_clusters).")
        missing = np.setdiff1d(np.arange(self.n_clusters), self.labels)
        if missing.size:
            raise ValueError(f"Clusters without anchors: {missing.tolist()}.")

    @property
    def n_anchors(self) -> int:
        return int(self.indices.size)

    def as_dict(self) -> Dict[int, int]:
        """Mapping anchor index -> cluster id."""
        return {int(i): int(k) for i, k in zip(self.indices, self.labels)}


def select_anchors(
    data: MatrixLike,
    n_clusters: int,
    *,
    policy: Optional[PurityPolicy] = None,
    random_state: Optional[int] = None,
) -> AnchorSet:
    """
    Select confidently pure samples for each of ``n_clusters`` clusters.

    Parameters
    ----------
    data
        Expression matrix, samples in rows.
    n_clusters
        Target number of clusters K (at least 2).
    policy
        Heuristic parameters; defaults to ``PurityPolicy()``.
    random_state
        Seed of the coarse k-means grouping, the only randomised step.

    Raises
    ------
    InsufficientAnchorsError
        If fewer than ``n_clusters`` groups keep enough anchors.
    """

    policy = policy or PurityPolicy()
    values = as_data_matrix(data).values
    n_samples = values.shape[0]
    if n_clusters < 2:
        raise ValueError("n_clusters must be at least 2.")
    if n_samples < n_clusters:
        raise ValueError(f"Need at least {n_clusters} samples, got {n_samples}.")

    standardized = _standardize_rows(values)
    n_coarse = min(n_samples, policy.coarse_factor * n_clusters)
    coarse = KMeans(
        n_clusters=n_coarse,
        n_init=policy.n_init,
        random_state=random_state,
    ).fit_predict(standardized)
    groups = _consolidate_groups(standardized, coarse, separation=policy.separation)

    scores = _purity_scores(standardized, groups, n_neighbors=policy.n_neighbors)
    pure = scores >= policy.threshold
    sizes = np.bincount(groups[pure], minlength=int(groups.max()) + 1)
    surviving = np.flatnonzero(sizes >= policy.min_group_size)
    logger.debug(
        "K=%d: %d coarse groups, %d distinguishable, %d surviving with %d anchors",
        n_clusters,
        n_coarse,
        int(groups.max()) + 1,
        surviving.size,
        int(sizes[surviving].sum()),
    )
    if surviving.size < n_clusters:
        raise InsufficientAnchorsError(n_clusters, surviving.size)

    indices = np.flatnonzero(pure & np.isin(groups, surviving))
    labels = _assign_super_clusters(
        standardized,
        groups,
        indices,
        surviving,
        n_clusters=n_clusters,
    )
    return AnchorSet(
        indices=indices,
        labels=_renumber_by_first_appearance(labels),
        n_clusters=n_clusters,
        scores=scores,
    )


def _standardize_rows(values: np.ndarray) -> np.ndarray:
    # Euclidean distance between standardised rows is sqrt(2 - 2 * pearson r)
    centered = values - values.mean(axis=1, keepdims=True)
    norms = np.linalg.norm(centered, axis=1, keepdims=True)
    constant = np.flatnonzero(norms[:, 0] == 0)
    if constant.size:
        raise ValueError(f"Samples with constant expression cannot be ranked: {constant[:5].tolist()}.")
    return centered / norms


def _consolidate_groups(
    standardized: np.ndarray,
    coarse: np.ndarray,
    *,
    separation: float,
) -> np.ndarray:
    coarse_ids, member_of = np.unique(coarse, return_inverse=True)
    centroids = np.vstack([standardized[member_of == g].mean(axis=0) for g in range(coarse_ids.size)])
    residuals = standardized - centroids[member_of]
    spread = float(np.sqrt((residuals ** 2).sum(axis=1).mean()))

    if coarse_ids.size < 2 or spread == 0.0:
        return _renumber_by_first_appearance(member_of)

    merged = AgglomerativeClustering(
        n_clusters=None,
        distance_threshold=separation * spread,
        linkage="average",
    ).fit_predict(centroids)
    return _renumber_by_first_appearance(merged[member_of])


def _purity_scores(standardized: np.ndarray, groups: np.ndarray, *, n_neighbors: int) -> np.ndarray:
    n_neighbors = min(n_neighbors, standardized.shape[0] - 1)
    if n_neighbors < 1:
        return np.ones(standardized.shape[0])
    # kneighbors() without a query excludes each sample from its own neighbourhood
    neighbors = NearestNeighbors(n_neighbors=n_neighbors).fit(standardized).kneighbors(return_distance=False)
    return (groups[neighbors] == groups[:, None]).mean(axis=1)


def _assign_super_clusters(
    standardized: np.ndarray,
    groups: np.ndarray,
    indices: np.ndarray,
    surviving: np.ndarray,
    *,
    n_clusters: int,
) -> np.ndarray:
    anchor_groups = groups[indices]
    if surviving.size == n_clusters:
        mapping = {int(g): k for k, g in enumerate(surviving)}
    else:
        centroids = np.vstack([standardized[indices[anchor_groups == g]].mean(axis=0) for g in surviving])
        super_labels = AgglomerativeClustering(
            n_clusters=n_clusters,
            linkage="average",
        ).fit_predict(centroids)
        mapping = dict(zip(surviving.tolist(), super_labels.tolist()))
    return np.array([mapping[int(g)] for g in anchor_groups], dtype=int)


def _renumber_by_first_appearance(labels: np.ndarray) -> np.ndarray:
    uniques, first, inverse = np.unique(labels, return_index=True, return_inverse=True)
    rank = np.empty(uniques.size, dtype=int)
    rank[np.argsort(first)] = np.arange(uniques.size)
    return rank[inverse]
