"""
Pseudo-time ordering of samples from SOUP memberships.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from .errors import InvalidClusterIndexError
from .metrics import major_labels


__all__ = ["Timeline", "order_clusters", "estimate_timeline"]


@dataclass(frozen=True)
class Timeline:
    """
    Attributes
    ----------
    pseudotime:
        Membership-weighted mean rank of every sample, in [1, K].
    order:
        Cluster indices in visiting order, starting at the terminal cluster.
    ranks:
        Rank (1..K) of each original cluster index.
    per_cluster:
        Size and pseudo-time statistics per hard label.
    """

    pseudotime: np.ndarray
    order: np.ndarray
    ranks: np.ndarray
    per_cluster: pd.DataFrame


def _check_terminal(terminal_cluster: object, n_clusters: int) -> int:
    if isinstance(terminal_cluster, bool) or not isinstance(terminal_cluster, (int, np.integer)):
        raise InvalidClusterIndexError(terminal_cluster, n_clusters)
    if not 0 <= terminal_cluster < n_clusters:
        raise InvalidClusterIndexError(terminal_cluster, n_clusters)
    return int(terminal_cluster)


def order_clusters(centers: np.ndarray, terminal_cluster: int) -> np.ndarray:
    """
    Greedy nearest-neighbour chain through the clusters by center correlation.

    Starting from ``terminal_cluster``, repeatedly visit the unvisited cluster
    whose center correlates most with the last visited one. Ties go to the
    lowest cluster index.
    """

    centers = np.atleast_2d(np.asarray(centers, dtype=np.float64))
    n_clusters = centers.shape[0]
    current = _check_terminal(terminal_cluster, n_clusters)

    with np.errstate(divide="ignore", invalid="ignore"):
        correlation = np.corrcoef(centers) if n_clusters > 1 else np.ones((1, 1))
    # constant centers have undefined correlation and are visited last
    correlation = np.nan_to_num(correlation, nan=-np.inf)

    order = [current]
    visited = np.zeros(n_clusters, dtype=bool)
    visited[current] = True
    while len(order) < n_clusters:
        candidates = np.where(visited, -np.inf, correlation[current])
        if np.isneginf(candidates).all():
            current = int(np.flatnonzero(~visited)[0])
        else:
            current = int(np.argmax(candidates))
        visited[current] = True
        order.append(current)
    return np.asarray(order, dtype=int)


def estimate_timeline(
    memberships: np.ndarray,
    centers: np.ndarray,
    terminal_cluster: int,
    *,
    labels: Optional[np.ndarray] = None,
) -> Timeline:
    """
    Order clusters from ``terminal_cluster`` and compute per-sample pseudo-time.

    Parameters
    ----------
    memberships
        Array (n_samples, K) with rows on the simplex.
    centers
        Array (K, n_features).
    terminal_cluster
        Index in [0, K) of the cluster the ordering starts from.
    labels
        Hard labels used for the per-cluster summary; defaults to the major
        labels of ``memberships``.

    Raises
    ------
    InvalidClusterIndexError
        If ``terminal_cluster`` is outside [0, K).
    """

    memberships = np.atleast_2d(np.asarray(memberships, dtype=np.float64))
    centers = np.atleast_2d(np.asarray(centers, dtype=np.float64))
    n_clusters = memberships.shape[1]
    _check_terminal(terminal_cluster, n_clusters)
    if centers.shape[0] != n_clusters:
        raise ValueError("memberships and centers disagree on the number of clusters.")

    order = order_clusters(centers, terminal_cluster)
    ranks = np.empty(n_clusters, dtype=int)
    ranks[order] = np.arange(1, n_clusters + 1)
    pseudotime = memberships @ ranks

    labels = major_labels(memberships) if labels is None else np.asarray(labels)
    if labels.shape != (memberships.shape[0],):
        raise ValueError("labels must have one entry per sample.")
    per_cluster = (
        pd.DataFrame({"cluster": labels, "pseudotime": pseudotime})
        .groupby("cluster")["pseudotime"]
        .agg(["size", "mean", "median"])
    )
    per_cluster["rank"] = pd.Series(ranks).reindex(per_cluster.index).to_numpy()

    return Timeline(pseudotime=pseudotime, order=order, ranks=ranks, per_cluster=per_cluster)
