"""
Utilities for summarizing soft clustering results and comparing labelings.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment
from sklearn.metrics import adjusted_mutual_info_score, adjusted_rand_score


def major_labels(memberships: np.ndarray) -> np.ndarray:
    """
    Hard label of each sample: the index of its largest membership.

    Ties resolve to the lowest cluster index.
    """

    memberships = np.asarray(memberships)
    if memberships.ndim != 2:
        raise ValueError("memberships must be two-dimensional.")
    return np.argmax(memberships, axis=1)


def cluster_counts(
    labels: np.ndarray,
    *,
    n_clusters: Optional[int] = None,
    name: str = "cluster",
) -> pd.DataFrame:
    """
    Cluster sizes as a DataFrame with columns ``name`` and ``size``.

    With ``n_clusters`` every cluster in [0, n_clusters) is listed, empty ones
    with size 0.
    """

    labels = np.asarray(labels)
    if n_clusters is None:
        unique, counts = np.unique(labels, return_counts=True)
    else:
        unique = np.arange(n_clusters)
        counts = np.bincount(labels.astype(int), minlength=n_clusters)[:n_clusters]
    return pd.DataFrame({name: unique, "size": counts})


def partition_metrics(reference: np.ndarray, predicted: np.ndarray) -> pd.Series:
    """
    Agreement of a predicted labelling with a reference one: adjusted Rand
    index (ARI), adjusted mutual information (AMI) and ``matched_accuracy``.
    """

    return pd.Series(
        {
            "ARI": adjusted_rand_score(reference, predicted),
            "AMI": adjusted_mutual_info_score(reference, predicted),
            "accuracy": matched_accuracy(reference, predicted),
        }
    )


def contingency_table(
    labels_a: np.ndarray,
    labels_b: np.ndarray,
    *,
    names: Tuple[str, str] = ("labels_a", "labels_b"),
) -> pd.DataFrame:
    """Cross-tabulate two labellings; ``names`` label the row and column axes."""
    return pd.crosstab(np.asarray(labels_a), np.asarray(labels_b), rownames=[names[0]], colnames=[names[1]])


def matched_accuracy(true_labels: np.ndarray, predicted: np.ndarray) -> float:
    """
    Fraction of samples labelled correctly under the best one-to-one matching
    of predicted clusters to true clusters.
    """

    true_labels = np.asarray(true_labels)
    predicted = np.asarray(predicted)
    if true_labels.shape != predicted.shape:
        raise ValueError("Label arrays must have the same shape.")
    if true_labels.size == 0:
        raise ValueError("Label arrays must not be empty.")

    table = pd.crosstab(true_labels, predicted).to_numpy()
    rows, cols = linear_sum_assignment(-table)
    return float(table[rows, cols].sum() / true_labels.size)
