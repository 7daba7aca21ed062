"""
SOUP driver: anchor selection plus membership estimation across several K.

Each K is fitted in isolation. A K whose anchors cannot be found or whose
clusters degenerate is reported as failed and the remaining K values proceed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..data_io import DataMatrix, MatrixLike, as_data_matrix
from ..errors import SoupError
from ..metrics import cluster_counts, contingency_table, major_labels, partition_metrics
from .purity import PurityPolicy, select_anchors
from .solver import fit_memberships


__all__ = ["SCALES", "SoupFit", "SoupResult", "check_scale", "run_soup", "validate_ks"]

logger = logging.getLogger("soupclust")

SCALES = ("log", "count")


@dataclass(frozen=True)
class SoupFit:
    """
    Outcome of a single K.

    For a failed K every array field is ``None`` and ``reason`` / ``failure``
    describe what went wrong.
    """

    n_clusters: int
    status: str
    memberships: Optional[np.ndarray] = None
    scales: Optional[np.ndarray] = None
    centers: Optional[np.ndarray] = None
    major_labels: Optional[np.ndarray] = None
    converged: bool = False
    n_iter: int = 0
    error: float = float("nan")
    n_anchors: int = 0
    reason: Optional[str] = None
    failure: Optional[SoupError] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @classmethod
    def failed(cls, n_clusters: int, failure: SoupError) -> "SoupFit":
        return cls(
            n_clusters=n_clusters,
            status="failed",
            reason=f"{type(failure).__name__}: {failure}",
            failure=failure,
        )


@dataclass(frozen=True)
class SoupResult:
    """
    Per-K fits of one SOUP run, in increasing K.
    """

    fits: Tuple[SoupFit, ...]
    data: DataMatrix
    scale: str

    @property
    def ks(self) -> Tuple[int, ...]:
        return tuple(fit.n_clusters for fit in self.fits)

    @property
    def succeeded(self) -> Tuple[int, ...]:
        return tuple(fit.n_clusters for fit in self.fits if fit.succeeded)

    def __getitem__(self, n_clusters: int) -> SoupFit:
        for fit in self.fits:
            if fit.n_clusters == n_clusters:
                return fit
        raise KeyError(f"K={n_clusters} was not part of this run.")

    def __iter__(self):
        return iter(self.fits)

    def __len__(self) -> int:
        return len(self.fits)

    def summary(self) -> pd.DataFrame:
        """One row per K with status and convergence diagnostics."""
        records = [
            {
                "K": fit.n_clusters,
                "status": fit.status,
                "converged": fit.converged,
                "n_iter": fit.n_iter,
                "n_anchors": fit.n_anchors,
                "error": fit.error,
                "reason": fit.reason,
            }
            for fit in self.fits
        ]
        return pd.DataFrame.from_records(records)

    def membership_frame(self, n_clusters: int) -> pd.DataFrame:
        fit = self._successful(n_clusters)
        columns = pd.Index([f"cluster_{k}" for k in range(n_clusters)], name="cluster")
        return pd.DataFrame(fit.memberships, index=self.data.sample_index(), columns=columns)

    def center_frame(self, n_clusters: int) -> pd.DataFrame:
        fit = self._successful(n_clusters)
        index = pd.Index([f"cluster_{k}" for k in range(n_clusters)], name="cluster")
        return pd.DataFrame(fit.centers, index=index, columns=self.data.feature_index())

    def cluster_sizes(self, n_clusters: int) -> pd.DataFrame:
        """Number of samples per major label, empty clusters included."""
        fit = self._successful(n_clusters)
        return cluster_counts(fit.major_labels, n_clusters=n_clusters)

    def compare(self, n_clusters: int, labels: Sequence) -> pd.Series:
        """ARI, AMI and matched accuracy of the major labels against ``labels``."""
        fit = self._successful(n_clusters)
        labels = np.asarray(labels)
        if labels.shape != fit.major_labels.shape:
            raise ValueError("labels must have one entry per sample.")
        return partition_metrics(labels, fit.major_labels)

    def crosstab(self, k_a: int, k_b: int) -> pd.DataFrame:
        """How the major labels of one K split or merge into those of another."""
        fit_a = self._successful(k_a)
        fit_b = self._successful(k_b)
        return contingency_table(fit_a.major_labels, fit_b.major_labels, names=(f"K={k_a}", f"K={k_b}"))

    def _successful(self, n_clusters: int) -> SoupFit:
        fit = self[n_clusters]
        if not fit.succeeded:
            raise ValueError(f"K={n_clusters} failed: {fit.reason}")
        return fit


def validate_ks(ks: Iterable[int], n_samples: int) -> List[int]:
    """Deduplicate and sort candidate K values, rejecting invalid ones."""
    values = []
    for k in ks:
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
            raise TypeError(f"K values must be integers, got {k!r}.")
        values.append(int(k))
    if not values:
        raise ValueError("At least one K value is required.")
    if min(values) < 2:
        raise ValueError("K values must be at least 2.")
    if max(values) > n_samples:
        raise ValueError(f"K={max(values)} exceeds the number of samples ({n_samples}).")
    return sorted(set(values))


def run_soup(
    data: MatrixLike,
    ks: Sequence[int],
    *,
    scale: str = "log",
    policy: Optional[PurityPolicy] = None,
    random_state: Optional[int] = 0,
    max_iter: int = 100,
    tol: float = 1e-6,
    n_jobs: Optional[int] = 1,
) -> SoupResult:
    """
    Run SOUP for every K in ``ks``.

    Parameters
    ----------
    data
        Expression matrix, samples in rows. Restrict it to the selected
        features beforehand; it is used as given.
    ks
        Candidate numbers of clusters (integers >= 2).
    scale
        ``"log"`` or ``"count"``. Only validated: count data must be
        nonnegative. No normalisation is applied here.
    policy
        Anchor selection heuristic.
    random_state
        Seed of the anchor selector's coarse grouping.
    max_iter, tol
        Solver stopping criteria.
    n_jobs
        Number of K values fitted concurrently.
    """

    matrix = as_data_matrix(data)
    check_scale(matrix.values, scale)
    ks = validate_ks(ks, matrix.shape[0])
    policy = policy or PurityPolicy()

    fit_kwargs = dict(policy=policy, random_state=random_state, max_iter=max_iter, tol=tol)
    if n_jobs == 1 or len(ks) == 1:
        fits = [_fit_one_k(matrix.values, k, **fit_kwargs) for k in ks]
    else:
        fits = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_fit_one_k)(matrix.values, k, **fit_kwargs) for k in ks
        )

    return SoupResult(fits=tuple(fits), data=matrix, scale=scale)


def check_scale(values: np.ndarray, scale: str) -> None:
    if scale not in SCALES:
        raise ValueError(f"scale must be one of {SCALES}, got {scale!r}.")
    if scale == "count" and (values < 0).any():
        raise ValueError("Count-scale input must be nonnegative.")


def _fit_one_k(
    values: np.ndarray,
    n_clusters: int,
    *,
    policy: PurityPolicy,
    random_state: Optional[int],
    max_iter: int,
    tol: float,
) -> SoupFit:
    try:
        anchors = select_anchors(values, n_clusters, policy=policy, random_state=random_state)
        fit = fit_memberships(values, n_clusters, anchors=anchors, max_iter=max_iter, tol=tol)
    except SoupError as exc:
        logger.warning("K=%d failed: %s", n_clusters, exc)
        return SoupFit.failed(n_clusters, exc)

    logger.info(
        "K=%d: %d anchors, error %.6g after %d iterations%s",
        n_clusters,
        anchors.n_anchors,
        fit.error,
        fit.n_iter,
        "" if fit.converged else " (not converged)",
    )
    return SoupFit(
        n_clusters=n_clusters,
        status="success",
        memberships=fit.memberships,
        scales=fit.scales,
        centers=fit.centers,
        major_labels=major_labels(fit.memberships),
        converged=fit.converged,
        n_iter=fit.n_iter,
        error=fit.error,
        n_anchors=anchors.n_anchors,
    )
