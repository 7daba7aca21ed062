"""
Alternating center / membership estimation for SOUP.

Each sample is modelled as a scaled convex combination of the cluster centers,
``x_i ~ s_i * theta_i C`` with ``theta_i`` on the probability simplex and a
free per-sample scale ``s_i >= 0``, so total expression alone does not move a
sample between clusters. Centers are kept at unit L2 norm, which fixes the
scale ambiguity between ``s`` and ``C``. The objective is the total
reconstruction error ``||X - diag(s) theta C||_F^2`` and both half-steps are
exact or monotone descent steps:

    1. centers        <- least squares of X on diag(s) theta, then rescaled to
                         unit norm with the scales absorbing the factors,
    2. (s_i, theta_i) <- nonnegative least squares of x_i on the centers,
                         split into its total (scale) and direction (theta),
                         solved independently for every sample.

Solver state is an immutable ``SolverState`` advanced by a pure transition
function; nothing is mutated in place across iterations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from ..data_io import MatrixLike, as_data_matrix
from ..distance import nearest_center, unit_rows
from ..errors import DegenerateClusterError
from .purity import AnchorSet


__all__ = [
    "SolverState",
    "MembershipFit",
    "nonnegative_weights",
    "split_weights",
    "simplex_least_squares",
    "update_memberships",
    "update_centers",
    "normalize_centers",
    "reconstruction_error",
    "fit_memberships",
]

logger = logging.getLogger("soupclust")


@dataclass(frozen=True)
class SolverState:
    """Snapshot of one solver iterate."""

    memberships: np.ndarray
    scales: np.ndarray
    centers: np.ndarray
    iteration: int
    error: float


@dataclass(frozen=True)
class MembershipFit:
    """
    Converged (or best-effort) solution for a single K.

    Attributes
    ----------
    memberships:
        Array (n_samples, K), rows on the simplex.
    scales:
        Per-sample scale factor ``s_i``.
    centers:
        Array (K, n_features) with unit-norm rows, least-squares optimal for
        ``diag(scales) @ memberships``.
    error:
        Total reconstruction error of the returned triple.
    n_iter:
        Number of alternating iterations performed.
    converged:
        False when ``max_iter`` was reached before the tolerance.
    error_history:
        Error after the initial membership step and after every iteration.
    """

    memberships: np.ndarray
    scales: np.ndarray
    centers: np.ndarray
    error: float
    n_iter: int
    converged: bool
    error_history: Tuple[float, ...]

    @property
    def n_clusters(self) -> int:
        return int(self.centers.shape[0])

    @property
    def weights(self) -> np.ndarray:
        """Unnormalised memberships ``diag(scales) @ memberships``."""
        return self.memberships * self.scales[:, None]


def nonnegative_weights(
    samples: np.ndarray,
    centers: np.ndarray,
    init: Optional[np.ndarray] = None,
    *,
    max_iter: int = 1000,
    tol: float = 1e-10,
) -> np.ndarray:
    """
    Solve ``min ||x_i - w_i C||^2`` over ``w_i >= 0`` for every row ``x_i``.

    Projected gradient descent with step ``1 / lambda_max(C C^T)``, which
    never increases the objective of a row. Rows stop individually once their
    update falls below ``tol``, so the result for a row does not depend on
    which other rows share the call.

    Parameters
    ----------
    samples
        Array (n_rows, n_features).
    centers
        Array (K, n_features).
    init
        Optional nonnegative warm start (n_rows, K); negative entries are
        clipped. Defaults to zero.
    """

    samples = np.atleast_2d(np.asarray(samples, dtype=np.float64))
    centers = np.atleast_2d(np.asarray(centers, dtype=np.float64))
    if samples.shape[1] != centers.shape[1]:
        raise ValueError("samples and centers must share the feature dimension.")

    n_rows, n_clusters = samples.shape[0], centers.shape[0]
    if init is None:
        weights = np.zeros((n_rows, n_clusters))
    else:
        init = np.asarray(init, dtype=np.float64)
        if init.shape != (n_rows, n_clusters):
            raise ValueError(f"init must have shape ({n_rows}, {n_clusters}).")
        weights = np.maximum(init, 0.0)

    gram = centers @ centers.T
    cross = samples @ centers.T
    lipschitz = float(np.linalg.eigvalsh(gram)[-1])
    if lipschitz <= 0.0:
        return weights
    step = 1.0 / lipschitz

    active = np.arange(n_rows)
    for _ in range(max_iter):
        if active.size == 0:
            break
        current = weights[active]
        gradient = current @ gram - cross[active]
        updated = np.maximum(current - step * gradient, 0.0)
        weights[active] = updated
        change = np.abs(updated - current).max(axis=1)
        active = active[change >= tol]
    return weights


def split_weights(weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split nonnegative weights into simplex memberships and per-row scales.

    Rows without any positive weight get uniform memberships and scale 0.
    """

    weights = np.atleast_2d(np.asarray(weights, dtype=np.float64))
    scales = weights.sum(axis=1)
    memberships = np.full(weights.shape, 1.0 / weights.shape[1])
    positive = scales > 0
    memberships[positive] = weights[positive] / scales[positive, None]
    return memberships, scales


def _best_scales(samples: np.ndarray, memberships: np.ndarray, centers: np.ndarray) -> np.ndarray:
    # optimal nonnegative s_i for fixed theta_i
    profiles = memberships @ centers
    energy = np.einsum("ij,ij->i", profiles, profiles)
    overlap = np.maximum(np.einsum("ij,ij->i", samples, profiles), 0.0)
    scales = np.zeros(samples.shape[0])
    np.divide(overlap, energy, out=scales, where=energy > 0)
    return scales


def simplex_least_squares(
    samples: np.ndarray,
    centers: np.ndarray,
    init: Optional[np.ndarray] = None,
    init_scales: Optional[np.ndarray] = None,
    *,
    max_iter: int = 1000,
    tol: float = 1e-10,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Scale-invariant membership fit: ``min ||x_i - s_i theta_i C||^2`` over
    ``s_i >= 0`` and ``theta_i`` on the simplex, for every row.

    The joint problem is a nonnegative least squares in ``w_i = s_i theta_i``.
    A sample that is a multiple of one center gets a one-hot membership,
    whatever the multiple.

    Parameters
    ----------
    samples
        Array (n_rows, n_features).
    centers
        Array (K, n_features).
    init
        Optional warm-start memberships (n_rows, K).
    init_scales
        Scales going with ``init``; by default the best scale for each
        warm-start row.

    Returns
    -------
    memberships, scales
    """

    samples = np.atleast_2d(np.asarray(samples, dtype=np.float64))
    centers = np.atleast_2d(np.asarray(centers, dtype=np.float64))
    start = None
    if init is not None:
        init = np.asarray(init, dtype=np.float64)
        if init.shape != (samples.shape[0], centers.shape[0]):
            raise ValueError(f"init must have shape ({samples.shape[0]}, {centers.shape[0]}).")
        if samples.shape[1] != centers.shape[1]:
            raise ValueError("samples and centers must share the feature dimension.")
        if init_scales is None:
            init_scales = _best_scales(samples, init, centers)
        start = init * np.asarray(init_scales, dtype=np.float64)[:, None]
    weights = nonnegative_weights(samples, centers, start, max_iter=max_iter, tol=tol)
    return split_weights(weights)


def update_memberships(
    samples: np.ndarray,
    centers: np.ndarray,
    init: Optional[np.ndarray] = None,
    init_scales: Optional[np.ndarray] = None,
    *,
    n_jobs: Optional[int] = 1,
    max_iter: int = 1000,
    tol: float = 1e-10,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Membership step: ``simplex_least_squares`` over row blocks on a thread pool.
    """

    n_rows = samples.shape[0]
    n_workers = min(effective_n_jobs(n_jobs), n_rows)
    if n_workers <= 1:
        return simplex_least_squares(samples, centers, init, init_scales, max_iter=max_iter, tol=tol)

    blocks = np.array_split(np.arange(n_rows), n_workers)
    parts = Parallel(n_jobs=n_workers, prefer="threads")(
        delayed(simplex_least_squares)(
            samples[block],
            centers,
            None if init is None else init[block],
            None if init_scales is None else init_scales[block],
            max_iter=max_iter,
            tol=tol,
        )
        for block in blocks
    )
    memberships = np.vstack([part[0] for part in parts])
    scales = np.concatenate([part[1] for part in parts])
    return memberships, scales


def update_centers(
    samples: np.ndarray,
    memberships: np.ndarray,
    scales: Optional[np.ndarray] = None,
    *,
    min_weight: float = 1e-8,
) -> np.ndarray:
    """
    Center step: least-squares ``C`` minimising ``||X - diag(s) theta C||^2``.

    ``scales`` defaults to ones. The returned centers are not normalised.

    Raises
    ------
    DegenerateClusterError
        If a cluster carries less than ``min_weight`` total membership or the
        scaled membership matrix is rank deficient.
    """

    totals = memberships.sum(axis=0)
    empty = np.flatnonzero(totals < min_weight)
    if empty.size:
        raise DegenerateClusterError(int(empty[0]), f"total membership {totals[empty[0]]:.3g}")

    weights = memberships if scales is None else memberships * scales[:, None]
    centers, _, rank, _ = np.linalg.lstsq(weights, samples, rcond=None)
    if rank < weights.shape[1]:
        raise DegenerateClusterError(
            _dependent_cluster(weights),
            "membership column is a combination of the others",
        )
    return centers


def normalize_centers(
    memberships: np.ndarray,
    scales: np.ndarray,
    centers: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Rescale centers to unit norm, moving the factors into memberships and
    scales so that ``diag(scales) @ memberships @ centers`` is unchanged.

    Returns
    -------
    memberships, scales, centers
    """

    norms = np.linalg.norm(centers, axis=1)
    zero = np.flatnonzero(norms == 0)
    if zero.size:
        raise DegenerateClusterError(int(zero[0]), "center is the zero vector")
    weights = memberships * scales[:, None] * norms
    new_memberships, new_scales = split_weights(weights)
    # rows with zero scale keep their direction
    idle = new_scales == 0
    new_memberships[idle] = memberships[idle]
    return new_memberships, new_scales, centers / norms[:, None]


def _dependent_cluster(weights: np.ndarray) -> int:
    n_clusters = weights.shape[1]
    for k in range(n_clusters):
        column = weights[:, k]
        others = np.delete(weights, k, axis=1)
        coef, *_ = np.linalg.lstsq(others, column, rcond=None)
        if np.linalg.norm(column - others @ coef) <= 1e-8 * max(np.linalg.norm(column), 1.0):
            return k
    return n_clusters - 1


def reconstruction_error(
    samples: np.ndarray,
    memberships: np.ndarray,
    centers: np.ndarray,
    scales: Optional[np.ndarray] = None,
) -> float:
    """Total squared error ``||X - diag(s) theta C||_F^2``; ``s`` defaults to ones."""
    weights = memberships if scales is None else memberships * scales[:, None]
    residual = samples - weights @ centers
    return float(np.einsum("ij,ij->", residual, residual))


def _refit_centers(samples: np.ndarray, memberships: np.ndarray, scales: np.ndarray):
    centers = update_centers(samples, memberships, scales)
    return normalize_centers(memberships, scales, centers)


def _advance(samples: np.ndarray, state: SolverState, *, n_jobs: Optional[int]) -> SolverState:
    memberships, scales, centers = _refit_centers(samples, state.memberships, state.scales)
    memberships, scales = update_memberships(samples, centers, memberships, scales, n_jobs=n_jobs)
    return SolverState(
        memberships=memberships,
        scales=scales,
        centers=centers,
        iteration=state.iteration + 1,
        error=reconstruction_error(samples, memberships, centers, scales),
    )


def _anchor_start(samples: np.ndarray, anchors: AnchorSet) -> Tuple[np.ndarray, np.ndarray]:
    n_rows, n_clusters = samples.shape[0], anchors.n_clusters
    if anchors.n_anchors and anchors.indices.max() >= n_rows:
        raise ValueError("Anchor indices exceed the number of samples.")

    one_hot = np.eye(n_clusters)[anchors.labels]
    # anchors enter with unit norm so loud samples do not dominate a center
    centers = unit_rows(update_centers(unit_rows(samples[anchors.indices]), one_hot))

    start = np.eye(n_clusters)[nearest_center(samples, centers)]
    start[anchors.indices] = one_hot
    return centers, start


def fit_memberships(
    data: MatrixLike,
    n_clusters: int,
    *,
    anchors: Optional[AnchorSet] = None,
    init_centers: Optional[np.ndarray] = None,
    init_memberships: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-6,
    n_jobs: Optional[int] = 1,
) -> MembershipFit:
    """
    Estimate memberships, scales and centers for a fixed K by alternating
    minimisation.

    Exactly one of ``anchors`` and ``init_centers`` seeds the run.

    Parameters
    ----------
    data
        Expression matrix, samples in rows.
    n_clusters
        Number of clusters K.
    anchors
        Anchor assignment; anchors start one-hot and define the first centers.
        Other samples start one-hot at their scale-invariant nearest center.
    init_centers
        Warm-start centers (K, n_features), rescaled to unit norm.
    init_memberships
        Optional warm-start memberships to go with ``init_centers``.
    max_iter
        Maximum number of center/membership iterations.
    tol
        Stop once the relative decrease of the error falls below ``tol``.
    n_jobs
        Worker count for the per-sample membership step.
    """

    samples = as_data_matrix(data).values
    if (anchors is None) == (init_centers is None):
        raise ValueError("Provide exactly one of `anchors` or `init_centers`.")
    if max_iter < 0:
        raise ValueError("max_iter must be non-negative.")

    if anchors is not None:
        if anchors.n_clusters != n_clusters:
            raise ValueError("anchors were selected for a different number of clusters.")
        centers, start = _anchor_start(samples, anchors)
    else:
        centers = np.asarray(init_centers, dtype=np.float64)
        if centers.shape != (n_clusters, samples.shape[1]):
            raise ValueError(f"init_centers must have shape ({n_clusters}, {samples.shape[1]}).")
        centers = unit_rows(centers)
        if init_memberships is None:
            start = np.eye(n_clusters)[nearest_center(samples, centers)]
        else:
            start = np.asarray(init_memberships, dtype=np.float64)

    memberships, scales = update_memberships(samples, centers, start, n_jobs=n_jobs)
    state = SolverState(
        memberships=memberships,
        scales=scales,
        centers=centers,
        iteration=0,
        error=reconstruction_error(samples, memberships, centers, scales),
    )
    best = state
    history = [state.error]
    converged = False

    while state.iteration < max_iter:
        candidate = _advance(samples, state, n_jobs=n_jobs)
        history.append(candidate.error)
        logger.debug("K=%d iteration %d: error %.6g", n_clusters, candidate.iteration, candidate.error)
        if candidate.error <= best.error:
            best = candidate
        decrease = state.error - candidate.error
        state = candidate
        if decrease <= tol * max(abs(history[-2]), np.finfo(float).tiny):
            converged = True
            break

    if not converged:
        logger.warning(
            "K=%d did not converge within %d iterations (error %.6g).",
            n_clusters,
            max_iter,
            best.error,
        )

    memberships, scales, centers = _refit_centers(samples, best.memberships, best.scales)
    return MembershipFit(
        memberships=memberships,
        scales=scales,
        centers=centers,
        error=reconstruction_error(samples, memberships, centers, scales),
        n_iter=state.iteration,
        converged=converged,
        error_history=tuple(history),
    )
