"""
Cross-validated choice of the number of clusters K.

For every repetition the samples are split into folds and the features into
two halves, both drawn from the repetition's seed. SOUP is fitted on the
held-in samples; each held-out sample then gets memberships estimated from
one feature half against the fitted centers, and the other half is predicted
from those memberships. The squared prediction error, averaged over folds and
then over repetitions, is minimised over K.

(repetition, fold) units are independent and run on a bounded thread pool.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.model_selection import KFold

from .clustering.purity import PurityPolicy
from .clustering.solver import simplex_least_squares
from .clustering.soup import check_scale, run_soup, validate_ks
from .data_io import MatrixLike, as_data_matrix
from .errors import CrossValidationError, InsufficientAnchorsError


__all__ = [
    "CrossValidationResult",
    "cross_validate",
    "fold_partition",
    "feature_halves",
    "heldout_error",
    "save_cross_validation",
]

logger = logging.getLogger("soupclust")


@dataclass(frozen=True)
class CrossValidationResult:
    """
    Results of a cross-validation run.

    Attributes
    ----------
    records:
        One row per (repetition, fold, K) with the held-out error and status.
    summary:
        Indexed by K: ``mean_error``, ``var_error`` (across repetitions),
        ``n_failed_folds`` and ``valid``.
    optimal_k:
        Valid K with the smallest mean error, ties to the smaller K.
    seeds:
        Seed of each repetition.
    nfold:
        Number of folds per repetition.
    scale:
        Scale indicator the run was made with.
    """

    records: pd.DataFrame
    summary: pd.DataFrame
    optimal_k: int
    seeds: Tuple[int, ...]
    nfold: int
    scale: str

    @property
    def ks(self) -> Tuple[int, ...]:
        return tuple(int(k) for k in self.summary.index)

    @property
    def mean_error(self) -> pd.Series:
        return self.summary["mean_error"]


def fold_partition(n_samples: int, nfold: int, seed: int) -> List[np.ndarray]:
    """Held-out sample indices of each fold, drawn from ``seed``."""
    splitter = KFold(n_splits=nfold, shuffle=True, random_state=seed)
    return [test_idx for _, test_idx in splitter.split(np.empty((n_samples, 1)))]


def feature_halves(n_features: int, seed: int) -> Tuple[np.ndarray, np.ndarray]:
    """Random split of the feature positions into two halves."""
    if n_features < 2:
        raise ValueError("At least two features are needed to split them.")
    order = np.random.default_rng(seed).permutation(n_features)
    half = n_features // 2
    return np.sort(order[:half]), np.sort(order[half:])


def heldout_error(
    test_values: np.ndarray,
    centers: np.ndarray,
    halves: Tuple[np.ndarray, np.ndarray],
) -> float:
    """
    Mean squared error per entry when each feature half of the held-out
    samples is predicted from the memberships and per-sample scale fitted
    on the other half.
    """

    total = 0.0
    first, second = halves
    for fit_cols, score_cols in ((first, second), (second, first)):
        memberships, scales = simplex_least_squares(test_values[:, fit_cols], centers[:, fit_cols])
        predicted = (memberships * scales[:, None]) @ centers[:, score_cols]
        residual = test_values[:, score_cols] - predicted
        total += float(np.einsum("ij,ij->", residual, residual))
    return total / test_values.size


def cross_validate(
    data: MatrixLike,
    ks: Sequence[int],
    *,
    nfold: int = 5,
    n_cv: int = 1,
    seeds: Optional[Sequence[int]] = None,
    scale: str = "log",
    policy: Optional[PurityPolicy] = None,
    max_iter: int = 100,
    tol: float = 1e-6,
    n_jobs: Optional[int] = None,
) -> CrossValidationResult:
    """
    Estimate the out-of-sample prediction error of SOUP for every K.

    Parameters
    ----------
    data
        Expression matrix, samples in rows.
    ks
        Candidate numbers of clusters.
    nfold
        Number of folds per repetition.
    n_cv
        Number of repetitions.
    seeds
        One seed per repetition; defaults to ``0, ..., n_cv - 1``. A seed
        fixes the fold partition, the feature halves and the anchor
        selector's coarse grouping of that repetition.
    scale
        ``"log"`` or ``"count"``, forwarded to ``run_soup``.
    policy, max_iter, tol
        Forwarded to ``run_soup``.
    n_jobs
        Size of the worker pool for (repetition, fold) units. Defaults to
        ``min(nfold, cpu count)``.

    Raises
    ------
    CrossValidationError
        If a fold fails for a reason other than insufficient anchors, or no
        K fitted in every fold.
    """

    matrix = as_data_matrix(data)
    values = matrix.values
    n_samples, n_features = values.shape
    check_scale(values, scale)

    if nfold < 2:
        raise ValueError("nfold must be at least 2.")
    if nfold > n_samples:
        raise ValueError(f"nfold={nfold} exceeds the number of samples ({n_samples}).")
    if n_cv < 1:
        raise ValueError("n_cv must be positive.")
    seeds = tuple(range(n_cv)) if seeds is None else tuple(int(seed) for seed in seeds)
    if len(seeds) != n_cv:
        raise ValueError(f"Expected {n_cv} seeds (one per repetition), got {len(seeds)}.")

    smallest_train = n_samples - int(np.ceil(n_samples / nfold))
    ks = validate_ks(ks, smallest_train)
    policy = policy or PurityPolicy()
    if n_jobs is None:
        n_jobs = min(nfold, os.cpu_count() or 1)

    tasks = []
    for repetition, seed in enumerate(seeds):
        halves = feature_halves(n_features, seed)
        for fold, test_idx in enumerate(fold_partition(n_samples, nfold, seed)):
            tasks.append((repetition, fold, seed, test_idx, halves))

    logger.info(
        "Cross-validating K=%s: %d repetition(s) x %d folds on %d worker(s)",
        ks,
        n_cv,
        nfold,
        n_jobs,
    )
    outputs = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_score_fold)(
            values,
            ks,
            repetition=repetition,
            fold=fold,
            seed=seed,
            test_idx=test_idx,
            halves=halves,
            scale=scale,
            policy=policy,
            max_iter=max_iter,
            tol=tol,
        )
        for repetition, fold, seed, test_idx, halves in tasks
    )

    records = pd.DataFrame.from_records([record for output in outputs for record in output])
    records.sort_values(["repetition", "fold", "K"], inplace=True)
    records.reset_index(drop=True, inplace=True)
    summary = _summarize(records, ks)

    valid = summary[summary["valid"]]
    if valid.empty:
        raise CrossValidationError("No candidate K could be fitted in every fold.")
    # index is sorted by K, and idxmin keeps the first minimiser
    optimal_k = int(valid["mean_error"].idxmin())
    logger.info("Selected K=%d (mean error %.6g)", optimal_k, valid.loc[optimal_k, "mean_error"])

    return CrossValidationResult(
        records=records,
        summary=summary,
        optimal_k=optimal_k,
        seeds=seeds,
        nfold=nfold,
        scale=scale,
    )


def _score_fold(
    values: np.ndarray,
    ks: Sequence[int],
    *,
    repetition: int,
    fold: int,
    seed: int,
    test_idx: np.ndarray,
    halves: Tuple[np.ndarray, np.ndarray],
    scale: str,
    policy: PurityPolicy,
    max_iter: int,
    tol: float,
) -> List[dict]:
    train_idx = np.setdiff1d(np.arange(values.shape[0]), test_idx)
    result = run_soup(
        values[train_idx],
        ks,
        scale=scale,
        policy=policy,
        random_state=seed,
        max_iter=max_iter,
        tol=tol,
        n_jobs=1,
    )

    test_values = values[test_idx]
    records = []
    for fit in result:
        record = {
            "repetition": repetition,
            "fold": fold,
            "seed": seed,
            "K": fit.n_clusters,
            "n_train": int(train_idx.size),
            "n_test": int(test_idx.size),
            "converged": fit.converged,
        }
        if fit.succeeded:
            record.update(status="success", error=heldout_error(test_values, fit.centers, halves), reason=None)
        elif isinstance(fit.failure, InsufficientAnchorsError):
            record.update(status="failed", error=np.nan, reason=fit.reason)
        else:
            raise CrossValidationError(
                f"Repetition {repetition}, fold {fold}: K={fit.n_clusters} failed ({fit.reason})."
            ) from fit.failure
        records.append(record)
    return records


def _summarize(records: pd.DataFrame, ks: Sequence[int]) -> pd.DataFrame:
    per_repetition = records.groupby(["K", "repetition"])["error"].mean()
    by_k = per_repetition.groupby(level="K")
    failed = (records["status"] != "success").groupby(records["K"]).sum()

    summary = pd.DataFrame(
        {
            "mean_error": by_k.mean(),
            "var_error": by_k.var(ddof=1),
            "n_failed_folds": failed.astype(int),
        }
    )
    summary["valid"] = summary["n_failed_folds"] == 0
    summary = summary.reindex(list(ks))
    summary.index.name = "K"
    return summary


def save_cross_validation(
    result: CrossValidationResult,
    out_dir: Path,
    *,
    dataset_name: str,
) -> Path:
    """
    Write ``config.json``, ``cv_records.csv`` and ``cv_summary.csv`` under
    ``out_dir / dataset_name`` and return that directory.
    """

    target_dir = Path(out_dir) / dataset_name
    target_dir.mkdir(parents=True, exist_ok=True)

    config = {
        "dataset_name": dataset_name,
        "ks": list(result.ks),
        "nfold": result.nfold,
        "n_cv": len(result.seeds),
        "seeds": list(result.seeds),
        "scale": result.scale,
        "optimal_k": result.optimal_k,
        "timestamp": _dt.datetime.now().isoformat(),
    }
    (target_dir / "config.json").write_text(json.dumps(config, indent=2))
    result.records.to_csv(target_dir / "cv_records.csv", index=False)
    result.summary.to_csv(target_dir / "cv_summary.csv")
    return target_dir
