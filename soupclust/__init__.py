"""
Semi-soft clustering (SOUP) of expression matrices.

Each sample receives a membership vector over K clusters instead of a single
label. The package provides the building blocks of the workflow:

    1. anchor selection of pure samples (``select_anchors``),
    2. alternating membership / center estimation (``fit_memberships``),
    3. the multi-K driver (``run_soup``),
    4. cross-validated choice of K (``cross_validate``),
    5. pseudo-time ordering from memberships (``estimate_timeline``).
"""

from .data_io import DataMatrix, as_data_matrix
from .distance import nearest_center, scale_invariant_distance, unit_rows
from .errors import (
    CrossValidationError,
    DegenerateClusterError,
    InsufficientAnchorsError,
    InvalidClusterIndexError,
    SoupError,
)
from .clustering.purity import AnchorSet, PurityPolicy, select_anchors
from .clustering.solver import (
    MembershipFit,
    SolverState,
    fit_memberships,
    nonnegative_weights,
    normalize_centers,
    reconstruction_error,
    simplex_least_squares,
)
from .clustering.soup import SoupFit, SoupResult, run_soup
from .cross_validation import CrossValidationResult, cross_validate, save_cross_validation
from .timeline import Timeline, estimate_timeline, order_clusters
from .metrics import cluster_counts, contingency_table, major_labels, matched_accuracy, partition_metrics
from .preprocessing import log_normalize, restrict_features, top_variable_features
from .synthetic import (
    generate_blobs,
    generate_gaussian_mixture,
    generate_soft_mixture,
    generate_trajectory,
)

__all__ = [
    "DataMatrix",
    "as_data_matrix",
    "nearest_center",
    "scale_invariant_distance",
    "unit_rows",
    "SoupError",
    "InsufficientAnchorsError",
    "DegenerateClusterError",
    "InvalidClusterIndexError",
    "CrossValidationError",
    "AnchorSet",
    "PurityPolicy",
    "select_anchors",
    "MembershipFit",
    "SolverState",
    "fit_memberships",
    "nonnegative_weights",
    "normalize_centers",
    "reconstruction_error",
    "simplex_least_squares",
    "SoupFit",
    "SoupResult",
    "run_soup",
    "CrossValidationResult",
    "cross_validate",
    "save_cross_validation",
    "Timeline",
    "estimate_timeline",
    "order_clusters",
    "cluster_counts",
    "contingency_table",
    "major_labels",
    "matched_accuracy",
    "partition_metrics",
    "log_normalize",
    "restrict_features",
    "top_variable_features",
    "generate_blobs",
    "generate_gaussian_mixture",
    "generate_soft_mixture",
    "generate_trajectory",
]
