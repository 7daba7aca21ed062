"""
Exception types raised by the SOUP clustering workflow.
"""

from __future__ import annotations


__all__ = [
    "SoupError",
    "InsufficientAnchorsError",
    "DegenerateClusterError",
    "InvalidClusterIndexError",
    "CrossValidationError",
]


class SoupError(Exception):
    """Base class for clustering failures tied to a particular K."""


class InsufficientAnchorsError(SoupError):
    """
    Fewer than K distinguishable groups of pure samples were found.

    Recoverable: lower K or relax the purity policy.
    """

    def __init__(self, n_clusters: int, n_groups: int) -> None:
        self.n_clusters = int(n_clusters)
        self.n_groups = int(n_groups)
        super().__init__(
            f"K={self.n_clusters} requested but only {self.n_groups} "
            "distinguishable anchor group(s) survived purity thresholding."
        )


class DegenerateClusterError(SoupError):
    """A cluster collapsed to zero effective weight during a center update."""

    def __init__(self, cluster: int, detail: str = "") -> None:
        self.cluster = int(cluster)
        message = f"Cluster {self.cluster} is degenerate"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message + ".")


class InvalidClusterIndexError(SoupError, ValueError):
    """A caller-supplied cluster index is outside [0, K)."""

    def __init__(self, cluster: object, n_clusters: int) -> None:
        self.cluster = cluster
        self.n_clusters = int(n_clusters)
        super().__init__(
            f"Cluster index {cluster!r} is out of range for K={self.n_clusters}."
        )


class CrossValidationError(SoupError):
    """A cross-validation run had to be aborted."""
