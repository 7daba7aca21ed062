import numpy as np
import pytest

from soupclust.clustering.purity import AnchorSet
from soupclust.synthetic import generate_blobs, generate_soft_mixture


@pytest.fixture(scope="session")
def three_blobs():
    """100 samples x 50 features from three well-separated blobs."""
    return generate_blobs(100, 50, 3, seed=0)


@pytest.fixture(scope="session")
def single_blob():
    values, _ = generate_blobs(100, 50, 1, seed=1)
    return values


@pytest.fixture(scope="session")
def soft_mixture():
    return generate_soft_mixture(150, 40, 3, concentration=0.5, seed=2)


@pytest.fixture
def make_anchors():
    """Anchors from the samples whose dominant true membership exceeds `threshold`."""

    def _make(memberships, threshold=0.5):
        keep = np.flatnonzero(memberships.max(axis=1) > threshold)
        return AnchorSet(
            indices=keep,
            labels=memberships[keep].argmax(axis=1),
            n_clusters=memberships.shape[1],
        )

    return _make
