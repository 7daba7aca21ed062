import numpy as np
import pytest

from soupclust.clustering.purity import AnchorSet, PurityPolicy, select_anchors
from soupclust.errors import InsufficientAnchorsError
from soupclust.synthetic import generate_trajectory


class TestSelectAnchors:
    def test_three_blobs_give_pure_anchors(self, three_blobs):
        values, labels = three_blobs
        anchors = select_anchors(values, 3, random_state=0)

        assert anchors.n_clusters == 3
        assert sorted(set(anchors.labels.tolist())) == [0, 1, 2]
        assert (np.diff(anchors.indices) > 0).all()
        # every anchor cluster maps onto exactly one true blob
        true_of_anchor = {}
        for index, label in zip(anchors.indices, anchors.labels):
            true_of_anchor.setdefault(int(label), set()).add(int(labels[index]))
        assert all(len(blobs) == 1 for blobs in true_of_anchor.values())
        assert len({next(iter(blobs)) for blobs in true_of_anchor.values()}) == 3

    def test_scores_cover_every_sample(self, three_blobs):
        values, _ = three_blobs
        anchors = select_anchors(values, 3, random_state=0)
        assert anchors.scores.shape == (values.shape[0],)
        assert (anchors.scores[anchors.indices] >= PurityPolicy().threshold).all()

    def test_fewer_clusters_than_groups_are_merged(self, three_blobs):
        values, _ = three_blobs
        anchors = select_anchors(values, 2, random_state=0)
        assert sorted(set(anchors.labels.tolist())) == [0, 1]

    def test_labels_numbered_by_first_appearance(self, three_blobs):
        values, _ = three_blobs
        anchors = select_anchors(values, 3, random_state=0)
        _, first = np.unique(anchors.labels, return_index=True)
        assert (np.diff(first) > 0).all()
        assert anchors.labels[0] == 0

    def test_too_many_clusters_raise(self, three_blobs):
        values, _ = three_blobs
        with pytest.raises(InsufficientAnchorsError) as excinfo:
            select_anchors(values, 5, random_state=0)
        assert excinfo.value.n_clusters == 5
        assert excinfo.value.n_groups < 5

    @pytest.mark.parametrize("n_clusters", [2, 3])
    def test_single_blob_has_no_structure(self, single_blob, n_clusters):
        with pytest.raises(InsufficientAnchorsError):
            select_anchors(single_blob, n_clusters, random_state=0)

    def test_fine_separation_cuts_a_trajectory(self):
        values, _, _ = generate_trajectory(150, 40, 4, seed=3)
        anchors = select_anchors(values, 4, policy=PurityPolicy(separation=0.25), random_state=0)
        assert sorted(set(anchors.labels.tolist())) == [0, 1, 2, 3]

    def test_deterministic_for_fixed_seed(self, three_blobs):
        values, _ = three_blobs
        first = select_anchors(values, 3, random_state=7)
        second = select_anchors(values, 3, random_state=7)
        np.testing.assert_array_equal(first.indices, second.indices)
        np.testing.assert_array_equal(first.labels, second.labels)

    def test_scale_invariant(self, three_blobs):
        values, _ = three_blobs
        factors = np.linspace(0.5, 20.0, values.shape[0])[:, None]
        plain = select_anchors(values, 3, random_state=0)
        scaled = select_anchors(values * factors, 3, random_state=0)
        np.testing.assert_array_equal(plain.indices, scaled.indices)
        np.testing.assert_array_equal(plain.labels, scaled.labels)

    def test_fewer_samples_than_clusters(self):
        with pytest.raises(ValueError):
            select_anchors(np.arange(1.0, 11.0).reshape(2, 5), 3)

    def test_single_cluster_rejected(self, three_blobs):
        values, _ = three_blobs
        with pytest.raises(ValueError):
            select_anchors(values, 1)

    def test_constant_sample_rejected(self, three_blobs):
        values, _ = three_blobs
        values = values.copy()
        values[4] = 3.0
        with pytest.raises(ValueError):
            select_anchors(values, 3)


class TestAnchorSet:
    def test_as_dict(self):
        anchors = AnchorSet(indices=np.array([1, 4, 6]), labels=np.array([0, 1, 0]), n_clusters=2)
        assert anchors.n_anchors == 3
        assert anchors.as_dict() == {1: 0, 4: 1, 6: 0}

    def test_every_cluster_needs_an_anchor(self):
        with pytest.raises(ValueError):
            AnchorSet(indices=np.array([0, 1]), labels=np.array([0, 0]), n_clusters=2)

    def test_labels_in_range(self):
        with pytest.raises(ValueError):
            AnchorSet(indices=np.array([0, 1]), labels=np.array([0, 2]), n_clusters=2)

    def test_lengths_must_match(self):
        with pytest.raises(ValueError):
            AnchorSet(indices=np.array([0, 1, 2]), labels=np.array([0, 1]), n_clusters=2)


class TestPurityPolicy:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"n_neighbors": 0},
            {"threshold": 0.0},
            {"threshold": 1.5},
            {"coarse_factor": 0},
            {"separation": 0.0},
            {"min_group_size": 0},
            {"n_init": 0},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            PurityPolicy(**kwargs)
