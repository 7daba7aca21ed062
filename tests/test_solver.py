import logging

import numpy as np
import pytest

from soupclust.clustering.purity import select_anchors
from soupclust.clustering.soup import run_soup
from soupclust.clustering.solver import (
    fit_memberships,
    nonnegative_weights,
    normalize_centers,
    reconstruction_error,
    simplex_least_squares,
    split_weights,
    update_centers,
    update_memberships,
)
from soupclust.errors import DegenerateClusterError
from soupclust.metrics import matched_accuracy
from soupclust.synthetic import generate_blobs, generate_soft_mixture


def _on_simplex(memberships, atol=1e-9):
    return (memberships >= -atol).all() and np.allclose(memberships.sum(axis=1), 1.0, atol=atol)


class TestWeights:
    def test_nonnegative_weights_clip_at_zero(self):
        centers = np.eye(3)
        weights = nonnegative_weights(np.array([[2.0, -1.0, 0.5]]), centers)
        np.testing.assert_allclose(weights, [[2.0, 0.0, 0.5]], atol=1e-8)

    def test_split_weights(self):
        memberships, scales = split_weights(np.array([[2.0, 0.0, 2.0], [0.0, 0.0, 0.0]]))
        np.testing.assert_allclose(memberships, [[0.5, 0.0, 0.5], [1 / 3, 1 / 3, 1 / 3]])
        np.testing.assert_allclose(scales, [4.0, 0.0])

    def test_normalize_centers_keeps_reconstruction(self):
        rng = np.random.default_rng(2)
        memberships = rng.dirichlet(np.ones(3), size=10)
        scales = rng.uniform(0.5, 2.0, size=10)
        centers = rng.uniform(0.0, 10.0, size=(3, 5))
        new_memberships, new_scales, unit = normalize_centers(memberships, scales, centers)
        np.testing.assert_allclose(np.linalg.norm(unit, axis=1), 1.0)
        assert _on_simplex(new_memberships)
        np.testing.assert_allclose(
            (new_memberships * new_scales[:, None]) @ unit,
            (memberships * scales[:, None]) @ centers,
        )


class TestSimplexLeastSquares:
    rng = np.random.default_rng(11)
    centers = rng.uniform(0.0, 10.0, size=(3, 20))
    memberships = rng.dirichlet(np.ones(3), size=25)

    def test_recovers_exact_memberships(self):
        samples = self.memberships @ self.centers
        estimate, scales = simplex_least_squares(samples, self.centers)
        np.testing.assert_allclose(estimate, self.memberships, atol=1e-6)
        np.testing.assert_allclose(scales, 1.0, atol=1e-6)

    def test_per_sample_factors_do_not_change_memberships(self):
        factors = self.rng.uniform(0.1, 10.0, size=25)
        samples = (self.memberships @ self.centers) * factors[:, None]
        estimate, scales = simplex_least_squares(samples, self.centers)
        np.testing.assert_allclose(estimate, self.memberships, atol=1e-6)
        np.testing.assert_allclose(scales, factors, rtol=1e-6)

    def test_multiple_of_a_center_is_one_hot(self):
        samples = np.vstack([0.2 * self.centers[1], 7.0 * self.centers[1], 3.0 * self.centers[2]])
        estimate, _ = simplex_least_squares(samples, self.centers)
        np.testing.assert_allclose(estimate, np.eye(3)[[1, 1, 2]], atol=1e-6)

    def test_vertex_for_sample_outside_hull(self):
        sample = 3.0 * self.centers[1] - self.centers[0] - self.centers[2]
        estimate, _ = simplex_least_squares(sample[None, :], self.centers)
        assert _on_simplex(estimate)
        assert estimate[0].argmax() == 1

    def test_rows_solved_independently(self):
        samples = self.memberships @ self.centers + self.rng.normal(scale=0.3, size=(25, 20))
        together, _ = simplex_least_squares(samples, self.centers)
        alone = np.vstack([simplex_least_squares(row[None, :], self.centers)[0] for row in samples])
        np.testing.assert_allclose(together, alone, atol=1e-8)

    def test_blocked_update_matches_single_block(self):
        samples = self.memberships @ self.centers + self.rng.normal(scale=0.3, size=(25, 20))
        single, single_scales = update_memberships(samples, self.centers, n_jobs=1)
        blocked, blocked_scales = update_memberships(samples, self.centers, n_jobs=3)
        np.testing.assert_allclose(single, blocked, atol=1e-8)
        np.testing.assert_allclose(single_scales, blocked_scales, atol=1e-8)

    def test_init_shape_checked(self):
        with pytest.raises(ValueError):
            simplex_least_squares(np.ones((4, 20)), self.centers, init=np.ones((4, 2)))

    def test_feature_dimension_checked(self):
        with pytest.raises(ValueError):
            simplex_least_squares(np.ones((4, 19)), self.centers)


class TestUpdateCenters:
    def test_least_squares_centers(self):
        rng = np.random.default_rng(5)
        memberships = rng.dirichlet(np.ones(3), size=40)
        centers = rng.uniform(size=(3, 6))
        np.testing.assert_allclose(update_centers(memberships @ centers, memberships), centers, atol=1e-10)

    def test_empty_cluster(self):
        memberships = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.5, 0.5, 0.0]])
        with pytest.raises(DegenerateClusterError) as excinfo:
            update_centers(np.ones((3, 4)), memberships)
        assert excinfo.value.cluster == 2

    def test_duplicated_cluster(self):
        memberships = np.array(
            [[1.0, 0.0, 0.0], [0.0, 0.5, 0.5], [0.0, 0.5, 0.5], [1.0, 0.0, 0.0]]
        )
        with pytest.raises(DegenerateClusterError) as excinfo:
            update_centers(np.arange(1.0, 13.0).reshape(4, 3), memberships)
        assert excinfo.value.cluster == 1


class TestFitMemberships:
    @pytest.mark.parametrize("seed", [0, 1, 2])
    @pytest.mark.parametrize("n_clusters", [2, 3, 4])
    def test_memberships_stay_on_simplex(self, make_anchors, seed, n_clusters):
        values, memberships, _ = generate_soft_mixture(120, 30, n_clusters, concentration=0.3, seed=seed)
        fit = fit_memberships(values, n_clusters, anchors=make_anchors(memberships))

        assert fit.memberships.shape == (120, n_clusters)
        assert fit.centers.shape == (n_clusters, 30)
        assert _on_simplex(fit.memberships)

    def test_error_never_increases(self, soft_mixture, make_anchors):
        values, memberships, _ = soft_mixture
        fit = fit_memberships(values, 3, anchors=make_anchors(memberships), tol=0.0, max_iter=30)
        history = np.asarray(fit.error_history)
        assert (history[1:] <= history[:-1] * (1 + 1e-9)).all()

    def test_recovers_soft_mixture(self, soft_mixture, make_anchors):
        values, memberships, _ = soft_mixture
        fit = fit_memberships(values, 3, anchors=make_anchors(memberships))
        dominant = memberships.max(axis=1) > 0.7
        agreement = fit.memberships[dominant].argmax(axis=1) == memberships[dominant].argmax(axis=1)
        assert agreement.mean() >= 0.95

    def test_centers_are_least_squares_fixed_point(self, soft_mixture, make_anchors):
        values, memberships, _ = soft_mixture
        fit = fit_memberships(values, 3, anchors=make_anchors(memberships))
        expected, *_ = np.linalg.lstsq(fit.weights, values, rcond=None)
        np.testing.assert_allclose(fit.centers, expected, atol=1e-8)
        np.testing.assert_allclose(np.linalg.norm(fit.centers, axis=1), 1.0)
        assert fit.error == pytest.approx(reconstruction_error(values, fit.memberships, fit.centers, fit.scales))

    def test_recovers_blobs_with_per_sample_factors(self):
        values, labels = generate_blobs(100, 50, 3, low=1.0, high=10.0, noise=0.3, seed=5)
        factors = np.random.default_rng(5).uniform(0.3, 3.0, size=100)
        scaled = values * factors[:, None]

        fit = fit_memberships(scaled, 3, anchors=select_anchors(scaled, 3, random_state=0))
        assert matched_accuracy(labels, fit.memberships.argmax(axis=1)) >= 0.95
        # scales follow the factors up to one constant per cluster
        for k in range(3):
            members = fit.memberships.argmax(axis=1) == k
            ratio = fit.scales[members] / factors[members]
            assert ratio.std() / ratio.mean() < 0.1

    def test_driver_recovers_blobs_with_per_sample_factors(self):
        values, labels = generate_blobs(100, 50, 3, low=1.0, high=10.0, noise=0.3, seed=5)
        factors = np.random.default_rng(6).uniform(0.3, 3.0, size=100)
        result = run_soup(values * factors[:, None], [3])
        assert result.compare(3, labels)["accuracy"] >= 0.95

    def test_refit_from_solution_is_stable(self, three_blobs):
        values, _ = three_blobs
        fit = fit_memberships(values, 3, anchors=select_anchors(values, 3, random_state=0))
        refit = fit_memberships(
            values,
            3,
            init_centers=fit.centers,
            init_memberships=fit.memberships,
        )
        assert refit.error <= fit.error * (1 + 1e-9)
        assert refit.error >= fit.error * (1 - 1e-4)

    def test_iteration_cap_reports_non_convergence(self, soft_mixture, make_anchors, caplog):
        values, memberships, _ = soft_mixture
        with caplog.at_level(logging.WARNING, logger="soupclust"):
            fit = fit_memberships(values, 3, anchors=make_anchors(memberships), max_iter=0)
        assert not fit.converged
        assert fit.n_iter == 0
        assert len(fit.error_history) == 1
        assert _on_simplex(fit.memberships)
        assert "did not converge" in caplog.text

    def test_worker_count_does_not_change_result(self, soft_mixture, make_anchors):
        values, memberships, _ = soft_mixture
        anchors = make_anchors(memberships)
        serial = fit_memberships(values, 3, anchors=anchors, n_jobs=1)
        threaded = fit_memberships(values, 3, anchors=anchors, n_jobs=2)
        np.testing.assert_allclose(serial.memberships, threaded.memberships, atol=1e-8)
        assert serial.error == pytest.approx(threaded.error, rel=1e-8)

    def test_needs_exactly_one_start(self, soft_mixture, make_anchors):
        values, memberships, centers = soft_mixture
        with pytest.raises(ValueError):
            fit_memberships(values, 3)
        with pytest.raises(ValueError):
            fit_memberships(values, 3, anchors=make_anchors(memberships), init_centers=centers)

    def test_anchor_cluster_count_must_match(self, soft_mixture, make_anchors):
        values, memberships, _ = soft_mixture
        with pytest.raises(ValueError):
            fit_memberships(values, 4, anchors=make_anchors(memberships))

    def test_init_centers_shape_checked(self, soft_mixture):
        values, _, centers = soft_mixture
        with pytest.raises(ValueError):
            fit_memberships(values, 3, init_centers=centers[:, :5])
