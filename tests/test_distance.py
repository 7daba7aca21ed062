import numpy as np
import pytest

from soupclust.distance import nearest_center, scale_invariant_distance, unit_rows


class TestDistance:
    rng = np.random.default_rng(0)
    samples = rng.uniform(0.0, 10.0, size=(20, 8))
    centers = rng.uniform(0.0, 10.0, size=(3, 8))

    def test_shape_and_range(self):
        distances = scale_invariant_distance(self.samples, self.centers)
        assert distances.shape == (20, 3)
        assert (distances >= 0).all() and (distances <= 4).all()

    def test_invariant_to_scale_of_either_argument(self):
        base = scale_invariant_distance(self.samples, self.centers)
        np.testing.assert_allclose(scale_invariant_distance(self.samples * 7.5, self.centers), base, atol=1e-12)
        np.testing.assert_allclose(scale_invariant_distance(self.samples, self.centers * 0.01), base, atol=1e-12)

    def test_per_sample_scale_does_not_change_distance(self):
        factors = self.rng.uniform(0.1, 100.0, size=(20, 1))
        np.testing.assert_allclose(
            scale_invariant_distance(self.samples * factors, self.centers),
            scale_invariant_distance(self.samples, self.centers),
            atol=1e-12,
        )

    def test_same_direction_is_zero(self):
        distances = scale_invariant_distance(self.centers * 3.0, self.centers)
        np.testing.assert_allclose(np.diag(distances), 0.0, atol=1e-12)

    def test_unit_rows_rejects_zero_rows(self):
        with pytest.raises(ValueError):
            unit_rows(np.array([[1.0, 2.0], [0.0, 0.0]]))

    def test_nearest_center_tie_goes_to_lowest_index(self):
        centers = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 2.0]])
        samples = np.array([[0.0, 5.0], [1.0, 1.0]])
        assert nearest_center(samples, centers).tolist() == [1, 0]
