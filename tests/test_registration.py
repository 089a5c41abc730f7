"""
Unit tests for the robust similarity registration
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfm_refine.core.bundle_adjustment.config import RegistrationConfig
from sfm_refine.core.bundle_adjustment.errors import DegenerateRegistration
from sfm_refine.core.bundle_adjustment.registration import (
    Similarity3,
    compute_similarity,
    least_median_of_squares,
    num_lmeds_samples,
    register_scene_to_priors,
)
from sfm_refine.core.bundle_adjustment.scene import Landmark, Pose3, SfMData, View, ViewPrior
from sfm_refine.utils.geometry import angle_axis_to_rotation_matrix


TRUE_SIMILARITY = Similarity3(
    1.5,
    angle_axis_to_rotation_matrix([0.1, -0.4, 0.7]),
    [10.0, -20.0, 5.0],
)


def random_points(n, seed=0):
    return np.random.default_rng(seed).uniform(-10.0, 10.0, size=(n, 3))


class TestClosedForm:
    """Test the Umeyama similarity fit"""

    def test_exact_recovery(self):
        X = random_points(10)
        similarity = compute_similarity(X, TRUE_SIMILARITY(X))

        assert similarity.scale == pytest.approx(1.5, abs=1e-9)
        assert np.allclose(similarity.rotation, TRUE_SIMILARITY.rotation, atol=1e-9)
        assert np.allclose(similarity.translation, TRUE_SIMILARITY.translation, atol=1e-9)

    def test_minimal_sample(self):
        X = random_points(3)
        similarity = compute_similarity(X, TRUE_SIMILARITY(X))
        assert np.allclose(similarity(X), TRUE_SIMILARITY(X), atol=1e-9)

    def test_reflection_is_not_returned(self):
        X = random_points(10)
        mirrored = X * np.array([1.0, 1.0, -1.0])
        similarity = compute_similarity(X, mirrored)
        assert np.linalg.det(similarity.rotation) == pytest.approx(1.0)

    def test_collinear_points(self):
        X = np.outer(np.arange(5.0), [1.0, 2.0, 3.0])
        with pytest.raises(DegenerateRegistration):
            compute_similarity(X, X)

    def test_too_few_points(self):
        X = random_points(2)
        with pytest.raises(DegenerateRegistration):
            compute_similarity(X, X)


class TestLeastMedianOfSquares:
    """Test the robust fit"""

    def test_sample_count(self):
        assert num_lmeds_samples(0.99, 0.5) == 35
        assert num_lmeds_samples(0.99, 0.0) == 1

    def test_outliers_are_rejected(self):
        """40% gross outliers do not bias the model"""
        X = random_points(20)
        Y = TRUE_SIMILARITY(X)
        outliers = np.arange(0, 20, 2)[:8]
        Y[outliers] += np.random.default_rng(1).uniform(50.0, 100.0, size=(8, 3))

        config = RegistrationConfig(probability=0.9999, min_iterations=200)
        similarity, median, inliers = least_median_of_squares(X, Y, config)

        assert similarity.scale == pytest.approx(1.5, abs=1e-6)
        assert np.allclose(similarity.rotation, TRUE_SIMILARITY.rotation, atol=1e-6)
        assert np.allclose(similarity.translation, TRUE_SIMILARITY.translation, atol=1e-6)
        assert median < 1e-12
        assert not inliers[outliers].any()

    def test_outliers_rejected_with_defaults(self):
        """The default configuration tolerates 4 gross outliers out of 10"""
        X = random_points(10)
        Y = TRUE_SIMILARITY(X)
        outliers = np.array([1, 4, 6, 8])
        Y[outliers] += np.random.default_rng(5).uniform(50.0, 100.0, size=(4, 3))

        similarity, median, inliers = least_median_of_squares(X, Y, RegistrationConfig())

        assert similarity.scale == pytest.approx(1.5, abs=1e-6)
        assert np.allclose(similarity.rotation, TRUE_SIMILARITY.rotation, atol=1e-6)
        assert np.allclose(similarity.translation, TRUE_SIMILARITY.translation, atol=1e-6)
        assert median < 1e-12
        assert not inliers[outliers].any()

    def test_deterministic_for_seed(self):
        X = random_points(12)
        Y = TRUE_SIMILARITY(X) + np.random.default_rng(2).normal(scale=0.01, size=(12, 3))
        config = RegistrationConfig(seed=7)

        first = least_median_of_squares(X, Y, config)
        second = least_median_of_squares(X, Y, config)
        assert first[1] == second[1]
        assert np.array_equal(first[0].rotation, second[0].rotation)

    def test_too_few_correspondences(self):
        X = random_points(2)
        with pytest.raises(DegenerateRegistration):
            least_median_of_squares(X, X)


def make_scene(num_views, with_priors=True):
    sfm_data = SfMData()
    centers = random_points(num_views, seed=3)
    for view_id, center in enumerate(centers):
        prior = ViewPrior(TRUE_SIMILARITY(center)) if with_priors else None
        sfm_data.views[view_id] = View(view_id, view_id, 0, prior=prior)
        sfm_data.poses[view_id] = Pose3(np.eye(3), center)
    sfm_data.structure[0] = Landmark([1.0, 2.0, 3.0])
    sfm_data.control_points[0] = Landmark([4.0, 5.0, 6.0])
    return sfm_data


class TestRegisterScene:
    """Test registration of a whole scene"""

    def test_scene_is_registered(self):
        sfm_data = make_scene(6)
        result = register_scene_to_priors(sfm_data)

        assert result.applied
        assert result.num_correspondences == 6
        for view in sfm_data.views.values():
            assert np.allclose(sfm_data.poses[view.pose_id].center, view.prior.pose_center, atol=1e-6)
        assert np.allclose(sfm_data.structure[0].X, TRUE_SIMILARITY([1.0, 2.0, 3.0]), atol=1e-6)
        assert np.allclose(sfm_data.poses[0].rotation, TRUE_SIMILARITY.rotation.T, atol=1e-9)

    def test_control_points_are_not_moved(self):
        sfm_data = make_scene(6)
        register_scene_to_priors(sfm_data)
        assert np.array_equal(sfm_data.control_points[0].X, [4.0, 5.0, 6.0])

    def test_three_views_is_a_no_op(self):
        sfm_data = make_scene(3)
        result = register_scene_to_priors(sfm_data)

        assert not result.applied
        assert np.array_equal(sfm_data.structure[0].X, [1.0, 2.0, 3.0])

    def test_no_priors_is_a_no_op(self):
        sfm_data = make_scene(6, with_priors=False)
        result = register_scene_to_priors(sfm_data)
        assert not result.applied
        assert result.num_correspondences == 0

    def test_too_few_priors_is_skipped(self):
        """Two usable priors cannot define a similarity"""
        sfm_data = make_scene(6)
        for view_id in range(2, 6):
            sfm_data.views[view_id].prior.use_pose_center = False

        result = register_scene_to_priors(sfm_data)
        assert not result.applied
        assert result.num_correspondences == 2
        assert np.array_equal(sfm_data.structure[0].X, [1.0, 2.0, 3.0])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
