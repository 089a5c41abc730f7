"""
Unit tests for camera models and reprojection residuals
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfm_refine.core.bundle_adjustment.cameras import (
    CAMERA_MODELS,
    CameraModel,
    PinholeIntrinsic,
    PinholeIntrinsicBrownT2,
    PinholeIntrinsicFisheye,
    PinholeIntrinsicRadialK1,
    PinholeIntrinsicRadialK3,
    ReprojectionResidual,
    check_camera_model,
    intrinsic_to_cost_function,
)
from sfm_refine.core.bundle_adjustment.config import IntrinsicParameterType
from sfm_refine.core.bundle_adjustment.errors import UnsupportedCameraModel
from sfm_refine.core.bundle_adjustment.scene import Pose3
from sfm_refine.utils.geometry import look_at_rotation, rotation_matrix_to_angle_axis


def make_pose():
    center = np.array([3.0, 1.0, -8.0])
    return Pose3(look_at_rotation(center, np.zeros(3)), center)


def extrinsics_of(pose):
    return np.concatenate([rotation_matrix_to_angle_axis(pose.rotation), pose.translation])


class TestPinhole:
    """Test the distortion-free pinhole model"""

    def test_params_layout(self):
        """Parameter vector is [focal, ppx, ppy]"""
        intrinsic = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0)
        assert intrinsic.params() == [800.0, 320.0, 240.0]
        assert intrinsic.param_count == 3
        assert intrinsic.model_type == CameraModel.PINHOLE_CAMERA

    def test_projection_of_optical_axis(self):
        """A point on the optical axis lands on the principal point"""
        intrinsic = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0)
        pose = Pose3()
        assert np.allclose(intrinsic.project(pose, [0.0, 0.0, 5.0]), [320.0, 240.0])
        assert np.allclose(intrinsic.project(pose, [1.0, -0.5, 2.0]), [720.0, 40.0])

    def test_update_from_params(self):
        """Refined parameters rebuild the calibration matrix"""
        intrinsic = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0)
        assert intrinsic.update_from_params([900.0, 300.0, 200.0])
        assert intrinsic.focal == 900.0
        assert np.allclose(intrinsic.principal_point, [300.0, 200.0])
        assert np.allclose(intrinsic.K @ intrinsic.Kinv, np.eye(3))

    def test_update_from_params_wrong_size(self):
        """A vector of the wrong size is rejected and nothing changes"""
        intrinsic = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0)
        assert not intrinsic.update_from_params([900.0, 300.0])
        assert intrinsic.params() == [800.0, 320.0, 240.0]

    def test_wrong_distortion_size(self):
        with pytest.raises(ValueError):
            PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0, distortion=[0.1])


class TestDistortionModels:
    """Test the distortion variants"""

    def test_radial_k1(self):
        """x_d = x_u (1 + k1 r²)"""
        x = np.array([0.2, -0.1])
        r2 = 0.05
        expected = x * (1.0 + 0.1 * r2)
        assert np.allclose(PinholeIntrinsicRadialK1.distort(np.array([0.1]), x), expected)

    def test_radial_k3(self):
        x = np.array([0.3, 0.4])
        r2 = 0.25
        k = np.array([0.1, -0.05, 0.01])
        expected = x * (1.0 + k[0] * r2 + k[1] * r2 ** 2 + k[2] * r2 ** 3)
        assert np.allclose(PinholeIntrinsicRadialK3.distort(k, x), expected)

    def test_brown_tangential(self):
        """Tangential terms only: radial coefficients set to zero"""
        x = np.array([0.3, 0.4])
        t1, t2 = 0.01, 0.02
        r2 = 0.25
        expected = np.array([
            0.3 + t2 * (r2 + 2 * 0.09) + 2 * t1 * 0.12,
            0.4 + t1 * (r2 + 2 * 0.16) + 2 * t2 * 0.12,
        ])
        distorted = PinholeIntrinsicBrownT2.distort(np.array([0.0, 0.0, 0.0, t1, t2]), x)
        assert np.allclose(distorted, expected)

    def test_fisheye_center_is_fixed(self):
        """The fisheye model leaves the image center untouched"""
        k = np.array([0.1, 0.2, 0.3, 0.4])
        x = np.array([0.0, 0.0])
        assert np.array_equal(PinholeIntrinsicFisheye.distort(k, x), x)

    def test_fisheye_without_coefficients(self):
        """With zero coefficients r_d = atan(r)"""
        x = np.array([0.6, 0.8])
        distorted = PinholeIntrinsicFisheye.distort(np.zeros(4), x)
        assert np.linalg.norm(distorted) == pytest.approx(np.arctan(1.0))

    def test_zero_distortion_matches_pinhole(self):
        """Polynomial models reduce to the pinhole projection with zero coefficients"""
        pose = make_pose()
        X = np.array([0.5, -0.3, 0.2])
        expected = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0).project(pose, X)
        for model_type, cls in CAMERA_MODELS.items():
            if model_type == CameraModel.PINHOLE_CAMERA_FISHEYE:
                continue
            intrinsic = cls(640, 480, 800.0, 320.0, 240.0)
            assert np.allclose(intrinsic.project(pose, X), expected), model_type

    def test_zero_coefficient_fisheye_projection(self):
        """Fisheye with zero coefficients scales the normalized point by atan(r) / r"""
        pose = make_pose()
        X = np.array([0.5, -0.3, 0.2])
        X_cam = pose.transform_point(X)
        x_u = X_cam[:2] / X_cam[2]
        r = np.linalg.norm(x_u)
        expected = 800.0 * x_u * (np.arctan(r) / r) + np.array([320.0, 240.0])

        intrinsic = PinholeIntrinsicFisheye(640, 480, 800.0, 320.0, 240.0)
        assert np.allclose(intrinsic.project(pose, X), expected)


class TestSubsetParameterization:
    """Test constant indices under intrinsic policies"""

    def test_adjust_all(self):
        intrinsic = PinholeIntrinsicBrownT2(640, 480, 800.0, 320.0, 240.0)
        assert intrinsic.subset_parameterization(IntrinsicParameterType.ADJUST_ALL) == []

    def test_focal_only(self):
        intrinsic = PinholeIntrinsicBrownT2(640, 480, 800.0, 320.0, 240.0)
        policy = IntrinsicParameterType.ADJUST_FOCAL_LENGTH
        assert intrinsic.subset_parameterization(policy) == [1, 2, 3, 4, 5, 6, 7]

    def test_focal_and_distortion(self):
        intrinsic = PinholeIntrinsicRadialK3(640, 480, 800.0, 320.0, 240.0)
        policy = IntrinsicParameterType.ADJUST_FOCAL_LENGTH | IntrinsicParameterType.ADJUST_DISTORTION
        assert intrinsic.subset_parameterization(policy) == [1, 2]

    def test_pinhole_has_no_distortion_indices(self):
        intrinsic = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0)
        policy = IntrinsicParameterType.ADJUST_PRINCIPAL_POINT
        assert intrinsic.subset_parameterization(policy) == [0]


class TestReprojectionResidual:
    """Test residuals dispatched on the camera model"""

    def test_zero_at_exact_observation(self):
        """Residual vanishes for the exact projection"""
        intrinsic = PinholeIntrinsicRadialK3(640, 480, 800.0, 320.0, 240.0, 0.05, -0.01, 0.001)
        pose = make_pose()
        X = np.array([0.4, 0.1, -0.3])

        cost_function = intrinsic_to_cost_function(intrinsic, intrinsic.project(pose, X))
        residual = cost_function(np.array(intrinsic.params()), extrinsics_of(pose), X)
        assert residual.shape == (2,)
        assert np.allclose(residual, 0.0, atol=1e-9)

    def test_matches_intrinsic_residual(self):
        """Angle-axis projection agrees with the Pose3 projection"""
        intrinsic = PinholeIntrinsicFisheye(640, 480, 500.0, 320.0, 240.0, 0.01, 0.02, 0.0, 0.0)
        pose = make_pose()
        X = np.array([0.4, 0.1, -0.3])
        observation = np.array([300.0, 250.0])

        cost_function = ReprojectionResidual(intrinsic.model_type, observation)
        residual = cost_function(np.array(intrinsic.params()), extrinsics_of(pose), X)
        assert np.allclose(residual, intrinsic.residual(pose, X, observation))

    def test_weight_scales_residual(self):
        intrinsic = PinholeIntrinsic(640, 480, 800.0, 320.0, 240.0)
        pose = make_pose()
        X = np.array([0.0, 0.0, 0.0])
        observation = intrinsic.project(pose, X) + np.array([1.0, -2.0])

        unweighted = intrinsic_to_cost_function(intrinsic, observation)
        weighted = intrinsic_to_cost_function(intrinsic, observation, weight=20.0)
        args = (np.array(intrinsic.params()), extrinsics_of(pose), X)
        assert np.allclose(unweighted(*args), [-1.0, 2.0])
        assert np.allclose(weighted(*args), [-20.0, 40.0])

    def test_unsupported_model(self):
        """Unknown model tags raise UnsupportedCameraModel"""

        class Spherical:
            model_type = "SPHERICAL"

        with pytest.raises(UnsupportedCameraModel) as excinfo:
            check_camera_model(Spherical(), 3)
        assert excinfo.value.intrinsic_id == 3

        with pytest.raises(UnsupportedCameraModel):
            intrinsic_to_cost_function(Spherical(), np.zeros(2))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
