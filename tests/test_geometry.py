"""
Unit tests for rotation helpers
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfm_refine.utils.geometry import (
    angle_axis_rotate_point,
    angle_axis_to_rotation_matrix,
    is_rotation_matrix,
    look_at_rotation,
    rotation_matrix_to_angle_axis,
)


class TestAngleAxis:
    """Test angle-axis conversions"""

    def test_matrix_round_trip(self):
        angle_axis = np.array([0.3, -0.2, 0.9])
        R = angle_axis_to_rotation_matrix(angle_axis)
        assert is_rotation_matrix(R)
        assert np.allclose(rotation_matrix_to_angle_axis(R), angle_axis)

    def test_rotate_point_matches_matrix(self):
        angle_axis = np.array([0.3, -0.2, 0.9])
        point = np.array([1.0, 2.0, -3.0])
        expected = angle_axis_to_rotation_matrix(angle_axis) @ point
        assert np.allclose(angle_axis_rotate_point(angle_axis, point), expected)

    def test_rotate_point_small_angle(self):
        angle_axis = np.array([1e-10, 0.0, 0.0])
        point = np.array([0.0, 1.0, 0.0])
        rotated = angle_axis_rotate_point(angle_axis, point)
        assert np.allclose(rotated, [0.0, 1.0, 1e-10], atol=1e-15)

    def test_zero_rotation(self):
        point = np.array([1.0, 2.0, 3.0])
        assert np.array_equal(angle_axis_rotate_point(np.zeros(3), point), point)


class TestRotationMatrix:
    """Test rotation matrix helpers"""

    def test_not_a_rotation(self):
        assert not is_rotation_matrix(np.diag([1.0, 1.0, -1.0]))
        assert not is_rotation_matrix(2.0 * np.eye(3))
        assert not is_rotation_matrix(np.eye(2))

    def test_look_at(self):
        """The optical axis of the camera points at the target"""
        center = np.array([5.0, 1.0, 5.0])
        R = look_at_rotation(center, np.zeros(3))
        assert is_rotation_matrix(R)

        target_in_camera = R @ (np.zeros(3) - center)
        assert np.allclose(target_in_camera[:2], 0.0, atol=1e-12)
        assert target_in_camera[2] > 0.0

    def test_look_at_parallel_to_up(self):
        with pytest.raises(ValueError):
            look_at_rotation(np.array([0.0, 5.0, 0.0]), np.zeros(3))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
