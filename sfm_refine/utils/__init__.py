"""
Utility helpers
"""

from .geometry import (
    angle_axis_rotate_point,
    angle_axis_to_rotation_matrix,
    rotation_matrix_to_angle_axis,
    is_rotation_matrix,
    look_at_rotation,
)

__all__ = [
    "angle_axis_rotate_point",
    "angle_axis_to_rotation_matrix",
    "rotation_matrix_to_angle_axis",
    "is_rotation_matrix",
    "look_at_rotation",
]
