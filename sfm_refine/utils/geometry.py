"""
Rotation helpers shared by the camera models and the adjuster

Angle-axis vectors are the minimal rotation parameterization used inside
the optimization problem; rotation matrices are what the scene stores.
"""

import numpy as np
from scipy.spatial.transform import Rotation

# Below this squared angle the rotation is replaced by its first order expansion
_SMALL_ANGLE_SQ = np.finfo(np.float64).eps


def rotation_matrix_to_angle_axis(R: np.ndarray) -> np.ndarray:
    """Convert a 3x3 rotation matrix to an angle-axis vector (3,)"""
    return Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_rotvec()


def angle_axis_to_rotation_matrix(angle_axis: np.ndarray) -> np.ndarray:
    """Convert an angle-axis vector (3,) to a 3x3 rotation matrix"""
    return Rotation.from_rotvec(np.asarray(angle_axis, dtype=np.float64)).as_matrix()


def angle_axis_rotate_point(angle_axis: np.ndarray, point: np.ndarray) -> np.ndarray:
    """
    Rotate a 3D point by an angle-axis vector (Rodrigues formula)

    Called once per residual evaluation, so no matrix is built.
    """
    theta2 = float(angle_axis @ angle_axis)
    if theta2 > _SMALL_ANGLE_SQ:
        theta = np.sqrt(theta2)
        w = angle_axis / theta
        cos_theta = np.cos(theta)
        sin_theta = np.sin(theta)
        w_cross_pt = np.cross(w, point)
        tmp = (w @ point) * (1.0 - cos_theta)
        return point * cos_theta + w_cross_pt * sin_theta + w * tmp

    return point + np.cross(angle_axis, point)


def is_rotation_matrix(R: np.ndarray, atol: float = 1e-9) -> bool:
    """Check orthonormality and positive determinant"""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        return False
    return bool(
        np.allclose(R @ R.T, np.eye(3), atol=atol)
        and abs(np.linalg.det(R) - 1.0) < atol
    )


def look_at_rotation(center: np.ndarray, target: np.ndarray,
                     up: np.ndarray = np.array([0.0, 1.0, 0.0])) -> np.ndarray:
    """World-to-camera rotation of a camera at `center` looking at `target`"""
    z = np.asarray(target, dtype=np.float64) - np.asarray(center, dtype=np.float64)
    z /= np.linalg.norm(z)
    x = np.cross(up, z)
    norm_x = np.linalg.norm(x)
    if norm_x < 1e-12:
        raise ValueError("Viewing direction is parallel to the up vector")
    x /= norm_x
    y = np.cross(z, x)
    return np.vstack([x, y, z])
