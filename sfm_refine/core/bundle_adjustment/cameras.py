"""
Camera models supported by the bundle adjuster

The set of models is closed: pinhole, and pinhole with one of four
distortion models. Each model exposes its parameter vector
[focal, ppx, ppy, distortion...], a projection function, and the indices
that stay fixed under a given intrinsic adjustment policy. Residuals are
dispatched on the model tag.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Sequence, Type

import numpy as np

from .config import IntrinsicParameterType
from .errors import UnsupportedCameraModel
from ...utils.geometry import angle_axis_rotate_point


class CameraModel(Enum):
    """Camera model tags"""
    PINHOLE_CAMERA = "pinhole"
    PINHOLE_CAMERA_RADIAL1 = "pinhole_radial_k1"
    PINHOLE_CAMERA_RADIAL3 = "pinhole_radial_k3"
    PINHOLE_CAMERA_BROWN = "pinhole_brown_t2"
    PINHOLE_CAMERA_FISHEYE = "pinhole_fisheye"


class IntrinsicBase(ABC):
    """
    Abstract base class for camera intrinsics

    All intrinsics must implement:
    - params / update_from_params: the optimizer-facing parameter vector
    - subset_parameterization: indices held fixed under a policy
    - project: pixel position of a world point seen from a pose
    """

    model_type: CameraModel

    def __init__(self, width: int = 0, height: int = 0):
        self.width = int(width)
        self.height = int(height)

    @abstractmethod
    def params(self) -> List[float]:
        """Parameter vector exposed to the optimizer"""
        pass

    @abstractmethod
    def update_from_params(self, params: Sequence[float]) -> bool:
        """Set the parameters from a refined vector; False if its size does not match"""
        pass

    @abstractmethod
    def subset_parameterization(self, policy: IntrinsicParameterType) -> List[int]:
        """Indices of the parameter vector to hold constant under `policy`"""
        pass

    @abstractmethod
    def project(self, pose, X: np.ndarray) -> np.ndarray:
        """Project a world point with the given Pose3 to pixel coordinates"""
        pass

    @property
    def param_count(self) -> int:
        return len(self.params())

    def residual(self, pose, X: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Projected minus observed pixel"""
        return self.project(pose, X) - np.asarray(x, dtype=np.float64)


class PinholeIntrinsic(IntrinsicBase):
    """Pinhole camera with a single focal length and no distortion"""

    model_type = CameraModel.PINHOLE_CAMERA
    num_distortion_params = 0

    def __init__(self, width: int = 0, height: int = 0, focal: float = 1.0,
                 ppx: float = 0.0, ppy: float = 0.0,
                 distortion: Optional[Sequence[float]] = None):
        super().__init__(width, height)
        self._set_calibration(focal, ppx, ppy)
        if distortion is None:
            distortion = np.zeros(self.num_distortion_params)
        distortion = np.array(distortion, dtype=np.float64).reshape(-1)
        if distortion.size != self.num_distortion_params:
            raise ValueError(
                f"{type(self).__name__} expects {self.num_distortion_params} "
                f"distortion parameters, got {distortion.size}"
            )
        self._distortion = distortion

    def _set_calibration(self, focal: float, ppx: float, ppy: float) -> None:
        # K and its inverse are derived values, refreshed whenever the parameters change
        self.K = np.array([
            [focal, 0.0, ppx],
            [0.0, focal, ppy],
            [0.0, 0.0, 1.0],
        ])
        self.Kinv = np.linalg.inv(self.K) if focal != 0.0 else np.full((3, 3), np.nan)

    @property
    def focal(self) -> float:
        return float(self.K[0, 0])

    @property
    def principal_point(self) -> np.ndarray:
        return self.K[:2, 2].copy()

    def params(self) -> List[float]:
        return [self.focal, float(self.K[0, 2]), float(self.K[1, 2])] + self._distortion.tolist()

    def update_from_params(self, params: Sequence[float]) -> bool:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != 3 + self.num_distortion_params:
            return False
        self._set_calibration(params[0], params[1], params[2])
        self._distortion = params[3:].copy()
        return True

    def subset_parameterization(self, policy: IntrinsicParameterType) -> List[int]:
        constant_indices = []
        if not policy & IntrinsicParameterType.ADJUST_FOCAL_LENGTH:
            constant_indices.append(0)
        if not policy & IntrinsicParameterType.ADJUST_PRINCIPAL_POINT:
            constant_indices.extend([1, 2])
        if self.num_distortion_params and not policy & IntrinsicParameterType.ADJUST_DISTORTION:
            constant_indices.extend(range(3, 3 + self.num_distortion_params))
        return constant_indices

    @staticmethod
    def distort(distortion: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Map undistorted normalized coordinates to distorted ones"""
        return x

    def add_disto(self, x: np.ndarray) -> np.ndarray:
        return self.distort(self._distortion, np.asarray(x, dtype=np.float64))

    def cam2ima(self, x: np.ndarray) -> np.ndarray:
        """Normalized camera plane to pixel"""
        return self.focal * x + self.K[:2, 2]

    def project(self, pose, X: np.ndarray) -> np.ndarray:
        X_cam = pose.transform_point(X)
        return self.cam2ima(self.add_disto(X_cam[:2] / X_cam[2]))

    @classmethod
    def project_from_params(cls, cam_params: np.ndarray, cam_extrinsics: np.ndarray,
                            X: np.ndarray) -> np.ndarray:
        """
        Projection used by the reprojection residuals

        Args:
            cam_params: [focal, ppx, ppy, distortion...]
            cam_extrinsics: [angle-axis (3), translation (3)]
            X: world point (3,)
        """
        X_cam = angle_axis_rotate_point(cam_extrinsics[:3], X) + cam_extrinsics[3:6]
        x_u = X_cam[:2] / X_cam[2]
        x_d = cls.distort(cam_params[3:], x_u)
        return cam_params[0] * x_d + cam_params[1:3]

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(width={self.width}, height={self.height}, "
                f"params={self.params()})")


class PinholeIntrinsicRadialK1(PinholeIntrinsic):
    """Pinhole camera with one radial distortion coefficient"""

    model_type = CameraModel.PINHOLE_CAMERA_RADIAL1
    num_distortion_params = 1

    def __init__(self, width: int = 0, height: int = 0, focal: float = 1.0,
                 ppx: float = 0.0, ppy: float = 0.0, k1: float = 0.0):
        super().__init__(width, height, focal, ppx, ppy, [k1])

    @staticmethod
    def distort(distortion: np.ndarray, x: np.ndarray) -> np.ndarray:
        k1 = distortion[0]
        r2 = x[0] * x[0] + x[1] * x[1]
        return x * (1.0 + k1 * r2)


class PinholeIntrinsicRadialK3(PinholeIntrinsic):
    """Pinhole camera with three radial distortion coefficients"""

    model_type = CameraModel.PINHOLE_CAMERA_RADIAL3
    num_distortion_params = 3

    def __init__(self, width: int = 0, height: int = 0, focal: float = 1.0,
                 ppx: float = 0.0, ppy: float = 0.0,
                 k1: float = 0.0, k2: float = 0.0, k3: float = 0.0):
        super().__init__(width, height, focal, ppx, ppy, [k1, k2, k3])

    @staticmethod
    def distort(distortion: np.ndarray, x: np.ndarray) -> np.ndarray:
        k1, k2, k3 = distortion[:3]
        r2 = x[0] * x[0] + x[1] * x[1]
        r4 = r2 * r2
        r6 = r4 * r2
        return x * (1.0 + k1 * r2 + k2 * r4 + k3 * r6)


class PinholeIntrinsicBrownT2(PinholeIntrinsic):
    """Pinhole camera with three radial and two tangential coefficients"""

    model_type = CameraModel.PINHOLE_CAMERA_BROWN
    num_distortion_params = 5

    def __init__(self, width: int = 0, height: int = 0, focal: float = 1.0,
                 ppx: float = 0.0, ppy: float = 0.0,
                 k1: float = 0.0, k2: float = 0.0, k3: float = 0.0,
                 t1: float = 0.0, t2: float = 0.0):
        super().__init__(width, height, focal, ppx, ppy, [k1, k2, k3, t1, t2])

    @staticmethod
    def distort(distortion: np.ndarray, x: np.ndarray) -> np.ndarray:
        k1, k2, k3, t1, t2 = distortion[:5]
        x_u, y_u = x[0], x[1]
        r2 = x_u * x_u + y_u * y_u
        r4 = r2 * r2
        r6 = r4 * r2
        r_coeff = 1.0 + k1 * r2 + k2 * r4 + k3 * r6
        t_x = t2 * (r2 + 2.0 * x_u * x_u) + 2.0 * t1 * x_u * y_u
        t_y = t1 * (r2 + 2.0 * y_u * y_u) + 2.0 * t2 * x_u * y_u
        return np.array([x_u * r_coeff + t_x, y_u * r_coeff + t_y])


class PinholeIntrinsicFisheye(PinholeIntrinsic):
    """Pinhole camera with the four coefficient equidistant fisheye model"""

    model_type = CameraModel.PINHOLE_CAMERA_FISHEYE
    num_distortion_params = 4

    def __init__(self, width: int = 0, height: int = 0, focal: float = 1.0,
                 ppx: float = 0.0, ppy: float = 0.0,
                 k1: float = 0.0, k2: float = 0.0, k3: float = 0.0, k4: float = 0.0):
        super().__init__(width, height, focal, ppx, ppy, [k1, k2, k3, k4])

    @staticmethod
    def distort(distortion: np.ndarray, x: np.ndarray) -> np.ndarray:
        k1, k2, k3, k4 = distortion[:4]
        r = np.sqrt(x[0] * x[0] + x[1] * x[1])
        if r <= 1e-8:
            return x
        theta = np.arctan(r)
        theta2 = theta * theta
        theta4 = theta2 * theta2
        theta6 = theta4 * theta2
        theta8 = theta4 * theta4
        theta_dist = theta * (1.0 + k1 * theta2 + k2 * theta4 + k3 * theta6 + k4 * theta8)
        return x * (theta_dist / r)


CAMERA_MODELS: Dict[CameraModel, Type[PinholeIntrinsic]] = {
    CameraModel.PINHOLE_CAMERA: PinholeIntrinsic,
    CameraModel.PINHOLE_CAMERA_RADIAL1: PinholeIntrinsicRadialK1,
    CameraModel.PINHOLE_CAMERA_RADIAL3: PinholeIntrinsicRadialK3,
    CameraModel.PINHOLE_CAMERA_BROWN: PinholeIntrinsicBrownT2,
    CameraModel.PINHOLE_CAMERA_FISHEYE: PinholeIntrinsicFisheye,
}


def is_valid(model_type) -> bool:
    """True for the camera models the adjuster can build residuals for"""
    return isinstance(model_type, CameraModel) and model_type in CAMERA_MODELS


def check_camera_model(intrinsic, intrinsic_id=None) -> CameraModel:
    """Return the intrinsic's model tag, raising UnsupportedCameraModel if unknown"""
    model_type = getattr(intrinsic, "model_type", None)
    if not is_valid(model_type):
        raise UnsupportedCameraModel(intrinsic_id, model_type)
    return model_type


class ReprojectionResidual:
    """
    2D reprojection residual: projected minus observed pixel

    Parameter blocks: (intrinsic params, [angle-axis, translation], point).
    A non zero weight scales the residual.
    """

    num_residuals = 2

    def __init__(self, model_type: CameraModel, observation: np.ndarray, weight: float = 0.0):
        self.model_type = model_type
        self._project = CAMERA_MODELS[model_type].project_from_params
        self.observation = np.asarray(observation, dtype=np.float64).reshape(2)
        self.weight = float(weight)

    def __call__(self, cam_params: np.ndarray, cam_extrinsics: np.ndarray,
                 X: np.ndarray) -> np.ndarray:
        residual = self._project(cam_params, cam_extrinsics, X) - self.observation
        if self.weight != 0.0:
            residual = residual * self.weight
        return residual


def intrinsic_to_cost_function(intrinsic, observation: np.ndarray, weight: float = 0.0,
                               intrinsic_id=None) -> ReprojectionResidual:
    """Create the reprojection residual matching the intrinsic's camera model"""
    model_type = check_camera_model(intrinsic, intrinsic_id)
    return ReprojectionResidual(model_type, observation, weight)
