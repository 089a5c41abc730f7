"""
Scene model consumed by the bundle adjuster

Holds views, camera poses, intrinsics, landmarks (tracks), ground control
points and per-view geo priors. The caller owns the scene; an adjustment
mutates poses, intrinsics and point coordinates in place.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import numpy as np

from ...utils.geometry import is_rotation_matrix


class Pose3:
    """Camera pose stored as a world-to-camera rotation and a camera center"""

    def __init__(self, rotation: Optional[np.ndarray] = None,
                 center: Optional[np.ndarray] = None):
        self.rotation = np.eye(3) if rotation is None else np.array(rotation, dtype=np.float64)
        self.center = np.zeros(3) if center is None else np.array(center, dtype=np.float64).reshape(3)

    @classmethod
    def from_rotation_translation(cls, rotation: np.ndarray, translation: np.ndarray) -> "Pose3":
        rotation = np.asarray(rotation, dtype=np.float64)
        translation = np.asarray(translation, dtype=np.float64).reshape(3)
        return cls(rotation, -rotation.T @ translation)

    @property
    def translation(self) -> np.ndarray:
        return -self.rotation @ self.center

    def transform_point(self, X: np.ndarray) -> np.ndarray:
        """World point to camera frame"""
        return self.rotation @ (np.asarray(X, dtype=np.float64) - self.center)

    def apply_similarity(self, similarity) -> None:
        """Compose the pose on the left by a similarity (in place)"""
        self.rotation = self.rotation @ similarity.rotation.T
        self.center = similarity(self.center)

    def is_valid(self) -> bool:
        return is_rotation_matrix(self.rotation) and np.all(np.isfinite(self.center))

    def copy(self) -> "Pose3":
        return Pose3(self.rotation.copy(), self.center.copy())

    def __repr__(self) -> str:
        return f"Pose3(rotation={self.rotation.tolist()}, center={self.center.tolist()})"


@dataclass
class ViewPrior:
    """Geo-referenced prior on the camera center of a view"""

    pose_center: np.ndarray
    center_weight: float = 1.0
    use_pose_center: bool = True

    def __post_init__(self):
        self.pose_center = np.asarray(self.pose_center, dtype=np.float64).reshape(3)


@dataclass
class View:
    """One image: references a pose and an intrinsic, optionally a geo prior"""

    view_id: int
    pose_id: int
    intrinsic_id: int
    image_path: str = ""
    prior: Optional[ViewPrior] = None

    def has_usable_prior(self) -> bool:
        return self.prior is not None and self.prior.use_pose_center


@dataclass
class Observation:
    """2D image measurement of a landmark"""

    x: np.ndarray
    id_feat: Optional[int] = None

    def __post_init__(self):
        self.x = np.asarray(self.x, dtype=np.float64).reshape(2)


@dataclass
class Landmark:
    """3D point and its observations, keyed by view id"""

    X: np.ndarray
    obs: Dict[int, Observation] = field(default_factory=dict)

    def __post_init__(self):
        # Float storage: the adjuster writes refined coordinates into this array
        self.X = np.array(self.X, dtype=np.float64).reshape(3)
        self.obs = {
            view_id: ob if isinstance(ob, Observation) else Observation(ob)
            for view_id, ob in self.obs.items()
        }


@dataclass
class SfMData:
    """Structure-from-motion scene"""

    views: Dict[int, View] = field(default_factory=dict)
    poses: Dict[int, Pose3] = field(default_factory=dict)
    intrinsics: Dict[int, Any] = field(default_factory=dict)
    structure: Dict[int, Landmark] = field(default_factory=dict)
    control_points: Dict[int, Landmark] = field(default_factory=dict)

    def is_pose_and_intrinsic_defined(self, view: View) -> bool:
        return view.pose_id in self.poses and view.intrinsic_id in self.intrinsics

    def pose_of(self, view: View) -> Optional[Pose3]:
        return self.poses.get(view.pose_id)

    def views_with_usable_prior(self) -> List[View]:
        """Views carrying a usable prior whose pose exists, ordered by view id"""
        return [
            view for _, view in sorted(self.views.items())
            if view.has_usable_prior() and view.pose_id in self.poses
        ]

    def num_observations(self) -> int:
        return sum(len(landmark.obs) for landmark in self.structure.values())
