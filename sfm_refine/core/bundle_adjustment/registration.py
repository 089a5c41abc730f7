"""
Robust registration of the reconstruction to geo-referenced view priors

Camera centers of the reconstruction are aligned to the prior centers with a
7 DoF similarity (scale, rotation, translation). The fit uses least median
of squares, since no inlier threshold is known in advance: random minimal
samples of three correspondences are fitted in closed form (Umeyama) and the
model with the smallest median squared residual wins. This tolerates just
under 50% grossly wrong priors.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config import RegistrationConfig
from .errors import DegenerateRegistration
from .scene import SfMData

logger = logging.getLogger(__name__)

MINIMUM_SAMPLES = 3


class Similarity3:
    """X' = scale * R X + t"""

    def __init__(self, scale: float = 1.0, rotation: Optional[np.ndarray] = None,
                 translation: Optional[np.ndarray] = None):
        self.scale = float(scale)
        self.rotation = np.eye(3) if rotation is None else np.asarray(rotation, dtype=np.float64)
        self.translation = (np.zeros(3) if translation is None
                            else np.asarray(translation, dtype=np.float64).reshape(3))

    def __call__(self, X: np.ndarray) -> np.ndarray:
        """Transform a point (3,) or an array of points (N, 3)"""
        X = np.asarray(X, dtype=np.float64)
        return self.scale * X @ self.rotation.T + self.translation

    def apply_to_pose(self, pose) -> None:
        pose.apply_similarity(self)

    def __repr__(self) -> str:
        return (f"Similarity3(scale={self.scale:.6g}, rotation={self.rotation.tolist()}, "
                f"translation={self.translation.tolist()})")


@dataclass
class RegistrationResult:
    """Outcome of the geo-registration step"""

    applied: bool = False
    similarity: Optional[Similarity3] = None
    # sqrt of the median squared residual, in prior units
    fitting_error: float = 0.0
    num_correspondences: int = 0
    num_inliers: int = 0


def compute_similarity(X_src: np.ndarray, X_dst: np.ndarray) -> Similarity3:
    """
    Closed form least-squares similarity mapping X_src onto X_dst (Umeyama)

    Args:
        X_src: (N, 3) source points
        X_dst: (N, 3) destination points, N >= 3
    """
    X_src = np.asarray(X_src, dtype=np.float64)
    X_dst = np.asarray(X_dst, dtype=np.float64)
    if X_src.shape != X_dst.shape or X_src.ndim != 2 or X_src.shape[1] != 3:
        raise ValueError(f"Expected two (N, 3) arrays, got {X_src.shape} and {X_dst.shape}")
    if X_src.shape[0] < MINIMUM_SAMPLES:
        raise DegenerateRegistration(
            f"At least {MINIMUM_SAMPLES} correspondences are required, got {X_src.shape[0]}"
        )

    mean_src = X_src.mean(axis=0)
    mean_dst = X_dst.mean(axis=0)
    src = X_src - mean_src
    dst = X_dst - mean_dst

    variance_src = np.mean(np.sum(src ** 2, axis=1))
    if variance_src < 1e-24:
        raise DegenerateRegistration("Source points are coincident")

    cov = dst.T @ src / X_src.shape[0]
    U, D, Vt = np.linalg.svd(cov)

    # Rank < 2 means collinear (or coincident) points: rotation undetermined
    if D[1] <= 1e-12 * max(D[0], 1e-300):
        raise DegenerateRegistration("Correspondences are collinear")

    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1.0

    rotation = U @ S @ Vt
    scale = np.trace(np.diag(D) @ S) / variance_src
    translation = mean_dst - scale * rotation @ mean_src
    return Similarity3(scale, rotation, translation)


def squared_residuals(similarity: Similarity3, X_src: np.ndarray, X_dst: np.ndarray) -> np.ndarray:
    return np.sum((X_dst - similarity(X_src)) ** 2, axis=1)


def _median(values: np.ndarray) -> float:
    # Upper median, as a partial sort at n // 2
    return float(np.partition(values, values.size // 2)[values.size // 2])


def num_lmeds_samples(probability: float, outlier_ratio: float,
                      min_samples: int = MINIMUM_SAMPLES) -> int:
    """Samples needed to draw one outlier-free minimal set with `probability`"""
    inlier_prob = (1.0 - outlier_ratio) ** min_samples
    if inlier_prob >= 1.0:
        return 1
    return int(np.ceil(np.log(1.0 - probability) / np.log(1.0 - inlier_prob)))


def least_median_of_squares(X_src: np.ndarray, X_dst: np.ndarray,
                            config: Optional[RegistrationConfig] = None
                            ) -> Tuple[Similarity3, float, np.ndarray]:
    """
    Robust similarity fit

    Returns:
        (similarity, median squared residual, inlier mask)
    """
    config = config or RegistrationConfig()
    X_src = np.asarray(X_src, dtype=np.float64)
    X_dst = np.asarray(X_dst, dtype=np.float64)
    n = X_src.shape[0]

    if n < MINIMUM_SAMPLES:
        raise DegenerateRegistration(
            f"At least {MINIMUM_SAMPLES} correspondences are required, got {n}"
        )

    if n == MINIMUM_SAMPLES:
        best_model = compute_similarity(X_src, X_dst)
        residuals = squared_residuals(best_model, X_src, X_dst)
        return best_model, _median(residuals), np.ones(n, dtype=bool)

    rng = np.random.default_rng(config.seed)
    num_iterations = max(
        num_lmeds_samples(config.probability, config.outlier_ratio), config.min_iterations
    )

    best_model = None
    best_median = np.inf
    for _ in range(num_iterations):
        sample = rng.choice(n, MINIMUM_SAMPLES, replace=False)
        try:
            model = compute_similarity(X_src[sample], X_dst[sample])
        except DegenerateRegistration:
            continue
        median = _median(squared_residuals(model, X_src, X_dst))
        if median < best_median:
            best_median = median
            best_model = model

    if best_model is None:
        raise DegenerateRegistration(f"All {num_iterations} samples were degenerate")

    # Robust standard deviation estimate (Rousseeuw) defines the inliers
    threshold = 2.5 * 1.4826 * (1.0 + 5.0 / (n - MINIMUM_SAMPLES)) * np.sqrt(best_median)
    inliers = np.sqrt(squared_residuals(best_model, X_src, X_dst)) <= threshold

    if config.refine_inliers and inliers.sum() >= MINIMUM_SAMPLES:
        try:
            refined = compute_similarity(X_src[inliers], X_dst[inliers])
        except DegenerateRegistration:
            refined = None
        if refined is not None:
            refined_median = _median(squared_residuals(refined, X_src, X_dst))
            if refined_median <= best_median:
                best_model, best_median = refined, refined_median

    logger.debug(
        f"LMedS: {num_iterations} samples, median squared residual {best_median:.6g}, "
        f"{int(inliers.sum())}/{n} inliers"
    )
    return best_model, best_median, inliers


def collect_center_correspondences(sfm_data: SfMData) -> Tuple[np.ndarray, np.ndarray]:
    """(reconstructed centers, prior centers) of views with a usable prior and a pose"""
    X_sfm, X_gps = [], []
    for view in sfm_data.views_with_usable_prior():
        X_sfm.append(sfm_data.pose_of(view).center)
        X_gps.append(view.prior.pose_center)
    if not X_sfm:
        return np.empty((0, 3)), np.empty((0, 3))
    return np.array(X_sfm), np.array(X_gps)


def apply_similarity(sfm_data: SfMData, similarity: Similarity3) -> None:
    """
    Move landmarks and poses into the prior frame (in place)

    Control points are already expressed in the trusted frame and stay put.
    """
    for landmark in sfm_data.structure.values():
        landmark.X[:] = similarity(landmark.X)
    for pose in sfm_data.poses.values():
        similarity.apply_to_pose(pose)


def register_scene_to_priors(sfm_data: SfMData,
                             config: Optional[RegistrationConfig] = None) -> RegistrationResult:
    """
    Early alignment of the scene to the view priors

    Runs only when the scene has more than 3 views and at least one usable
    prior with an existing pose; otherwise nothing is changed.
    """
    if len(sfm_data.views) <= 3:
        return RegistrationResult()

    X_sfm, X_gps = collect_center_correspondences(sfm_data)
    if X_sfm.shape[0] == 0:
        return RegistrationResult()

    try:
        similarity, median, inliers = least_median_of_squares(X_sfm, X_gps, config)
    except DegenerateRegistration as e:
        logger.warning(f"Skipping registration to view priors: {e}")
        return RegistrationResult(num_correspondences=X_sfm.shape[0])

    fitting_error = float(np.sqrt(median))
    logger.info(
        f"LMeds found a model with an upper bound of: {fitting_error:.6g} user units "
        f"({X_sfm.shape[0]} correspondences)"
    )

    apply_similarity(sfm_data, similarity)

    return RegistrationResult(
        applied=True,
        similarity=similarity,
        fitting_error=fitting_error,
        num_correspondences=X_sfm.shape[0],
        num_inliers=int(inliers.sum()),
    )
